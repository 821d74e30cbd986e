import json

import pytest

from modelmesh_adapter.ovms.modelconfig import (
    OvmsModelConfig,
    OvmsModelStatus,
    OvmsModelVersionStatus,
    OvmsRepositoryConfig,
    parse_config_response,
    parse_error_response,
    parse_repository_config,
)

DOC_CONFIG = {
    "model_config_list": [
        {"config": {"name": "model_name1", "base_path": "/models/model1"}},
        {"config": {"name": "model_name2", "base_path": "/models/model1"}},
    ]
}

DOC_STATUS = {
    "mnist": {
        "model_version_status": [
            {
                "version": "3",
                "state": "AVAILABLE",
                "status": {"error_code": "OK", "error_message": "OK"},
            }
        ]
    }
}


def test_repository_config_to_dict_matches_documented_layout():
    config = OvmsRepositoryConfig(
        [
            OvmsModelConfig("model_name1", "/models/model1"),
            OvmsModelConfig("model_name2", "/models/model1"),
        ]
    )
    assert config.to_dict() == DOC_CONFIG


def test_repository_config_round_trip():
    config = OvmsRepositoryConfig(
        [OvmsModelConfig("a", "/models/a"), OvmsModelConfig("b", "/models/b")]
    )
    assert parse_repository_config(json.dumps(config.to_dict())) == config


def test_empty_repository_config_round_trip():
    config = OvmsRepositoryConfig()
    assert parse_repository_config(json.dumps(config.to_dict())) == config
    assert parse_repository_config("null") == config


def test_parse_repository_config_bytes():
    parsed = parse_repository_config(json.dumps(DOC_CONFIG).encode())
    assert [model.name for model in parsed.model_config_list] == ["model_name1", "model_name2"]


def test_parse_config_response_documented_example():
    parsed = parse_config_response(json.dumps(DOC_STATUS))
    assert parsed == {
        "mnist": [OvmsModelVersionStatus("3", "AVAILABLE", OvmsModelStatus("OK", "OK"))]
    }


def test_parse_config_response_missing_fields_default():
    parsed = parse_config_response('{"m": {"model_version_status": [{"state": "END"}]}}')
    assert parsed["m"] == [OvmsModelVersionStatus(state="END")]


def test_parse_config_response_empty():
    assert parse_config_response("{}") == {}
    assert parse_config_response("null") == {}


def test_parse_error_response():
    body = json.dumps({"error": "Reloading models versions failed"})
    assert parse_error_response(body) == "Reloading models versions failed"
    assert parse_error_response("{}") == ""


@pytest.mark.parametrize(
    "parse, body",
    [
        (parse_repository_config, "not json"),
        (parse_repository_config, '{"model_config_list": {}}'),
        (parse_config_response, "[]"),
        (parse_config_response, '{"m": {"model_version_status": [{"state": 1}]}}'),
        (parse_error_response, '{"error": 5}'),
        (parse_error_response, ""),
    ],
)
def test_invalid_documents_raise(parse, body):
    with pytest.raises(ValueError):
        parse(body)