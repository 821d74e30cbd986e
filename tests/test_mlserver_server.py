import json
import os

import pytest

from modelmesh_adapter.mesh import (
    LoadModelRequest,
    RuntimeState,
    StatusCode,
    StatusError,
    UnloadModelRequest,
)
from modelmesh_adapter.mlserver.config import DEFAULT_MEM_BUFFER_BYTES, AdapterConfiguration
from modelmesh_adapter.mlserver.server import MLServerAdapterServer

TEST_MODEL_SIZE_MULTIPLIER = 1.35
TEST_CONTAINER_MEM_REQ_BYTES = 6 * 1024 * 1024 * 1024
DEFAULT_MODEL_SIZE_IN_BYTES = 1000000
TEST_MODEL_ID = "mnist-svm-00000000"


class FakeMLServer:
    def __init__(self, ready=True, models=(), version="", load_error=None, unload_error=None):
        self.ready = ready
        self.models = list(models)
        self.version = version
        self.load_error = load_error
        self.unload_error = unload_error
        self.loaded = []
        self.unloaded = []

    def server_ready(self):
        if isinstance(self.ready, Exception):
            raise self.ready
        return self.ready

    def server_metadata(self):
        return self.version

    def repository_index(self, ready):
        return list(self.models)

    def repository_model_load(self, model_name):
        if self.load_error is not None:
            raise self.load_error
        self.loaded.append(model_name)

    def repository_model_unload(self, model_name):
        if self.unload_error is not None:
            raise self.unload_error
        self.unloaded.append(model_name)


@pytest.fixture
def config(tmp_path):
    return AdapterConfiguration(
        mlserver_container_mem_req_bytes=TEST_CONTAINER_MEM_REQ_BYTES,
        model_size_multiplier=TEST_MODEL_SIZE_MULTIPLIER,
        root_model_dir=str(tmp_path / "_mlserver_models"),
    )


@pytest.fixture
def model_path(tmp_path):
    source = tmp_path / TEST_MODEL_ID
    source.mkdir()
    (source / "model-settings.json").write_text(
        json.dumps(
            {
                "name": "mnist-svm",
                "implementation": "mlserver_sklearn.SKLearnModel",
                "parameters": {"uri": "./mnist-svm.joblib", "version": "v0.1.0"},
            }
        )
    )
    (source / "mnist-svm.joblib").write_text("")
    return str(source)


def assert_generated_model_dir_is_correct(generated_dir, model_id):
    names = os.listdir(generated_dir)
    assert "model-settings.json" in names
    for name in names:
        path = os.path.join(generated_dir, name)
        if name == "model-settings.json":
            with open(path) as handle:
                assert json.load(handle)["name"] == model_id
            continue
        assert os.path.islink(path)
        assert os.path.exists(os.path.realpath(path))


def test_init_creates_root_dir(config):
    MLServerAdapterServer(FakeMLServer(), config)
    assert os.listdir(config.root_model_dir) == []


def test_init_rejects_embedded_puller(config):
    config.use_embedded_puller = True
    with pytest.raises(ValueError):
        MLServerAdapterServer(FakeMLServer(), config)


def test_adapter_flow(config, model_path):
    client = FakeMLServer()
    server = MLServerAdapterServer(client, config)

    status = server.runtime_status()
    assert status.capacity_in_bytes == TEST_CONTAINER_MEM_REQ_BYTES - DEFAULT_MEM_BUFFER_BYTES
    assert status.status == RuntimeState.READY

    response = server.load_model(
        LoadModelRequest(
            model_id=TEST_MODEL_ID, model_type="sklearn", model_path=model_path, model_key="{}"
        )
    )
    assert response.size_in_bytes == DEFAULT_MODEL_SIZE_IN_BYTES
    generated = os.path.join(config.root_model_dir, TEST_MODEL_ID)
    assert_generated_model_dir_is_correct(generated, TEST_MODEL_ID)
    assert client.loaded == [TEST_MODEL_ID]

    response = server.load_model(
        LoadModelRequest(
            model_id=TEST_MODEL_ID,
            model_path=model_path,
            model_type="invalid",
            model_key='{"storage_key": "myStorage", "bucket": "bucket1", '
            '"disk_size_bytes": 54321, "model_type": {"name": "sklearn"}}',
        )
    )
    assert response.size_in_bytes == int(54321 * TEST_MODEL_SIZE_MULTIPLIER)

    server.unload_model(UnloadModelRequest(model_id=TEST_MODEL_ID))
    assert not os.path.exists(generated)
    assert client.unloaded == [TEST_MODEL_ID]


def test_load_reports_max_concurrency(config, model_path):
    config.limit_model_concurrency = 3
    server = MLServerAdapterServer(FakeMLServer(), config)
    response = server.load_model(
        LoadModelRequest(model_id="m", model_type="sklearn", model_path=model_path, model_key="{}")
    )
    assert response.max_concurrency == 3


def test_load_runtime_error_keeps_code(config, model_path):
    client = FakeMLServer(load_error=StatusError(StatusCode.UNAVAILABLE, "down"))
    server = MLServerAdapterServer(client, config)
    with pytest.raises(StatusError) as info:
        server.load_model(LoadModelRequest(model_id="m", model_path=model_path, model_key="{}"))
    assert info.value.code == StatusCode.UNAVAILABLE
    assert "MLServer runtime error" in info.value.message


def test_load_missing_path_is_adapter_error(config, tmp_path):
    server = MLServerAdapterServer(FakeMLServer(), config)
    with pytest.raises(StatusError) as info:
        server.load_model(
            LoadModelRequest(model_id="m", model_path=str(tmp_path / "missing"), model_key="{}")
        )
    assert "adapter error" in info.value.message


def test_load_bad_schema_path(config, model_path):
    server = MLServerAdapterServer(FakeMLServer(), config)
    with pytest.raises(ValueError):
        server.load_model(
            LoadModelRequest(model_id="m", model_path=model_path, model_key='{"schema_path": 5}')
        )


@pytest.mark.parametrize("code", [StatusCode.NOT_FOUND, StatusCode.INVALID_ARGUMENT])
def test_unload_missing_model_still_removes_files(config, code):
    client = FakeMLServer(unload_error=StatusError(code, "no such model"))
    server = MLServerAdapterServer(client, config)
    model_dir = os.path.join(config.root_model_dir, "gone")
    os.makedirs(model_dir)
    server.unload_model(UnloadModelRequest(model_id="gone"))
    assert not os.path.exists(model_dir)


def test_unload_other_error_raises(config):
    client = FakeMLServer(unload_error=StatusError(StatusCode.INTERNAL, "boom"))
    server = MLServerAdapterServer(client, config)
    with pytest.raises(StatusError) as info:
        server.unload_model(UnloadModelRequest(model_id="x"))
    assert info.value.code == StatusCode.INTERNAL


def test_runtime_status_not_ready(config):
    server = MLServerAdapterServer(FakeMLServer(ready=False), config)
    assert server.runtime_status().status == RuntimeState.STARTING


def test_runtime_status_ready_error(config):
    client = FakeMLServer(ready=StatusError(StatusCode.UNAVAILABLE, "down"))
    server = MLServerAdapterServer(client, config)
    assert server.runtime_status().status == RuntimeState.STARTING


def test_runtime_status_resets_runtime(config):
    client = FakeMLServer(models=["a", "b"], version="1.2.3")
    server = MLServerAdapterServer(client, config)
    leftover = os.path.join(config.root_model_dir, "stale")
    os.makedirs(leftover)

    status = server.runtime_status()

    assert client.unloaded == ["a", "b"]
    assert not os.path.exists(leftover)
    assert status.status == RuntimeState.READY
    assert status.runtime_version == "1.2.3"
    assert config.runtime_version == "1.2.3"
    assert status.default_model_size_in_bytes == DEFAULT_MODEL_SIZE_IN_BYTES
    assert status.limit_model_concurrency is False
    assert set(status.method_infos) == {
        "inference.GRPCInferenceService/ModelInfer",
        "inference.GRPCInferenceService/ModelMetadata",
    }
    assert all(info.id_injection_path == (1,) for info in status.method_infos.values())


def test_runtime_status_unload_failure(config):
    client = FakeMLServer(models=["a"], unload_error=StatusError(StatusCode.INTERNAL, "x"))
    server = MLServerAdapterServer(client, config)
    assert server.runtime_status().status == RuntimeState.STARTING