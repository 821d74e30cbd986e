import json
import os
import socket
import threading
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from modelmesh_adapter.mesh import (
    LoadModelRequest,
    RuntimeState,
    StatusCode,
    StatusError,
    UnloadModelRequest,
    status_code_of,
)
from modelmesh_adapter.ovms.config import AdapterConfiguration
from modelmesh_adapter.ovms.modelmanager import OvmsModelManager
from modelmesh_adapter.ovms.server import OvmsAdapterServer

TEST_MODEL_SIZE_MULTIPLIER = 1.35
TEST_CONTAINER_MEM_REQ_BYTES = 6 * 1024 * 1024 * 1024
DEFAULT_MEM_BUFFER_BYTES = 256 * 1024 * 1024
DEFAULT_MODEL_SIZE_IN_BYTES = 1000000
ONNX_ID = "onnx-mnist"
OPENVINO_ID = "openvino-ir"


class _MockOvms:
    def __init__(self):
        self.config_response = "{}"
        self.config_code = 200
        self.reload_response = "{}"
        self.reload_code = 200
        mock = self

        class Handler(BaseHTTPRequestHandler):
            def _answer(self):
                if self.path == "/v1/config":
                    body, code = mock.config_response, mock.config_code
                elif self.path == "/v1/config/reload":
                    body, code = mock.reload_response, mock.reload_code
                else:
                    body, code = "404 page not found", 404
                data = (body + "\n").encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            do_GET = _answer
            do_POST = _answer

            def log_message(self, *args):
                pass

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)
        self.thread.start()

    @property
    def port(self):
        return self.httpd.server_address[1]

    def set_reload(self, obj, code=200):
        self.reload_response = json.dumps(obj)
        self.reload_code = code

    def set_config(self, obj, code=200):
        self.config_response = json.dumps(obj)
        self.config_code = code

    def close(self):
        self.httpd.shutdown()
        self.httpd.server_close()


def _status(state, message=""):
    return {
        "model_version_status": [
            {"version": "1", "state": state,
             "status": {"error_code": "", "error_message": message}}
        ]
    }


@pytest.fixture
def mock_ovms():
    mock = _MockOvms()
    yield mock
    mock.close()


@pytest.fixture
def config(tmp_path, mock_ovms):
    return AdapterConfiguration(
        ovms_port=mock_ovms.port,
        ovms_container_mem_req_bytes=TEST_CONTAINER_MEM_REQ_BYTES,
        model_size_multiplier=TEST_MODEL_SIZE_MULTIPLIER,
        root_model_dir=str(tmp_path / "generated" / "_ovms_models"),
        model_config_file=str(tmp_path / "model_config_list.json"),
        batch_wait_time_min=timedelta(milliseconds=20),
        batch_wait_time_max=timedelta(milliseconds=200),
        reload_timeout=timedelta(seconds=5),
    )


@pytest.fixture
def server(config):
    srv = OvmsAdapterServer(config)
    yield srv
    srv.model_manager.close()


@pytest.fixture
def models(tmp_path):
    models_dir = tmp_path / "models"
    openvino = models_dir / OPENVINO_ID
    openvino.mkdir(parents=True)
    for name in ("mapping-config.json", "model.xml", "model.bin"):
        (openvino / name).write_text("")
    onnx = models_dir / ONNX_ID
    onnx.write_text("")
    return {OPENVINO_ID: str(openvino), ONNX_ID: str(onnx)}


def _entry_exists(config_file, model_id, path):
    with open(config_file, encoding="utf-8") as handle:
        data = json.load(handle)
    return any(
        entry["config"]["name"] == model_id and entry["config"]["base_path"] == path
        for entry in data["model_config_list"]
    )


def test_adapter_flow(server, config, mock_ovms, models):
    mock_ovms.set_reload(
        {OPENVINO_ID: _status("AVAILABLE"), ONNX_ID: _status("AVAILABLE")}
    )

    status = server.runtime_status()
    assert status.status == RuntimeState.READY
    assert status.capacity_in_bytes == TEST_CONTAINER_MEM_REQ_BYTES - DEFAULT_MEM_BUFFER_BYTES

    openvino_resp = server.load_model(
        LoadModelRequest(
            model_id=OPENVINO_ID,
            model_type="rt:openvino",
            model_path=models[OPENVINO_ID],
            model_key='{"model_type": "openvino"}',
        )
    )
    assert openvino_resp.size_in_bytes == DEFAULT_MODEL_SIZE_IN_BYTES

    openvino_dir = os.path.join(config.root_model_dir, OPENVINO_ID)
    assert os.path.exists(os.path.join(openvino_dir, "1", "mapping-config.json"))
    assert _entry_exists(config.model_config_file, OPENVINO_ID, openvino_dir)

    onnx_resp = server.load_model(
        LoadModelRequest(
            model_id=ONNX_ID,
            model_type="invalid",
            model_path=models[ONNX_ID],
            model_key='{"storage_key": "myStorage", "bucket": "bucket1", '
            '"disk_size_bytes": 54321, "model_type": {"name": "onnx", "version": "x.x"}}',
        )
    )
    assert onnx_resp.size_in_bytes == int(54321 * TEST_MODEL_SIZE_MULTIPLIER)

    onnx_dir = os.path.join(config.root_model_dir, ONNX_ID)
    assert os.path.islink(os.path.join(onnx_dir, "1", "model.onnx"))
    assert _entry_exists(config.model_config_file, ONNX_ID, onnx_dir)
    assert _entry_exists(config.model_config_file, OPENVINO_ID, openvino_dir)

    mock_ovms.set_reload({OPENVINO_ID: _status("AVAILABLE"), ONNX_ID: _status("END")})
    server.unload_model(UnloadModelRequest(model_id=ONNX_ID))

    assert not os.path.exists(onnx_dir)
    assert _entry_exists(config.model_config_file, OPENVINO_ID, openvino_dir)


def test_runtime_status_method_infos(server):
    status = server.runtime_status()
    assert status.status == RuntimeState.READY
    assert status.runtime_version == "v1"
    assert status.limit_model_concurrency is False
    infos = status.method_infos
    assert set(infos) == {
        "tensorflow.serving.PredictionService/Predict",
        "inference.GRPCInferenceService/ModelInfer",
        "inference.GRPCInferenceService/ModelMetadata",
    }
    assert tuple(infos["tensorflow.serving.PredictionService/Predict"].id_injection_path) == (1, 1)
    assert tuple(infos["inference.GRPCInferenceService/ModelInfer"].id_injection_path) == (1,)


def test_runtime_status_clears_model_dir(server, config):
    stale = os.path.join(config.root_model_dir, "stale-model")
    os.makedirs(stale)
    status = server.runtime_status()
    assert status.status == RuntimeState.READY
    assert os.listdir(config.root_model_dir) == []


def test_load_failure_reports_server_error(server, mock_ovms, models):
    mock_ovms.set_reload({"error": "Reloading models versions failed"}, code=400)
    mock_ovms.set_config({OPENVINO_ID: _status("LOADING", "Test model load failure")})

    with pytest.raises(StatusError) as excinfo:
        server.load_model(
            LoadModelRequest(
                model_id=OPENVINO_ID,
                model_type="openvino",
                model_path=models[OPENVINO_ID],
                model_key="{}",
            )
        )
    assert status_code_of(excinfo.value) == StatusCode.UNKNOWN
    assert "Test model load failure" in str(excinfo.value)


def test_load_missing_model_path_fails(server, tmp_path):
    with pytest.raises(StatusError) as excinfo:
        server.load_model(
            LoadModelRequest(
                model_id="missing",
                model_type="openvino",
                model_path=str(tmp_path / "does-not-exist"),
                model_key="{}",
            )
        )
    assert "Failed to load Model due to adapter error" in str(excinfo.value)


def test_unload_unknown_model_succeeds(server, config):
    model_dir = os.path.join(config.root_model_dir, "never-loaded")
    os.makedirs(model_dir)
    server.unload_model(UnloadModelRequest(model_id="never-loaded"))
    assert not os.path.exists(model_dir)


def test_runtime_status_starting_when_unreachable(config, tmp_path):
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    manager = OvmsModelManager(f"http://127.0.0.1:{port}", str(tmp_path / "cfg.json"))
    try:
        srv = OvmsAdapterServer(config, manager)
        status = srv.runtime_status()
    finally:
        manager.close()
    assert status.status == RuntimeState.STARTING


def test_embedded_puller_is_rejected(config):
    config.use_embedded_puller = True
    with pytest.raises(ValueError, match="puller"):
        OvmsAdapterServer(config)