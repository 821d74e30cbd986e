"""Model-mesh runtime service backed by OpenVINO Model Server."""

from __future__ import annotations

import logging
import os
import shutil

from modelmesh_adapter.mesh import (
    LoadModelRequest,
    LoadModelResponse,
    MethodInfo,
    RuntimeState,
    RuntimeStatusResponse,
    StatusCode,
    StatusError,
    UnloadModelRequest,
    UnloadModelResponse,
    status_code_of,
)
from modelmesh_adapter.ovms.config import AdapterConfiguration
from modelmesh_adapter.ovms.layout import (
    KSERVE_V2_GRPC_SERVICE_NAME,
    TFS_GRPC_SERVICE_NAME,
    adapt_model_layout_for_runtime,
)
from modelmesh_adapter.ovms.modelmanager import ModelManagerConfig, OvmsModelManager
from modelmesh_adapter.util import (
    calc_mem_capacity,
    clear_directory_contents,
    get_model_type,
    get_schema_path,
    secure_join,
)

__all__ = ["OvmsAdapterServer"]

log = logging.getLogger(__name__)

_UINT64_LIMIT = 1 << 64
_UINT32_LIMIT = 1 << 32


def _code(exc: BaseException) -> StatusCode:
    """Status code of the first ``StatusError`` in the cause chain, if any."""
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, StatusError):
            return status_code_of(current)
        current = current.__cause__
    return status_code_of(exc)


def _remove_all(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except FileNotFoundError:
        pass


class OvmsAdapterServer:
    """Loads and unloads models in OpenVINO Model Server on behalf of model-mesh."""

    def __init__(
        self,
        config: AdapterConfiguration,
        model_manager: OvmsModelManager | None = None,
    ) -> None:
        if config.use_embedded_puller:
            raise ValueError("the embedded model puller is not available in this adapter")
        self.config = config
        if model_manager is None:
            log.info("Connecting to OpenVINO Model Server on port %d", config.ovms_port)
            model_manager = OvmsModelManager(
                f"http://localhost:{config.ovms_port}",
                config.model_config_file,
                ModelManagerConfig(
                    batch_wait_time_min=config.batch_wait_time_min,
                    batch_wait_time_max=config.batch_wait_time_max,
                    reload_timeout=config.reload_timeout,
                ),
            )
        self.model_manager = model_manager
        log.info("OVMS runtime adapter started")

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Adapt the model's files, have the server load them and report the size."""
        model_type = get_model_type(request)
        log.info("Loading model %s with model type %r", request.model_id, model_type)
        schema_path = get_schema_path(request)

        try:
            adapt_model_layout_for_runtime(
                self.config.root_model_dir,
                request.model_id,
                model_type,
                request.model_path,
                schema_path,
            )
        except (OSError, ValueError) as exc:
            log.error("Failed to create model directory for %s: %s", request.model_id, exc)
            raise StatusError(
                _code(exc), f"Failed to load Model due to adapter error: {exc}"
            ) from exc

        adapted_path = secure_join(self.config.root_model_dir, request.model_id)

        try:
            self.model_manager.load_model(adapted_path, request.model_id)
        except Exception as exc:
            log.error("OVMS failed to load model %s: %s", request.model_id, exc)
            raise StatusError(
                _code(exc), f"Failed to load model due to error: {exc}"
            ) from exc

        size = calc_mem_capacity(
            request.model_key,
            self.config.default_model_size_in_bytes,
            self.config.model_size_multiplier,
        )
        log.info("OVMS model %s loaded, size %d bytes", request.model_id, size)
        return LoadModelResponse(
            size_in_bytes=size,
            max_concurrency=self.config.limit_model_concurrency % _UINT32_LIMIT,
        )

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        """Unload the model from the server and delete its adapted directory."""
        try:
            self.model_manager.unload_model(request.model_id)
        except Exception as exc:
            code = _code(exc)
            if code == StatusCode.NOT_FOUND:
                log.info("Unload request for model %s not found in OVMS: %s",
                         request.model_id, exc)
            else:
                log.error("Failed to unload model %s from OVMS: %s", request.model_id, exc)
                raise StatusError(code, "Failed to unload model from OVMS") from exc

        model_dir = secure_join(self.config.root_model_dir, request.model_id)
        try:
            _remove_all(model_dir)
        except OSError as exc:
            raise StatusError(
                status_code_of(exc), f"Error while deleting the {model_dir} dir: {exc}"
            ) from exc
        return UnloadModelResponse()

    def runtime_status(self) -> RuntimeStatusResponse:
        """Reset the server and report readiness and capabilities."""
        starting = RuntimeStatusResponse(status=RuntimeState.STARTING)

        try:
            self.model_manager.get_config()
        except Exception as exc:
            log.info("Failed to ping OVMS: %s", exc)
            return starting

        try:
            self.model_manager.unload_all()
        except Exception as exc:
            log.info("Unloading all OVMS models failed: %s", exc)
            return starting

        try:
            clear_directory_contents(self.config.root_model_dir)
        except OSError as exc:
            log.error("Error cleaning up local model dir: %s", exc)
            return RuntimeStatusResponse(status=RuntimeState.FAILING)

        path_1 = MethodInfo(id_injection_path=(1,))
        path_1_1 = MethodInfo(id_injection_path=(1, 1))  # PredictRequest[model_spec][name]
        response = RuntimeStatusResponse(
            status=RuntimeState.READY,
            capacity_in_bytes=self.config.capacity_in_bytes % _UINT64_LIMIT,
            max_loading_concurrency=self.config.max_loading_concurrency % _UINT32_LIMIT,
            model_loading_timeout_ms=self.config.model_loading_timeout_ms % _UINT32_LIMIT,
            default_model_size_in_bytes=self.config.default_model_size_in_bytes % _UINT64_LIMIT,
            runtime_version=self.config.runtime_version,
            limit_model_concurrency=self.config.limit_model_concurrency > 0,
            method_infos={
                TFS_GRPC_SERVICE_NAME + "/Predict": path_1_1,
                KSERVE_V2_GRPC_SERVICE_NAME + "/ModelInfer": path_1,
                KSERVE_V2_GRPC_SERVICE_NAME + "/ModelMetadata": path_1,
            },
        )
        log.info("Runtime status: %s", response)
        return response