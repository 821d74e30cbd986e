"""Model-mesh runtime service backed by an MLServer instance."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Sequence
from typing import Protocol

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
from modelmesh_adapter.mlserver.config import MLSERVER_SERVICE_NAME, AdapterConfiguration
from modelmesh_adapter.mlserver.layout import adapt_model_layout_for_runtime
from modelmesh_adapter.util import (
    calc_mem_capacity,
    clear_directory_contents,
    get_model_type,
    get_schema_path,
    secure_join,
)

__all__ = ["MLServerAdapterServer"]

log = logging.getLogger(__name__)

_UINT64_LIMIT = 1 << 64
_UINT32_LIMIT = 1 << 32


class _InferenceClient(Protocol):
    """The calls the adapter makes to the MLServer inference service."""

    def server_ready(self) -> bool: ...

    def server_metadata(self) -> str: ...

    def repository_index(self, ready: bool) -> Sequence[str]: ...

    def repository_model_load(self, model_name: str) -> None: ...

    def repository_model_unload(self, model_name: str) -> None: ...


def _remove_all(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except FileNotFoundError:
        pass


class MLServerAdapterServer:
    """Loads and unloads models in MLServer on behalf of model-mesh.

    ``client`` talks to MLServer; errors it raises may be ``StatusError``
    instances carrying a gRPC status code.
    """

    def __init__(self, client: _InferenceClient, config: AdapterConfiguration) -> None:
        if config.use_embedded_puller:
            raise ValueError("the embedded model puller is not available in this adapter")
        os.makedirs(config.root_model_dir, 0o755, exist_ok=True)
        log.info("Created root MLServer model directory %s", config.root_model_dir)
        self.client = client
        self.config = config

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Adapt the model's files, ask MLServer to load it and report its size."""
        model_type = get_model_type(request)
        log.info(
            "Loading model %s (type %r, path %s)",
            request.model_id, model_type, request.model_path,
        )
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
                status_code_of(exc), f"Failed to load Model due to adapter error: {exc}"
            ) from exc

        try:
            self.client.repository_model_load(request.model_id)
        except Exception as exc:
            log.error("MLServer failed to load model %s: %s", request.model_id, exc)
            raise StatusError(
                status_code_of(exc),
                f"Failed to load Model due to MLServer runtime error: {exc}",
            ) from exc

        size = calc_mem_capacity(
            request.model_key,
            self.config.default_model_size_in_bytes,
            self.config.model_size_multiplier,
        )
        log.info("MLServer model %s loaded, size %d bytes", request.model_id, size)
        return LoadModelResponse(
            size_in_bytes=size,
            max_concurrency=self.config.limit_model_concurrency % _UINT32_LIMIT,
        )

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        """Unload the model from MLServer and delete its adapted directory."""
        try:
            self.client.repository_model_unload(request.model_id)
        except Exception as exc:
            # MLServer answers INVALID_ARGUMENT (maybe NOT_FOUND later) for an
            # unknown model; the files are removed regardless.
            code = status_code_of(exc)
            if isinstance(exc, StatusError) and code in (
                StatusCode.INVALID_ARGUMENT,
                StatusCode.NOT_FOUND,
            ):
                log.info("Unload request for model %s not found in MLServer: %s",
                         request.model_id, exc)
            else:
                log.error("Failed to unload model %s from MLServer: %s", request.model_id, exc)
                raise StatusError(code, "Failed to unload model from MLServer") from exc

        model_dir = secure_join(self.config.root_model_dir, request.model_id)
        try:
            _remove_all(model_dir)
        except OSError as exc:
            raise StatusError(
                status_code_of(exc), f"Error while deleting the {model_dir} dir: {exc}"
            ) from exc
        return UnloadModelResponse()

    def runtime_status(self) -> RuntimeStatusResponse:
        """Reset MLServer and report readiness and capabilities."""
        starting = RuntimeStatusResponse(status=RuntimeState.STARTING)

        try:
            ready = self.client.server_ready()
        except Exception as exc:
            log.info("MLServer failed to get status or not ready: %s", exc)
            return starting
        if not ready:
            log.info("MLServer runtime not ready")
            return starting

        try:
            models = list(self.client.repository_index(ready=True))
        except Exception as exc:
            log.info("MLServer runtime status, getting model info failed: %s", exc)
            return starting

        for model_id in models:
            try:
                self.client.repository_model_unload(model_id)
            except Exception as exc:
                log.info("MLServer runtime status, unload of %s failed: %s", model_id, exc)
                return starting

        try:
            clear_directory_contents(self.config.root_model_dir)
        except OSError as exc:
            log.error("Error cleaning up local model dir: %s", exc)
            return RuntimeStatusResponse(status=RuntimeState.FAILING)

        try:
            version = self.client.server_metadata()
        except Exception as exc:
            log.info("MLServer failed to get server metadata: %s", exc)
            return starting
        if version:
            log.info("Using runtime version %s returned by MLServer", version)
            self.config.runtime_version = version

        path = MethodInfo(id_injection_path=(1,))
        response = RuntimeStatusResponse(
            status=RuntimeState.READY,
            capacity_in_bytes=self.config.capacity_in_bytes % _UINT64_LIMIT,
            max_loading_concurrency=self.config.max_loading_concurrency % _UINT32_LIMIT,
            model_loading_timeout_ms=self.config.model_loading_timeout_ms % _UINT32_LIMIT,
            default_model_size_in_bytes=self.config.default_model_size_in_bytes % _UINT64_LIMIT,
            runtime_version=self.config.runtime_version,
            limit_model_concurrency=self.config.limit_model_concurrency > 0,
            method_infos={
                MLSERVER_SERVICE_NAME + "/ModelInfer": path,
                MLSERVER_SERVICE_NAME + "/ModelMetadata": path,
            },
        )
        log.info("Runtime status: %s", response)
        return response