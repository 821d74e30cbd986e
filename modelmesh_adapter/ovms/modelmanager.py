"""Batched model loading for OpenVINO Model Server through its multi-model config file.

A single background thread owns the set of loaded models. Callers send it
requests and wait for the outcome; the thread gathers requests for a short
while, writes the config file, asks the server to reload it and completes
the gathered load requests from the reported model states.
"""

from __future__ import annotations

import http.client
import json
import logging
import os
import queue
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field, fields
from datetime import timedelta
from enum import Enum

from modelmesh_adapter.mesh import StatusCode, StatusError
from modelmesh_adapter.ovms.modelconfig import (
    OvmsModelConfig,
    OvmsModelVersionStatus,
    OvmsRepositoryConfig,
    parse_config_response,
    parse_error_response,
    parse_repository_config,
)

__all__ = ["ModelManagerConfig", "OvmsModelManager"]

log = logging.getLogger(__name__)

_CANCELLED_REASON = "Request context has been cancelled"
_STOP = object()


@dataclass
class ModelManagerConfig:
    """Tuning of the model manager; zero values are replaced by the defaults."""

    batch_wait_time_min: timedelta = timedelta(milliseconds=100)
    batch_wait_time_max: timedelta = timedelta(seconds=3)
    http_client_max_conns: int = 100
    reload_timeout: timedelta = timedelta(seconds=30)
    model_config_file_perms: int = 0o644
    request_channel_size: int = 25

    def __post_init__(self) -> None:
        for spec in fields(self):
            if not getattr(self, spec.name):
                setattr(self, spec.name, spec.default)


class _RequestType(str, Enum):
    LOAD = "Load"
    UNLOAD = "Unload"
    UNLOAD_ALL = "UnloadAll"


@dataclass(eq=False)
class _Request:
    request_type: _RequestType
    model_id: str = ""
    base_path: str = ""
    deadline: float | None = None
    result: queue.SimpleQueue = field(default_factory=queue.SimpleQueue)

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def complete(self, code: StatusCode, reason: str = "") -> None:
        self.result.put(None if code == StatusCode.OK else StatusError(code, reason))


def _seconds(timeout: float | timedelta | None) -> float | None:
    if timeout is None:
        return None
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


class OvmsModelManager:
    """Thread-safe front end to a background thread that manages OVMS models."""

    def __init__(
        self,
        address: str,
        config_filename: str,
        config: ModelManagerConfig | None = None,
    ) -> None:
        self.config = config if config is not None else ModelManagerConfig()
        self.config_filename = config_filename

        self._loaded_models: dict[str, OvmsModelConfig] = self._read_initial_config()
        self._cached_statuses: dict[str, list[OvmsModelVersionStatus]] = {}

        self._config_request = urllib.request.Request(f"{address}/v1/config", method="GET")
        self._reload_request = urllib.request.Request(
            f"{address}/v1/config/reload", method="POST"
        )
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        self._connections = threading.BoundedSemaphore(self.config.http_client_max_conns)

        self._requests: queue.Queue = queue.Queue(maxsize=self.config.request_channel_size)
        self._lock = threading.Lock()
        self._closed = False
        self._stopping = False

        # the server needs the file to exist when it starts
        try:
            os.stat(config_filename)
        except FileNotFoundError:
            try:
                self._write_config()
            except OSError as exc:
                log.error("Unable to write out empty config file: %s", exc)
        except OSError:
            pass

        self._thread = threading.Thread(target=self._run, name="ovms-model-manager", daemon=True)
        self._thread.start()

    def __enter__(self) -> OvmsModelManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _read_initial_config(self) -> dict[str, OvmsModelConfig]:
        try:
            with open(self.config_filename, "rb") as handle:
                raw = handle.read()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            log.error(
                "Could not initialize model config from file %s, continuing with empty "
                "config: %s", self.config_filename, exc,
            )
            return {}
        try:
            repository = parse_repository_config(raw)
        except ValueError as exc:
            log.error(
                "Could not parse model config JSON in %s, continuing with empty config: %s",
                self.config_filename, exc,
            )
            return {}
        return {model.name: model for model in repository.model_config_list}

    # client API

    def load_model(
        self, model_path: str, model_id: str, timeout: float | timedelta | None = None
    ) -> None:
        """Load the model whose files are at ``model_path``; its directory is the base path."""
        try:
            is_dir = os.path.isdir(model_path)
            os.stat(model_path)
        except OSError as exc:
            raise OSError(exc.errno, f"Could not stat file at the model_path: {exc}") from exc
        base_path = model_path if is_dir else (os.path.dirname(model_path) or ".")

        request = _Request(_RequestType.LOAD, model_id=model_id, base_path=base_path)
        try:
            self._handle_request(request, timeout)
        except Exception as exc:
            raise RuntimeError(f"LoadModel errored: {exc}") from exc

    def unload_model(self, model_id: str, timeout: float | timedelta | None = None) -> None:
        """Unload one model; the server catches up on the next reload."""
        request = _Request(_RequestType.UNLOAD, model_id=model_id)
        try:
            self._handle_request(request, timeout)
        except Exception as exc:
            raise RuntimeError(f"UnloadModel errored: {exc}") from exc

    def unload_all(self, timeout: float | timedelta | None = None) -> None:
        """Unload every model, aborting pending loads."""
        request = _Request(_RequestType.UNLOAD_ALL)
        try:
            self._handle_request(request, timeout)
        except Exception as exc:
            raise RuntimeError(f"UnloadAll errored: {exc}") from exc

    def get_config(self) -> dict[str, list[OvmsModelVersionStatus]]:
        """Query the server's model states and return them."""
        return self._get_config(self.config.reload_timeout.total_seconds())

    def close(self) -> None:
        """Stop the background thread after it finishes its current batch."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._requests.put(_STOP)
        self._thread.join()

    def _handle_request(self, request: _Request, timeout: float | timedelta | None) -> None:
        seconds = _seconds(timeout)
        if seconds is not None:
            request.deadline = time.monotonic() + seconds
        with self._lock:
            if self._closed:
                raise RuntimeError("model manager is closed")
            self._requests.put(request)
        try:
            error = request.result.get(timeout=seconds)
        except queue.Empty:
            raise TimeoutError("Request was cancelled") from None
        if error is not None:
            raise error

    # background thread

    def _run(self) -> None:
        log.info("Starting model manager thread")
        while True:
            batch = self._gather_load_requests()
            if batch is None:
                break
            self._process_batch(batch)
            if self._stopping:
                break
        log.info("Model manager thread exiting")

    def _process_batch(self, requests: dict[str, _Request]) -> None:
        # requests were collected over time; some may have expired meanwhile
        for model_id, request in list(requests.items()):
            if request.expired():
                log.debug("Aborting %s request for %s with expired deadline before reloading",
                          request.request_type.value, model_id)
                request.complete(StatusCode.DEADLINE_EXCEEDED, _CANCELLED_REASON)
                self._loaded_models.pop(model_id, None)
                del requests[model_id]

        try:
            self._update_model_config()
        except Exception as exc:
            message = "Failed to update model configuration with OVMS"
            log.error("%s: %s", message, exc)
            # whether or not the server reloaded, the loads are treated as failed
            for model_id, request in requests.items():
                request.complete(StatusCode.INTERNAL, f"{message}: {exc}")
                self._loaded_models.pop(model_id, None)
            return

        for model_id, request in requests.items():
            versions = self._cached_statuses.get(model_id)
            state = "_missing_"
            message = ""
            if not versions:
                code = StatusCode.INTERNAL
                message = "Expected model to load, but no status entry found in the config"
            else:
                status = versions[0]
                state = status.state
                if status.state == "AVAILABLE":
                    code = StatusCode.OK
                else:
                    code = StatusCode.UNKNOWN
                    message = (
                        f"OVMS model load failed. code: '{status.status.error_code}' "
                        f"reason: '{status.status.error_message}'"
                    )
            log.debug("Completing load request for %s (state %s, code %s) %s",
                      model_id, state, code.label, message)
            request.complete(code, message)
            if code != StatusCode.OK:
                self._loaded_models.pop(model_id, None)

    def _gather_load_requests(self) -> dict[str, _Request] | None:
        """Collect requests until the batch timer fires; ``None`` means stop now.

        Unloads complete at once and only set the long timer; loads set the
        short timer, since they wait for the server.
        """
        requests: dict[str, _Request] = {}
        deadline: float | None = None
        short_timer_set = False
        while True:
            if deadline is None:
                item = self._requests.get()
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return requests
                try:
                    item = self._requests.get(timeout=remaining)
                except queue.Empty:
                    return requests

            if item is _STOP:
                self._stopping = True
                return None if deadline is None else requests

            request: _Request = item
            if request.expired():
                log.debug("Aborting %s request for %s with expired deadline",
                          request.request_type.value, request.model_id)
                request.complete(StatusCode.DEADLINE_EXCEEDED, _CANCELLED_REASON)
                continue

            now = time.monotonic()
            if request.request_type is _RequestType.UNLOAD_ALL:
                log.debug("Processing UnloadAll with %d pending requests", len(requests))
                for pending in requests.values():
                    pending.complete(StatusCode.ABORTED, "Model Server is being reset")
                requests = {}
                request.complete(StatusCode.OK)
                self._loaded_models = {}
                if deadline is None:
                    short_timer_set = False
                    deadline = now + self.config.batch_wait_time_max.total_seconds()

            elif request.request_type is _RequestType.UNLOAD:
                pending = requests.pop(request.model_id, None)
                if pending is not None:
                    pending.complete(
                        StatusCode.ABORTED, "Aborting due to subsequent unload request"
                    )
                self._loaded_models.pop(request.model_id, None)
                request.complete(StatusCode.OK)
                if deadline is None:
                    deadline = now + self.config.batch_wait_time_max.total_seconds()

            else:
                pending = requests.get(request.model_id)
                if pending is not None:
                    pending.complete(
                        StatusCode.ABORTED, "Aborting due to concurrent load request"
                    )
                if deadline is None or not short_timer_set:
                    short_timer_set = True
                    deadline = now + self.config.batch_wait_time_min.total_seconds()
                requests[request.model_id] = request
                self._loaded_models[request.model_id] = OvmsModelConfig(
                    name=request.model_id, base_path=request.base_path
                )

    # HTTP and file handling

    def _send(
        self,
        request: urllib.request.Request,
        timeout: float,
        protocol_message: str,
        read_message: str,
    ) -> tuple[int, bytes]:
        with self._connections:
            try:
                response = self._opener.open(request, timeout=timeout)
            except urllib.error.HTTPError as exc:
                response = exc
            except (OSError, http.client.HTTPException) as exc:
                raise ConnectionError(f"{protocol_message}: {exc}") from exc
            try:
                # always read the body so the connection can be reused
                body = response.read()
            except (OSError, http.client.HTTPException) as exc:
                raise ConnectionError(f"{read_message}: {exc}") from exc
            finally:
                response.close()
            return response.getcode(), body

    def _get_config(self, timeout: float) -> dict[str, list[OvmsModelVersionStatus]]:
        code, body = self._send(
            self._config_request,
            timeout,
            "Protocol error getting the config",
            "Error reading config status response body",
        )
        if code == 200:
            try:
                statuses = parse_config_response(body)
            except ValueError as exc:
                log.debug("Error parsing /config response %r: %s", body, exc)
                raise ValueError(f"Error parsing /config response: {exc}") from exc
            self._cached_statuses = statuses
            return statuses

        try:
            error = parse_error_response(body)
        except ValueError as exc:
            log.debug("Error parsing /config error response %r: %s", body, exc)
            raise ValueError(f"Error parsing /config error response: {exc}") from exc
        message = f"Error response when getting the config: {error}"
        log.error("Call to /v1/config returned an error (code %d): %s", code, message)
        raise StatusError(StatusCode.INTERNAL, message)

    def _write_config(self) -> None:
        repository = OvmsRepositoryConfig(model_config_list=list(self._loaded_models.values()))
        data = json.dumps(
            repository.to_dict(), separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
        try:
            fd = os.open(
                self.config_filename,
                os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                self.config.model_config_file_perms,
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise OSError(exc.errno, f"Error writing config file: {exc}") from exc

    def _update_model_config(self) -> None:
        """Write the config file and have the server reload it.

        Raises if the reload is not confirmed; failed model loads are not
        errors here, they show up in the cached statuses.
        """
        deadline = time.monotonic() + self.config.reload_timeout.total_seconds()
        try:
            self._write_config()
        except OSError as exc:
            raise OSError(
                exc.errno, f"Error updating model config when writing config file: {exc}"
            ) from exc

        code, body = self._send(
            self._reload_request,
            max(deadline - time.monotonic(), 0.001),
            "Communication error reloading the config",
            "Error reading config reload response body",
        )
        if code in (200, 201):
            try:
                self._cached_statuses = parse_config_response(body)
            except ValueError as exc:
                log.debug("Error parsing /config/reload response %r: %s", body, exc)
                raise ValueError(f"Error parsing /config/reload response: {exc}") from exc
            return

        # the reload reply has no model states; query them separately
        try:
            error = parse_error_response(body)
        except ValueError as exc:
            log.debug("Error parsing /config/reload error response %r: %s", body, exc)
            raise ValueError(f"Error parsing /config/reload error response: {exc}") from exc
        log.error(
            "Call to /v1/config/reload returned an error (code %d): "
            "Error response when reloading the config: %s", code, error,
        )
        self._get_config(max(deadline - time.monotonic(), 0.001))