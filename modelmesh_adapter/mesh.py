"""Messages and status codes exchanged with the model-mesh runtime API."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

__all__ = [
    "StatusCode",
    "StatusError",
    "LoadModelRequest",
    "LoadModelResponse",
    "UnloadModelRequest",
    "UnloadModelResponse",
    "RuntimeState",
    "MethodInfo",
    "RuntimeStatusResponse",
    "status_code_of",
]


class StatusCode(IntEnum):
    """gRPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @property
    def label(self) -> str:
        """The camel-case name used in error messages."""
        if self is StatusCode.OK:
            return "OK"
        if self is StatusCode.CANCELLED:
            return "Canceled"
        return "".join(part.capitalize() for part in self.name.split("_"))


class StatusError(Exception):
    """An error carrying a gRPC status code."""

    def __init__(self, code: StatusCode | int, message: str = "") -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.label} desc = {self.message}"


def status_code_of(error: BaseException | None) -> StatusCode:
    """Return the status code of ``error``, following explicit causes.

    ``None`` means success; errors without a status are UNKNOWN.
    """
    if error is None:
        return StatusCode.OK
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        if isinstance(current, StatusError):
            return current.code
        seen.add(id(current))
        current = current.__cause__
    return StatusCode.UNKNOWN


@dataclass
class LoadModelRequest:
    """A request to load one model."""

    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass
class LoadModelResponse:
    """The outcome of a successful load."""

    size_in_bytes: int = 0
    max_concurrency: int = 0


@dataclass
class UnloadModelRequest:
    """A request to unload one model."""

    model_id: str = ""


@dataclass
class UnloadModelResponse:
    """The (empty) outcome of a successful unload."""


class RuntimeState(IntEnum):
    """Readiness of the model server runtime."""

    STARTING = 0
    READY = 1
    FAILING = 2


@dataclass(frozen=True)
class MethodInfo:
    """Where in a request message the model id is injected."""

    id_injection_path: tuple[int, ...] = ()


@dataclass
class RuntimeStatusResponse:
    """Status and capabilities of the runtime."""

    status: RuntimeState = RuntimeState.STARTING
    capacity_in_bytes: int = 0
    max_loading_concurrency: int = 0
    model_loading_timeout_ms: int = 0
    default_model_size_in_bytes: int = 0
    runtime_version: str = ""
    limit_model_concurrency: bool = False
    method_infos: dict[str, MethodInfo] = field(default_factory=dict)