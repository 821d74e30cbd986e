"""The OVMS multi-model config file and the replies of its config REST API."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "OvmsModelConfig",
    "OvmsRepositoryConfig",
    "OvmsModelStatus",
    "OvmsModelVersionStatus",
    "parse_repository_config",
    "parse_config_response",
    "parse_error_response",
]


@dataclass
class OvmsModelConfig:
    """One model entry of the multi-model config file."""

    name: str = ""
    base_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the entry's ``config`` object."""
        return {"name": self.name, "base_path": self.base_path}


@dataclass
class OvmsRepositoryConfig:
    """The whole multi-model config file."""

    model_config_list: list[OvmsModelConfig] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the file's JSON-ready contents."""
        return {
            "model_config_list": [{"config": model.to_dict()} for model in self.model_config_list]
        }


@dataclass
class OvmsModelStatus:
    """Error code and message of one model version."""

    error_code: str = ""
    error_message: str = ""


@dataclass
class OvmsModelVersionStatus:
    """State of one model version as reported by the server."""

    version: str = ""
    state: str = ""
    status: OvmsModelStatus = field(default_factory=OvmsModelStatus)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _load(data: bytes | str) -> Any:
    return json.loads(data, parse_constant=_reject_constant)


def _object(value: Any, what: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


def _array(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a JSON array")
    return value


def _string(obj: dict[str, Any] | None, key: str) -> str:
    if obj is None:
        return ""
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string")
    return value


def parse_repository_config(data: bytes | str) -> OvmsRepositoryConfig:
    """Parse the contents of a multi-model config file."""
    root = _object(_load(data), "model config")
    if root is None:
        return OvmsRepositoryConfig()
    models = []
    for item in _array(root.get("model_config_list"), "'model_config_list'"):
        entry = _object(item, "model config entry")
        config = _object(entry.get("config") if entry else None, "'config'")
        models.append(
            OvmsModelConfig(name=_string(config, "name"), base_path=_string(config, "base_path"))
        )
    return OvmsRepositoryConfig(model_config_list=models)


def _parse_version_status(item: Any) -> OvmsModelVersionStatus:
    obj = _object(item, "model version status")
    status = _object(obj.get("status") if obj else None, "'status'")
    return OvmsModelVersionStatus(
        version=_string(obj, "version"),
        state=_string(obj, "state"),
        status=OvmsModelStatus(
            error_code=_string(status, "error_code"),
            error_message=_string(status, "error_message"),
        ),
    )


def parse_config_response(data: bytes | str) -> dict[str, list[OvmsModelVersionStatus]]:
    """Parse a ``/v1/config`` reply into version statuses keyed by model name."""
    root = _object(_load(data), "config response")
    if root is None:
        return {}
    result = {}
    for name, value in root.items():
        model = _object(value, f"status of model {name!r}")
        versions = _array(
            model.get("model_version_status") if model else None, "'model_version_status'"
        )
        result[name] = [_parse_version_status(item) for item in versions]
    return result


def parse_error_response(data: bytes | str) -> str:
    """Return the ``error`` message of an error reply."""
    return _string(_object(_load(data), "error response"), "error")