"""Helpers shared by the runtime adapters: endpoints, paths and model keys."""

from __future__ import annotations

import errno
import json
import logging
import os
import re
import shutil
import stat
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from modelmesh_adapter.mesh import LoadModelRequest

__all__ = [
    "resolve_local_grpc_endpoint",
    "remove_file_from_entries",
    "file_exists",
    "clear_directory_contents",
    "secure_join",
    "get_model_type",
    "get_schema_path",
    "calc_mem_capacity",
]

log = logging.getLogger(__name__)

_PORT_ENDPOINT_RE = re.compile(r"port:[0-9]+")
_MAX_SYMLINKS = 255
_UINT64_LIMIT = 1 << 64

_MODEL_TYPE_KEY = "model_type"
_SCHEMA_PATH_KEY = "schema_path"
_DISK_SIZE_KEY = "disk_size_bytes"

T = TypeVar("T")


def resolve_local_grpc_endpoint(endpoint: str) -> str:
    """Turn ``port:N`` into ``localhost:N``; pass ``unix:`` endpoints through."""
    if _PORT_ENDPOINT_RE.fullmatch(endpoint):
        return endpoint.replace("port", "localhost", 1)
    if not endpoint.startswith("unix:"):
        raise ValueError("Invalid Endpoint: " + endpoint)
    return endpoint


def remove_file_from_entries(filename: str, entries: Sequence[T]) -> tuple[bool, list[T]]:
    """Drop the last entry named ``filename``, moving the final entry into its place.

    Returns whether an entry was removed and the resulting list; the input is left as is.
    """
    index = -1
    for position, entry in enumerate(entries):
        if entry.name == filename:
            index = position
    result = list(entries)
    if index == -1:
        return False, result
    result[index] = result[-1]
    result.pop()
    return True, result


def file_exists(path: str) -> bool:
    """Whether something exists at ``path``; errors other than absence are raised."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    return True


def clear_directory_contents(
    dir_path: str, condition: Callable[[os.DirEntry], bool] | None = None
) -> None:
    """Remove the entries of ``dir_path`` (those ``condition`` accepts, if given).

    A missing directory is not an error.
    """
    try:
        with os.scandir(dir_path) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise OSError(
            exc.errno, f"Error listing files to clean up in model dir {dir_path}: {exc}"
        ) from exc

    for entry in entries:
        if condition is not None and not condition(entry):
            continue
        path = os.path.join(dir_path, entry.name)
        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(path)
            else:
                os.unlink(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise OSError(
                exc.errno,
                f"Error removing preexisting entry from model store dir: {path}: {exc}",
            ) from exc


def _clean(path: str) -> str:
    """Lexically normalise a slash-separated path."""
    if not path:
        return "."
    rooted = path.startswith("/")
    parts: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts and parts[-1] != "..":
                parts.pop()
            elif not rooted:
                parts.append("..")
        else:
            parts.append(segment)
    joined = "/".join(parts)
    if rooted:
        return "/" + joined
    return joined or "."


def _join(*elements: str) -> str:
    present = [element for element in elements if element]
    if not present:
        return ""
    return _clean("/".join(present))


def _secure_join_pair(root: str, unsafe_path: str) -> str:
    path = ""
    links = 0
    while unsafe_path:
        if links > _MAX_SYMLINKS:
            raise OSError(
                errno.ELOOP, "too many levels of symbolic links", root + "/" + unsafe_path
            )
        component, _, unsafe_path = unsafe_path.partition("/")
        clean_component = _clean("/" + path + component)
        if clean_component == "/":
            path = ""
            continue
        full_path = _clean(root + clean_component)
        try:
            info = os.lstat(full_path)
        except (FileNotFoundError, NotADirectoryError):
            info = None
        if info is None or not stat.S_ISLNK(info.st_mode):
            path += component + "/"
            continue
        links += 1
        destination = os.readlink(full_path)
        if destination.startswith("/"):
            path = ""
        unsafe_path = destination + "/" + unsafe_path
    return _clean(root + _clean("/" + path))


def secure_join(*elements: str) -> str:
    """Join paths under the first one, resolving symlinks as if it were the root."""
    if len(elements) > 2:
        return _secure_join_pair(elements[0], _join(*elements[1:]))
    if len(elements) == 2:
        return _secure_join_pair(elements[0], elements[1])
    raise ValueError("Expected at least 2 parameters")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _parse_model_key(model_key: str) -> dict[str, Any]:
    data = json.loads(model_key, parse_constant=_reject_constant)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"model key must be a JSON object, got {type(data).__name__}")
    return data


def get_model_type(request: LoadModelRequest) -> str:
    """Model type from the request's model key, falling back to ``request.model_type``."""
    fallback = request.model_type
    try:
        model_key = _parse_model_key(request.model_key)
    except ValueError as exc:
        log.info(
            "Model type falls back to LoadModelRequest.model_type %r as the model key %r "
            "is not valid JSON: %s",
            fallback, request.model_key, exc,
        )
        return fallback

    value = model_key.get(_MODEL_TYPE_KEY)
    if value is None:
        log.info(
            "Model type falls back to LoadModelRequest.model_type %r as the model key "
            "has no %r attribute",
            fallback, _MODEL_TYPE_KEY,
        )
        return fallback
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str):
            return name
        log.info(
            "Model type falls back to LoadModelRequest.model_type %r as the model key "
            "attribute %r is not a string: %r",
            fallback, _MODEL_TYPE_KEY, value,
        )
        return fallback
    if isinstance(value, str):
        return value
    log.info(
        "Model type falls back to LoadModelRequest.model_type %r as the model key "
        "attribute %r is not a string or object: %r",
        fallback, _MODEL_TYPE_KEY, value,
    )
    return fallback


def get_schema_path(request: LoadModelRequest) -> str:
    """Schema path from the model key, or ``""`` if there is none."""
    try:
        model_key = _parse_model_key(request.model_key)
    except ValueError as exc:
        raise ValueError(
            f"Invalid modelKey in LoadModelRequest. ModelKey value '{request.model_key}' "
            f"is not valid JSON: {exc}"
        ) from exc
    value = model_key.get(_SCHEMA_PATH_KEY)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(
            f"Invalid schemaPath in LoadModelRequest, '{_SCHEMA_PATH_KEY}' attribute must "
            f"have a string value. Found value {value}"
        )
    return value


def _to_uint64(value: float) -> int:
    if not value > 0:
        return 0
    if value >= _UINT64_LIMIT:
        return _UINT64_LIMIT - 1
    return int(value)


def calc_mem_capacity(model_key: str, default_size: int, multiplier: float) -> int:
    """Memory size for a model: its disk size times ``multiplier``, else ``default_size``."""
    size = default_size % _UINT64_LIMIT
    try:
        key = _parse_model_key(model_key)
    except ValueError as exc:
        log.info(
            "Size in bytes defaults to %d as the model key %r is not valid JSON: %s",
            size, model_key, exc,
        )
        return size

    disk_size = key.get(_DISK_SIZE_KEY)
    if disk_size is None:
        log.info(
            "Size in bytes defaults to %d as the model key has no value for %r",
            size, _DISK_SIZE_KEY,
        )
        return size
    if isinstance(disk_size, bool) or not isinstance(disk_size, (int, float)):
        log.info(
            "Size in bytes defaults to %d as the model key %r value is not a number",
            size, _DISK_SIZE_KEY,
        )
        return size
    try:
        size = _to_uint64(float(disk_size) * multiplier)
    except OverflowError:
        log.info("Size in bytes defaults to %d as the disk size is out of range", size)
        return size
    log.info(
        "Setting size in bytes to %d, a multiple %s of model disk size %s",
        size, multiplier, disk_size,
    )
    return size