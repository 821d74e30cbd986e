"""Adapt pulled model files into the versioned layout OpenVINO Model Server loads."""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
from collections.abc import Iterable
from typing import Any

from modelmesh_adapter.util import secure_join

__all__ = [
    "TFS_GRPC_SERVICE_NAME",
    "KSERVE_V2_GRPC_SERVICE_NAME",
    "OVMS_MODEL_SUBDIR",
    "ONNX_MODEL_FILENAME",
    "adapt_model_layout_for_runtime",
    "largest_number_dir",
]

log = logging.getLogger(__name__)

TFS_GRPC_SERVICE_NAME = "tensorflow.serving.PredictionService"
KSERVE_V2_GRPC_SERVICE_NAME = "inference.GRPCInferenceService"
OVMS_MODEL_SUBDIR = "_ovms_models"
ONNX_MODEL_FILENAME = "model.onnx"

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_LIMIT = 1 << 63


def _wrap(exc: BaseException, message: str) -> Exception:
    if isinstance(exc, OSError):
        if exc.errno is None:
            return OSError(message)
        return OSError(exc.errno, message)
    return ValueError(message)


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _remove_all(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except FileNotFoundError:
        pass


def _atoi(text: str) -> int | None:
    if not _INT_RE.fullmatch(text):
        return None
    value = int(text)
    if not -_INT64_LIMIT <= value < _INT64_LIMIT:
        return None
    return value


def _is_dir(entry: Any) -> bool:
    try:
        return entry.is_dir(follow_symlinks=False)
    except TypeError:
        return entry.is_dir()


def largest_number_dir(entries: Iterable[Any]) -> str:
    """Name of the largest positive numbered directory among ``entries``.

    Files are ignored. Returns ``""`` if there is no such directory or if any
    directory name is not an integer.
    """
    largest = 0
    largest_name = ""
    for entry in entries:
        if not _is_dir(entry):
            continue
        number = _atoi(entry.name)
        if number is None:
            return ""
        if number > largest:
            largest = number
            largest_name = entry.name
    return largest_name


def _create_repository_from_path(
    model_path: str, version: str, schema_path: str, model_type: str, model_dir: str
) -> None:
    """Link ``model_path`` in as ``model_dir/version`` (or a file inside it)."""
    try:
        info = os.stat(model_path)
    except OSError as exc:
        raise _wrap(exc, f"Error calling stat on {model_path}: {exc}") from exc

    components = [model_dir, version]
    if not stat.S_ISDIR(info.st_mode):
        # ONNX model files are renamed to what the server expects
        components.append(ONNX_MODEL_FILENAME if model_type == "onnx" else _base(model_path))

    try:
        link_path = secure_join(*components)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"Error joining link path: {exc}") from exc

    try:
        os.makedirs(os.path.dirname(link_path), 0o755, exist_ok=True)
    except OSError as exc:
        raise _wrap(exc, f"Error creating directories for path {link_path}: {exc}") from exc

    try:
        os.symlink(model_path, link_path)
    except OSError as exc:
        raise _wrap(exc, f"Error creating symlink: {exc}") from exc


def _create_repository_from_directory(
    entries: list[os.DirEntry], model_path: str, schema_path: str, model_type: str, model_dir: str
) -> None:
    """Use the largest version subdirectory if there is one, else version 1."""
    version = largest_number_dir(entries)
    if version:
        model_path = secure_join(model_path, version)
    else:
        version = "1"
    _create_repository_from_path(model_path, version, schema_path, model_type, model_dir)


def adapt_model_layout_for_runtime(
    root_model_dir: str,
    model_id: str,
    model_type: str,
    model_path: str,
    schema_path: str = "",
) -> None:
    """Create ``root_model_dir/model_id/<version>`` linking to the model's files."""
    model_type = model_type.split(":")[0].lower()

    model_dir = secure_join(root_model_dir, model_id)
    try:
        _remove_all(model_dir)
    except OSError as exc:
        log.info("Ignoring error trying to remove dir %s: %s", model_dir, exc)
    try:
        os.makedirs(model_dir, 0o755, exist_ok=True)
    except OSError as exc:
        raise _wrap(exc, f"Error creating directories for path {model_dir}: {exc}") from exc

    try:
        info = os.stat(model_path)
    except OSError as exc:
        raise _wrap(exc, f"Error calling stat on model file: {exc}") from exc

    entries: list[os.DirEntry] = []
    if stat.S_ISDIR(info.st_mode):
        try:
            with os.scandir(model_path) as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError as exc:
            raise _wrap(exc, f"Could not read files in dir {model_path}: {exc}") from exc

    try:
        if stat.S_ISDIR(info.st_mode):
            _create_repository_from_directory(
                entries, model_path, schema_path, model_type, model_dir
            )
        else:
            _create_repository_from_path(model_path, "1", schema_path, model_type, model_dir)
    except (OSError, ValueError) as exc:
        raise _wrap(
            exc, f"Error processing model/schema files for model {model_id}: {exc}"
        ) from exc