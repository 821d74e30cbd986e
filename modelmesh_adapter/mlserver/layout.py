"""Adapt pulled model files into a repository layout MLServer can load."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from typing import Any

from modelmesh_adapter.modelschema import ModelSchema, ModelSchemaError, load_schema
from modelmesh_adapter.util import secure_join

__all__ = [
    "MLSERVER_REPOSITORY_CONFIG_FILENAME",
    "MODEL_TYPE_IMPLEMENTATIONS",
    "adapt_model_layout_for_runtime",
    "process_config_json",
    "generate_model_config_json",
    "process_schema",
]

log = logging.getLogger(__name__)

MLSERVER_REPOSITORY_CONFIG_FILENAME = "model-settings.json"

MODEL_TYPE_IMPLEMENTATIONS = {
    "lightgbm": "mlserver_lightgbm.LightGBMModel",
    "sklearn": "mlserver_sklearn.SKLearnModel",
    "xgboost": "mlserver_xgboost.XGBoostModel",
    "mllib": "mlserver-mllib.MLlibModel",
}

_JSON_ESCAPES = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "&": "\\u0026",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _parse_json_object(raw: bytes) -> dict[str, Any]:
    data = json.loads(raw, parse_int=float, parse_constant=_reject_constant)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _marshal_indent(obj: Any) -> bytes:
    text = json.dumps(
        _normalize(obj), indent=2, sort_keys=True, ensure_ascii=False, allow_nan=False
    )
    return text.translate(_JSON_ESCAPES).encode("utf-8")


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


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def process_schema(config: dict[str, Any], schema: ModelSchema) -> None:
    """Write the schema's inputs and outputs (where present) into ``config``."""
    if schema.inputs is not None:
        config["inputs"] = [tensor.to_dict() for tensor in schema.inputs]
    if schema.outputs is not None:
        config["outputs"] = [tensor.to_dict() for tensor in schema.outputs]


def _apply_schema_file(config: dict[str, Any], schema_path: str) -> None:
    try:
        schema = load_schema(schema_path)
    except ModelSchemaError as exc:
        raise ValueError(f"Error parsing schema file: {exc}") from exc
    process_schema(config, schema)


def process_config_json(
    json_in: bytes | str, model_id: str, target_dir: str, schema_path: str = ""
) -> bytes:
    """Set the model's name, make its uri absolute under ``target_dir`` and add the schema.

    Input that cannot be parsed or re-serialised is returned unchanged.
    """
    raw = json_in.encode("utf-8") if isinstance(json_in, str) else bytes(json_in)
    try:
        config = _parse_json_object(raw)
    except ValueError as exc:
        log.info("Unable to parse config file for model %s: %s", model_id, exc)
        return raw

    config["name"] = model_id

    parameters = config.get("parameters")
    if parameters is not None:
        if not isinstance(parameters, dict):
            raise ValueError("'parameters' in the model settings must be an object")
        uri = parameters.get("uri")
        if uri is not None:
            if not isinstance(uri, str):
                raise ValueError("'parameters.uri' in the model settings must be a string")
            try:
                new_uri = secure_join(target_dir, uri)
            except (OSError, ValueError) as exc:
                log.info("Error joining paths %s and %s: %s", target_dir, uri, exc)
                return raw
            parameters["uri"] = new_uri
            log.info("Rewrote model uri in settings file from %s to %s", uri, new_uri)

    if schema_path:
        _apply_schema_file(config, schema_path)
        log.info("Injected schema information from %s into settings file", schema_path)

    try:
        return _marshal_indent(config)
    except ValueError as exc:
        log.info("Unable to serialise config file for model %s: %s", model_id, exc)
        return raw


def generate_model_config_json(
    model_id: str, model_type: str, uri: str, schema_path: str = ""
) -> bytes:
    """Build a model settings file for a model that came without one."""
    config: dict[str, Any] = {"name": model_id}
    implementation = MODEL_TYPE_IMPLEMENTATIONS.get(model_type, "")
    if implementation:
        config["implementation"] = implementation
    # an unknown model type leaves the implementation out
    config["parameters"] = {"uri": uri}

    if schema_path:
        _apply_schema_file(config, schema_path)

    try:
        out = _marshal_indent(config)
    except ValueError as exc:
        raise ValueError(f"Unable to marshal JSON: {exc}") from exc

    log.info(
        "Generated model settings file (schema %r, implementation %r)",
        schema_path, implementation,
    )
    return out


def _adapt_native_model_layout(
    entries: list[os.DirEntry],
    model_id: str,
    model_path: str,
    schema_path: str,
    target_dir: str,
) -> None:
    """Rewrite the existing settings file and symlink every other entry."""
    for entry in entries:
        name = entry.name
        source = secure_join(model_path, name)
        if name == MLSERVER_REPOSITORY_CONFIG_FILENAME:
            try:
                with open(source, "rb") as handle:
                    config_json = handle.read()
            except OSError as exc:
                raise _wrap(exc, f"could not read model config file {source}: {exc}") from exc
            try:
                processed = process_config_json(config_json, model_id, target_dir, schema_path)
            except ValueError as exc:
                raise ValueError(f"Error processing config file {source}: {exc}") from exc
            target = secure_join(target_dir, MLSERVER_REPOSITORY_CONFIG_FILENAME)
            mode = stat.S_IMODE(entry.stat(follow_symlinks=False).st_mode)
            try:
                _write_file(target, processed, mode)
            except OSError as exc:
                raise _wrap(exc, f"error writing config file {source}: {exc}") from exc
            continue
        link = secure_join(target_dir, name)
        try:
            os.symlink(source, link)
        except OSError as exc:
            raise _wrap(exc, f"error creating symlink to {source}: {exc}") from exc

    log.info(
        "Adapted model directory %s with existing settings file (%d entries, schema %r) into %s",
        model_path, len(entries), schema_path, target_dir,
    )


def _adapt_model_layout(
    model_id: str,
    model_type: str,
    model_path: str,
    schema_path: str,
    target_dir: str,
    is_dir: bool,
) -> None:
    """Symlink the model file or directory and generate a settings file for it."""
    link_path = secure_join(target_dir, _base(model_path))
    try:
        os.symlink(model_path, link_path)
    except OSError as exc:
        raise _wrap(exc, f"Error creating symlink: {exc}") from exc

    try:
        config_json = generate_model_config_json(model_id, model_type, link_path, schema_path)
    except ValueError as exc:
        raise ValueError(f"Error generating config file for {model_id}: {exc}") from exc

    target = secure_join(target_dir, MLSERVER_REPOSITORY_CONFIG_FILENAME)
    try:
        _write_file(target, config_json, 0o664)
    except OSError as exc:
        raise _wrap(exc, f"Error writing generated config file for {model_id}: {exc}") from exc

    log.info(
        "Adapted model path %s (directory: %s) via symlink %s and settings file %s",
        model_path, is_dir, link_path, target,
    )


def adapt_model_layout_for_runtime(
    root_model_dir: str,
    model_id: str,
    model_type: str,
    model_path: str,
    schema_path: str = "",
) -> None:
    """Create ``root_model_dir/model_id`` holding a loadable layout of ``model_path``."""
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
        raise _wrap(exc, f"Error calling stat on {model_path}: {exc}") from exc

    if stat.S_ISDIR(info.st_mode):
        try:
            with os.scandir(model_path) as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError as exc:
            raise _wrap(exc, f"Could not read files in dir {model_path}: {exc}") from exc
        config_index = next(
            (
                position
                for position, entry in enumerate(entries)
                if entry.name == MLSERVER_REPOSITORY_CONFIG_FILENAME
            ),
            -1,
        )
        # the settings file goes first so that its uri is rewritten before links exist
        if config_index > 0:
            entries[0], entries[config_index] = entries[config_index], entries[0]

    try:
        if not stat.S_ISDIR(info.st_mode):
            _adapt_model_layout(model_id, model_type, model_path, schema_path, model_dir, False)
        elif config_index >= 0:
            _adapt_native_model_layout(entries, model_id, model_path, schema_path, model_dir)
        else:
            _adapt_model_layout(model_id, model_type, model_path, schema_path, model_dir, True)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"Error adapting model directory {model_path}: {exc}") from exc