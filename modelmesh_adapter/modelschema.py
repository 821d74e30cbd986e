"""Model schema files: a subset of the KServe V2 model metadata."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

__all__ = [
    "MODEL_SCHEMA_FILE",
    "Datatype",
    "ModelSchemaError",
    "TensorMetadata",
    "ModelSchema",
    "load_schema",
]

MODEL_SCHEMA_FILE = "_schema.json"


class Datatype(str, Enum):
    """Tensor datatypes, including the STRING extension."""

    BYTES = "BYTES"
    BOOL = "BOOL"
    UINT8 = "UINT8"
    UINT16 = "UINT16"
    UINT32 = "UINT32"
    UINT64 = "UINT64"
    INT8 = "INT8"
    INT16 = "INT16"
    INT32 = "INT32"
    INT64 = "INT64"
    FP16 = "FP16"
    FP32 = "FP32"
    FP64 = "FP64"
    STRING = "STRING"


class ModelSchemaError(Exception):
    """A schema file could not be read or parsed."""


@dataclass
class TensorMetadata:
    """Name, datatype and shape of one input or output tensor."""

    name: str = ""
    datatype: str = ""
    shape: list[int] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the tensor as a JSON-ready mapping."""
        return {
            "name": self.name,
            "datatype": self.datatype,
            "shape": None if self.shape is None else list(self.shape),
        }


@dataclass
class ModelSchema:
    """Inputs and outputs of a model; ``None`` means the field was absent."""

    inputs: list[TensorMetadata] | None = None
    outputs: list[TensorMetadata] | None = None


def _string_field(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ModelSchemaError(f"Unable to parse model schema JSON: {key!r} must be a string")
    return value


def _parse_shape(value: Any) -> list[int] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ModelSchemaError("Unable to parse model schema JSON: 'shape' must be an array")
    shape = []
    for dim in value:
        if dim is None:
            shape.append(0)
        elif isinstance(dim, int) and not isinstance(dim, bool):
            shape.append(dim)
        else:
            raise ModelSchemaError(
                f"Unable to parse model schema JSON: shape entry {dim!r} is not an integer"
            )
    return shape


def _parse_tensor(obj: Any) -> TensorMetadata:
    if obj is None:
        return TensorMetadata()
    if not isinstance(obj, dict):
        raise ModelSchemaError("Unable to parse model schema JSON: tensor must be an object")
    return TensorMetadata(
        name=_string_field(obj, "name"),
        datatype=_string_field(obj, "datatype"),
        shape=_parse_shape(obj.get("shape")),
    )


def _parse_tensors(value: Any, key: str) -> list[TensorMetadata] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ModelSchemaError(f"Unable to parse model schema JSON: {key!r} must be an array")
    return [_parse_tensor(item) for item in value]


def _parse_schema(data: Any) -> ModelSchema:
    if data is None:
        return ModelSchema()
    if not isinstance(data, dict):
        raise ModelSchemaError("Unable to parse model schema JSON: expected an object")
    return ModelSchema(
        inputs=_parse_tensors(data.get("inputs"), "inputs"),
        outputs=_parse_tensors(data.get("outputs"), "outputs"),
    )


def load_schema(path: str) -> ModelSchema:
    """Read and parse the schema JSON file at ``path``."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise ModelSchemaError(f"Unable to read model schema file {path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ModelSchemaError(f"Unable to parse model schema JSON: {exc}") from exc
    return _parse_schema(data)