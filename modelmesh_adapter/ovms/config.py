"""Adapter configuration for OpenVINO Model Server, read from the environment."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from modelmesh_adapter.envconfig import (
    get_env_bool,
    get_env_duration,
    get_env_float,
    get_env_int,
    get_env_string,
)
from modelmesh_adapter.ovms.layout import OVMS_MODEL_SUBDIR
from modelmesh_adapter.util import secure_join

__all__ = [
    "ADAPTER_PORT",
    "RUNTIME_PORT",
    "CONTAINER_MEM_REQ_BYTES",
    "MEM_BUFFER_BYTES",
    "LOADING_CONCURRENCY",
    "LOADTIME_TIMEOUT",
    "DEFAULT_MODELSIZE",
    "MODELSIZE_MULTIPLIER",
    "RUNTIME_VERSION",
    "LIMIT_PER_MODEL_CONCURRENCY",
    "ROOT_MODEL_DIR",
    "USE_EMBEDDED_PULLER",
    "MODEL_CONFIG_FILE",
    "BATCH_WAIT_TIME_MIN",
    "BATCH_WAIT_TIME_MAX",
    "OVMS_RELOAD_TIMEOUT",
    "AdapterConfiguration",
    "get_adapter_configuration_from_env",
]

ADAPTER_PORT = "ADAPTER_PORT"
DEFAULT_ADAPTER_PORT = 8085
RUNTIME_PORT = "RUNTIME_PORT"
DEFAULT_RUNTIME_PORT = 8001
CONTAINER_MEM_REQ_BYTES = "CONTAINER_MEM_REQ_BYTES"
DEFAULT_CONTAINER_MEM_REQ_BYTES = -1
MEM_BUFFER_BYTES = "MEM_BUFFER_BYTES"
DEFAULT_MEM_BUFFER_BYTES = 256 * 1024 * 1024
LOADING_CONCURRENCY = "LOADING_CONCURRENCY"
DEFAULT_LOADING_CONCURRENCY = 1
LOADTIME_TIMEOUT = "LOADTIME_TIMEOUT"
DEFAULT_LOADTIME_TIMEOUT_MS = 30000
DEFAULT_MODELSIZE = "DEFAULT_MODELSIZE"
DEFAULT_MODEL_SIZE_IN_BYTES = 1000000
MODELSIZE_MULTIPLIER = "MODELSIZE_MULTIPLIER"
DEFAULT_MODEL_SIZE_MULTIPLIER = 1.25
RUNTIME_VERSION = "RUNTIME_VERSION"
DEFAULT_RUNTIME_VERSION = "v1"
LIMIT_PER_MODEL_CONCURRENCY = "LIMIT_PER_MODEL_CONCURRENCY"
DEFAULT_LIMIT_PER_MODEL_CONCURRENCY = 0
ROOT_MODEL_DIR = "ROOT_MODEL_DIR"
DEFAULT_ROOT_MODEL_DIR = "/models"
USE_EMBEDDED_PULLER = "USE_EMBEDDED_PULLER"
DEFAULT_USE_EMBEDDED_PULLER = False

MODEL_CONFIG_FILE = "MODEL_CONFIG_FILE"
DEFAULT_MODEL_CONFIG_FILE = "/models/model_config_list.json"
BATCH_WAIT_TIME_MIN = "BATCH_WAIT_TIME_MIN"
DEFAULT_BATCH_WAIT_TIME_MIN = timedelta(milliseconds=100)
BATCH_WAIT_TIME_MAX = "BATCH_WAIT_TIME_MAX"
DEFAULT_BATCH_WAIT_TIME_MAX = timedelta(seconds=3)
OVMS_RELOAD_TIMEOUT = "OVMS_RELOAD_TIMEOUT"
DEFAULT_RELOAD_TIMEOUT = timedelta(seconds=30)


@dataclass
class AdapterConfiguration:
    """Settings of the OpenVINO Model Server adapter."""

    port: int = DEFAULT_ADAPTER_PORT
    ovms_port: int = DEFAULT_RUNTIME_PORT
    ovms_container_mem_req_bytes: int = 0
    ovms_mem_buffer_bytes: int = DEFAULT_MEM_BUFFER_BYTES
    max_loading_concurrency: int = DEFAULT_LOADING_CONCURRENCY
    model_loading_timeout_ms: int = DEFAULT_LOADTIME_TIMEOUT_MS
    default_model_size_in_bytes: int = DEFAULT_MODEL_SIZE_IN_BYTES
    model_size_multiplier: float = DEFAULT_MODEL_SIZE_MULTIPLIER
    runtime_version: str = DEFAULT_RUNTIME_VERSION
    limit_model_concurrency: int = DEFAULT_LIMIT_PER_MODEL_CONCURRENCY  # 0 means no limit
    root_model_dir: str = DEFAULT_ROOT_MODEL_DIR + "/" + OVMS_MODEL_SUBDIR
    use_embedded_puller: bool = DEFAULT_USE_EMBEDDED_PULLER
    model_config_file: str = DEFAULT_MODEL_CONFIG_FILE
    batch_wait_time_min: timedelta = DEFAULT_BATCH_WAIT_TIME_MIN
    batch_wait_time_max: timedelta = DEFAULT_BATCH_WAIT_TIME_MAX
    reload_timeout: timedelta = DEFAULT_RELOAD_TIMEOUT

    @property
    def capacity_in_bytes(self) -> int:
        """Container memory request less the reserved buffer."""
        return self.ovms_container_mem_req_bytes - self.ovms_mem_buffer_bytes


def _format_number(value: float) -> str:
    if value == value and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def get_adapter_configuration_from_env(
    environ: Mapping[str, str] | None = None,
) -> AdapterConfiguration:
    """Build the configuration from environment variables.

    Raises ``EnvConfigError`` for unparsable values and ``ValueError`` for
    values out of range or an unusable model directory.
    """
    config = AdapterConfiguration(
        port=get_env_int(ADAPTER_PORT, DEFAULT_ADAPTER_PORT, environ),
        ovms_port=get_env_int(RUNTIME_PORT, DEFAULT_RUNTIME_PORT, environ),
        ovms_container_mem_req_bytes=get_env_int(
            CONTAINER_MEM_REQ_BYTES, DEFAULT_CONTAINER_MEM_REQ_BYTES, environ
        ),
        ovms_mem_buffer_bytes=get_env_int(MEM_BUFFER_BYTES, DEFAULT_MEM_BUFFER_BYTES, environ),
        max_loading_concurrency=get_env_int(
            LOADING_CONCURRENCY, DEFAULT_LOADING_CONCURRENCY, environ
        ),
        model_loading_timeout_ms=get_env_int(
            LOADTIME_TIMEOUT, DEFAULT_LOADTIME_TIMEOUT_MS, environ
        ),
        default_model_size_in_bytes=get_env_int(
            DEFAULT_MODELSIZE, DEFAULT_MODEL_SIZE_IN_BYTES, environ
        ),
        model_size_multiplier=get_env_float(
            MODELSIZE_MULTIPLIER, DEFAULT_MODEL_SIZE_MULTIPLIER, environ
        ),
        runtime_version=get_env_string(RUNTIME_VERSION, DEFAULT_RUNTIME_VERSION, environ),
        limit_model_concurrency=get_env_int(
            LIMIT_PER_MODEL_CONCURRENCY, DEFAULT_LIMIT_PER_MODEL_CONCURRENCY, environ
        ),
        use_embedded_puller=get_env_bool(
            USE_EMBEDDED_PULLER, DEFAULT_USE_EMBEDDED_PULLER, environ
        ),
    )

    root = get_env_string(ROOT_MODEL_DIR, DEFAULT_ROOT_MODEL_DIR, environ)
    try:
        config.root_model_dir = secure_join(root, OVMS_MODEL_SUBDIR)
    except (OSError, ValueError) as exc:
        raise ValueError(f"Could not construct model store path: {exc}") from exc

    config.model_config_file = get_env_string(
        MODEL_CONFIG_FILE, DEFAULT_MODEL_CONFIG_FILE, environ
    )
    config.batch_wait_time_min = get_env_duration(
        BATCH_WAIT_TIME_MIN, DEFAULT_BATCH_WAIT_TIME_MIN, environ
    )
    config.batch_wait_time_max = get_env_duration(
        BATCH_WAIT_TIME_MAX, DEFAULT_BATCH_WAIT_TIME_MAX, environ
    )
    config.reload_timeout = get_env_duration(
        OVMS_RELOAD_TIMEOUT, DEFAULT_RELOAD_TIMEOUT, environ
    )

    if config.ovms_container_mem_req_bytes < 0:
        raise ValueError(
            f"{CONTAINER_MEM_REQ_BYTES} environment variable must be set to a positive "
            f"integer, found value {config.ovms_container_mem_req_bytes}"
        )
    if config.model_size_multiplier <= 0:
        raise ValueError(
            f"{MODELSIZE_MULTIPLIER} environment variable must be greater than 0, "
            f"found value {_format_number(config.model_size_multiplier)}"
        )
    return config