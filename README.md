# modelmesh-adapter

Adapters that sit between a model mesh and a model-serving runtime. An
adapter takes model files that are already on local disk, arranges them in
the layout the runtime expects, asks the runtime to load or unload them, and
reports the runtime's capacity and readiness.

Two runtimes are supported:

- **MLServer**: `modelmesh_adapter.mlserver`
- **OpenVINO Model Server (OVMS)**: `modelmesh_adapter.ovms`

The package uses only the standard library. It is POSIX-oriented: model
layouts are built from symbolic links.

## Configuration

Both adapters read their settings from environment variables. The loaders
take any mapping; with no argument they read `os.environ`:

```python
from modelmesh_adapter.mlserver.config import get_adapter_configuration_from_env

config = get_adapter_configuration_from_env()
```

Common variables:

| Variable                      | Default    | Meaning                                              |
|-------------------------------|------------|------------------------------------------------------|
| `ADAPTER_PORT`                | `8085`     | Port setting for the adapter                         |
| `RUNTIME_PORT`                | `8001`     | Port of the serving runtime                          |
| `CONTAINER_MEM_REQ_BYTES`     | *required* | Memory request of the runtime container              |
| `MEM_BUFFER_BYTES`            | 256 MiB    | Memory held back from the reported capacity          |
| `LOADING_CONCURRENCY`         | `1`        | Maximum concurrent model loads                       |
| `LOADTIME_TIMEOUT`            | `30000`    | Model loading timeout in milliseconds                |
| `DEFAULT_MODELSIZE`           | `1000000`  | Model size used when the disk size is unknown        |
| `MODELSIZE_MULTIPLIER`        | `1.25`     | Factor applied to a model's disk size (must be > 0)  |
| `RUNTIME_VERSION`             | `v1`       | Reported runtime version                             |
| `LIMIT_PER_MODEL_CONCURRENCY` | `0`        | Per-model request concurrency, `0` means no limit    |
| `ROOT_MODEL_DIR`              | `/models`  | Root under which adapted model directories are made  |
| `USE_EMBEDDED_PULLER`         | `false`    | Must stay false; see below                           |

Adapted models go under `ROOT_MODEL_DIR/_mlserver_models` or
`ROOT_MODEL_DIR/_ovms_models`. The reported capacity
(`config.capacity_in_bytes`) is `CONTAINER_MEM_REQ_BYTES - MEM_BUFFER_BYTES`.
A missing or negative `CONTAINER_MEM_REQ_BYTES`, or a multiplier that is not
positive, raises `ValueError`.

The OVMS adapter additionally reads:

| Variable              | Default                          |
|-----------------------|----------------------------------|
| `MODEL_CONFIG_FILE`   | `/models/model_config_list.json` |
| `BATCH_WAIT_TIME_MIN` | `100ms`                          |
| `BATCH_WAIT_TIME_MAX` | `3s`                             |
| `OVMS_RELOAD_TIMEOUT` | `30s`                            |

Durations use the `300ms`, `1.5s`, `2h45m` form
(`modelmesh_adapter.envconfig.parse_duration`). Values that cannot be parsed
raise `modelmesh_adapter.envconfig.EnvConfigError`.

## Requests and responses

The messages exchanged with the model mesh live in `modelmesh_adapter.mesh`:
`LoadModelRequest`, `LoadModelResponse`, `UnloadModelRequest`,
`UnloadModelResponse` and `RuntimeStatusResponse` (with `RuntimeState` and
`MethodInfo`). Failures are raised as `StatusError`, which carries a
`StatusCode`; `status_code_of` finds the code of an error.

A request's model key is a JSON string. It may carry `model_type` (a string
or an object with a `name`), `schema_path`, and `disk_size_bytes`; the last,
times the size multiplier, becomes the model's reported size, otherwise the
default size is reported.

## MLServer

`MLServerAdapterServer(client, config)` takes an object that talks to
MLServer and provides these methods:

- `server_ready() -> bool`
- `server_metadata() -> str` (the server version, may be empty)
- `repository_index(ready: bool) -> sequence of model names`
- `repository_model_load(model_name: str) -> None`
- `repository_model_unload(model_name: str) -> None`

Errors the client raises may be `StatusError` instances.

```python
from modelmesh_adapter.mesh import LoadModelRequest, UnloadModelRequest
from modelmesh_adapter.mlserver.server import MLServerAdapterServer

server = MLServerAdapterServer(client, config)

status = server.runtime_status()
response = server.load_model(
    LoadModelRequest(
        model_id="mnist-svm",
        model_type="sklearn",
        model_path="/models/mnist-svm",
        model_key='{"disk_size_bytes": 54321}',
    )
)
server.unload_model(UnloadModelRequest(model_id="mnist-svm"))
```

`runtime_status()` unloads every model MLServer reports, clears the adapted
model directory and reports `READY`; if MLServer is unreachable or not ready
it reports `STARTING`. An unload that MLServer answers with
`INVALID_ARGUMENT` or `NOT_FOUND` still removes the model's files.

When a model directory already holds a `model-settings.json`, the layout is
kept: the settings' `name` becomes the model id, a relative
`parameters.uri` is made absolute, and every other entry is linked.
Otherwise the model file or directory is linked and a settings file is
written, with the implementation chosen for `sklearn`, `xgboost`,
`lightgbm` and `mllib` models. A schema file named by the model key's
`schema_path` fills in `inputs` and `outputs`.

The layout step is available on its own as
`modelmesh_adapter.mlserver.layout.adapt_model_layout_for_runtime`, along
with `process_config_json`, `generate_model_config_json` and
`process_schema`.

## OpenVINO Model Server

OVMS is driven through its multi-model configuration file and its
`/v1/config` and `/v1/config/reload` HTTP endpoints. `OvmsModelManager`
owns that file from a background thread, gathers load and unload requests
into batches and triggers one reload per batch:

```python
from modelmesh_adapter.ovms.config import get_adapter_configuration_from_env
from modelmesh_adapter.ovms.modelmanager import ModelManagerConfig, OvmsModelManager
from modelmesh_adapter.ovms.server import OvmsAdapterServer

config = get_adapter_configuration_from_env()
with OvmsModelManager(
    f"http://localhost:{config.ovms_port}",
    config.model_config_file,
    ModelManagerConfig(),
) as manager:
    server = OvmsAdapterServer(config, manager)
    status = server.runtime_status()
```

If no manager is passed, `OvmsAdapterServer` creates one for
`http://localhost:<ovms_port>` from the configuration. The manager's
`load_model`, `unload_model` and `unload_all` accept an optional timeout in
seconds or as a `timedelta`; `get_config()` returns the server's model
states; `close()` stops the background thread.

Model files are arranged as `<root>/_ovms_models/<model id>/<version>/`. A
directory whose subdirectories all have numeric names is treated as
versioned, and its highest version is linked; anything else becomes
version `1`. A single ONNX file is linked as `model.onnx`. The helpers for
the configuration file and the REST replies are in
`modelmesh_adapter.ovms.modelconfig`.

## Utilities

`modelmesh_adapter.util` provides `secure_join`, which joins paths without
leaving the first one (symbolic links included), `resolve_local_grpc_endpoint`,
`clear_directory_contents`, `file_exists`, `remove_file_from_entries`, and
the model-key helpers `get_model_type`, `get_schema_path` and
`calc_mem_capacity`. `modelmesh_adapter.modelschema.load_schema` reads a
model schema file.

## What this package does not do

- It has no command and runs no network service: the adapter classes are
  called directly, and exposing them over gRPC is left to the caller.
- It has no MLServer client; `MLServerAdapterServer` needs one supplied.
- It does not download models. With `USE_EMBEDDED_PULLER` set to true,
  creating either adapter server raises `ValueError`.