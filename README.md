# modelpuller

`modelpuller` sits between a model-serving mesh and a model runtime. When a
model is to be loaded it has the model's files pulled from storage into a local
directory, rewrites the load request so that it points at those local files,
and hands the request on to the runtime. When a model is unloaded it asks the
runtime to drop the model and removes the local files.

It is a library with no dependencies outside the standard library.

## Modules

- `modelpuller.config`
  - `PullerConfiguration(root_model_dir="/models", storage_configuration_dir="/storage-config")`.
    `PullerConfiguration.from_env(environ)` reads `ROOT_MODEL_DIR` and
    `STORAGE_CONFIG_DIR` from the given mapping, or from `os.environ` when it
    is `None`.
  - `get_storage_configuration(storage_key)` reads the JSON file named
    `storage_key` in the storage configuration directory and returns it as a
    dict. It raises `StorageConfigError` when the file is missing, unreadable
    or not a JSON object. For `"type": "s3"`, a `default_bucket` is copied to
    `bucket` unless `bucket` is already set.
  - `secure_join(root, unsafe_path)` joins a path onto a root so that `..`
    components and symbolic links can never lead outside the root.
- `modelpuller.settings.PullerServerConfiguration` – `port` (default `8084`,
  from `PORT`) and `model_server_endpoint` (default `port:8085`, from
  `MODEL_SERVER_ENDPOINT`), built with `from_env(environ)`. A `PORT` that is
  not an integer raises `ValueError`.
- `modelpuller.dotpath.apply_parameter_overrides(params, overrides)` – sets
  string values inside a nested dict in place using dotted paths such as
  `"nested.object.key"`, creating intermediate objects as needed. Walking
  through a non-object, or overwriting a value that is not a string, raises
  `DotpathError`.
- `modelpuller.messages` – the request and response dataclasses
  (`LoadModelRequest`, `UnloadModelRequest`, `PredictModelSizeRequest`,
  `ModelSizeRequest`, `RuntimeStatusRequest` and their responses),
  `RuntimeState`, `StatusCode`, and `ModelRuntimeError(code, message)`.
- `modelpuller.puller`
  - `Puller(config, pull_manager)`. `process_load_model_request(request)`
    parses the model key (`ModelKeyInfo`), picks the storage configuration
    (the explicit `storage_key`, which must exist, or else `default` /
    `default_<type>` if present), applies the key's `storage_params` as
    dotted-path overrides, builds a `PullCommand` of `Target`s for the model
    and its optional schema under `<root_model_dir>/<model_id>`, and calls
    `pull_manager.pull(command)`. It then rewrites the request in place:
    `model_path` and the key's `schema_path` become local paths,
    `disk_size_bytes` is filled in, and the storage fields are dropped from
    the key. Problems raise `PullError`; a failed pull raises
    `ModelRuntimeError`.
  - `cleanup_model(model_id)` deletes a model's local files (a missing model
    is not an error), `clear_local_model_storage(exclude)` empties the model
    directory except for one entry, and `list_models()` returns the sorted
    entry names.
  - `get_model_disk_size(model_path)` totals file sizes without following
    symbolic links.
- `modelpuller.modelstate.ModelStateManager(handler)` – runs load and unload
  requests for the same model id one after another, in submission order, while
  different models proceed in parallel. At most 25 requests may be pending per
  model; beyond that, or when the `timeout` passes before a result arrives,
  `StateManagerError` is raised. `tracked_models()` lists the ids with pending
  requests.
- `modelpuller.server.PullerServer(config, puller, runtime_client)` –
  `load_model(request, timeout)`, `unload_model(request, timeout)`,
  `predict_model_size(request)`, `model_size(request)`,
  `runtime_status(request)` and `unload_all()`.

## Usage

```python
from modelpuller.config import PullerConfiguration
from modelpuller.settings import PullerServerConfiguration
from modelpuller.puller import Puller
from modelpuller.server import PullerServer
from modelpuller.messages import LoadModelRequest

puller_config = PullerConfiguration.from_env(None)
server_config = PullerServerConfiguration.from_env(None)

# pull_manager: any object with a pull(command) method that fetches the
#   command's targets into command.directory.
# runtime_client: any object offering load_model, unload_model,
#   predict_model_size, model_size and runtime_status.
puller = Puller(puller_config, pull_manager)
server = PullerServer(server_config, puller, runtime_client)

request = LoadModelRequest(
    model_id="my-model",
    model_path="models/my-model.zip",
    model_type="mt:tensorflow",
    model_key='{"model_type": {"name": "tensorflow"}, "storage_key": "myStorage"}',
)
response = server.load_model(request, 30.0)
```

Errors from the runtime during a load or unload are raised as
`ModelRuntimeError` carrying the runtime's `StatusCode` (`UNKNOWN` for other
exceptions). An unload for which the runtime reports `NOT_FOUND` still removes
the local files.

When `runtime_status` finds the runtime `READY`, the server first unloads and
deletes every locally stored model, except those whose names start with `_`,
so that the runtime starts from a clean state.

## What it does not do

- It does not download anything itself: the pull manager that fetches files
  from S3, GCS, Azure, HTTP or volumes must be supplied by the caller.
- It does not open a network listener or talk RPC: the runtime client is any
  object you pass in, and `PullerServer` is called as plain Python. The
  `port` and `model_server_endpoint` settings are only carried in
  `PullerServerConfiguration`.
- There is no command-line entry point.