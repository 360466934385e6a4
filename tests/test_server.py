import dataclasses
import json
import os

import pytest

from modelpuller.config import PullerConfiguration
from modelpuller.messages import (
    LoadModelRequest,
    LoadModelResponse,
    ModelRuntimeError,
    ModelSizeRequest,
    ModelSizeResponse,
    PredictModelSizeRequest,
    PredictModelSizeResponse,
    RuntimeState,
    RuntimeStatusRequest,
    RuntimeStatusResponse,
    StatusCode,
    UnloadModelRequest,
    UnloadModelResponse,
)
from modelpuller.puller import Puller
from modelpuller.server import PullerServer
from modelpuller.settings import PullerServerConfiguration


class FakePullManager:
    """Writes 60 bytes for every target: a file if it has a suffix, else a directory."""

    def __init__(self, error=None):
        self.commands = []
        self.error = error

    def pull(self, command):
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        os.makedirs(command.directory, exist_ok=True)
        for target in command.targets:
            path = os.path.join(command.directory, target.local_path)
            if "." in target.local_path:
                with open(path, "wb") as handle:
                    handle.write(b"x" * 60)
            else:
                os.makedirs(path, exist_ok=True)
                with open(os.path.join(path, "a"), "wb") as handle:
                    handle.write(b"x" * 20)
                with open(os.path.join(path, "b"), "wb") as handle:
                    handle.write(b"x" * 40)


class FakeRuntime:
    def __init__(self, unload_error=None, status=RuntimeState.READY, load_error=None):
        self.loaded = []
        self.unloaded = []
        self.unload_error = unload_error
        self.load_error = load_error
        self.status = status

    def load_model(self, request):
        if self.load_error is not None:
            raise self.load_error
        self.loaded.append(dataclasses.replace(request))
        return LoadModelResponse(size_in_bytes=123)

    def unload_model(self, request):
        self.unloaded.append(request.model_id)
        if self.unload_error is not None:
            raise self.unload_error
        return UnloadModelResponse()

    def predict_model_size(self, request):
        return PredictModelSizeResponse(size_in_bytes=len(request.model_id))

    def model_size(self, request):
        return ModelSizeResponse(size_in_bytes=42)

    def runtime_status(self, request):
        return RuntimeStatusResponse(status=self.status, runtime_version="v1")


@pytest.fixture
def dirs(tmp_path):
    storage = tmp_path / "storage-config"
    storage.mkdir()
    (storage / "myStorage").write_text(
        json.dumps({"type": "s3", "bucket": "bucket-a", "endpoint_url": "http://localhost"})
    )
    models = tmp_path / "models"
    models.mkdir()
    return storage, models


def make_server(dirs, runtime=None, pull_manager=None):
    storage, models = dirs
    config = PullerConfiguration(
        root_model_dir=str(models), storage_configuration_dir=str(storage)
    )
    pull_manager = pull_manager or FakePullManager()
    runtime = runtime or FakeRuntime()
    puller = Puller(config, pull_manager)
    server = PullerServer(PullerServerConfiguration(), puller, runtime)
    return server, runtime, pull_manager


@pytest.mark.parametrize(
    "model_id, input_model_path",
    [("singlefile", "model.zip"), ("multifile", "model")],
)
def test_load_model(dirs, model_id, input_model_path):
    server, runtime, pull_manager = make_server(dirs)
    request = LoadModelRequest(
        model_id=model_id,
        model_path=input_model_path,
        model_type="mt:tensorflow",
        model_key='{"model_type": {"name": "tensorflow"}, "storage_key": "myStorage", "bucket": "bucket1"}',
    )

    response = server.load_model(request, timeout=3)

    expected = LoadModelRequest(
        model_id=model_id,
        model_path=os.path.join(str(dirs[1]), model_id, os.path.basename(input_model_path)),
        model_type="mt:tensorflow",
        model_key='{"model_type":{"name":"tensorflow"},"disk_size_bytes":60}',
    )
    assert response == LoadModelResponse(size_in_bytes=123)
    assert runtime.loaded == [expected]
    assert len(pull_manager.commands) == 1
    command = pull_manager.commands[0]
    assert command.storage_type == "s3"
    assert command.storage_config["bucket"] == "bucket1"
    assert os.path.isfile(os.path.join(command.directory, "a")) is False


def test_load_model_pull_failure_keeps_code(dirs):
    pull_manager = FakePullManager(error=ModelRuntimeError(StatusCode.NOT_FOUND, "gone"))
    server, runtime, _ = make_server(dirs, pull_manager=pull_manager)
    request = LoadModelRequest(
        model_id="m", model_path="model.zip", model_key='{"storage_key": "myStorage"}'
    )
    with pytest.raises(ModelRuntimeError) as info:
        server.load_model(request)
    assert info.value.code == StatusCode.NOT_FOUND
    assert runtime.loaded == []


def test_load_model_runtime_failure(dirs):
    runtime = FakeRuntime(load_error=ModelRuntimeError(StatusCode.INTERNAL, "boom"))
    server, _, _ = make_server(dirs, runtime=runtime)
    request = LoadModelRequest(
        model_id="m", model_path="model.zip", model_key='{"storage_key": "myStorage"}'
    )
    with pytest.raises(ModelRuntimeError) as info:
        server.load_model(request)
    assert info.value.code == StatusCode.INTERNAL
    assert "Failed to load model due to model runtime error: boom" in str(info.value)


def test_unload_model_removes_files(dirs):
    server, runtime, _ = make_server(dirs)
    model_dir = dirs[1] / "m1"
    model_dir.mkdir()
    (model_dir / "f").write_bytes(b"1")

    assert server.unload_model(UnloadModelRequest(model_id="m1")) == UnloadModelResponse()
    assert runtime.unloaded == ["m1"]
    assert not model_dir.exists()


def test_unload_model_not_found_still_removes_files(dirs):
    runtime = FakeRuntime(unload_error=ModelRuntimeError(StatusCode.NOT_FOUND, "no"))
    server, _, _ = make_server(dirs, runtime=runtime)
    model_dir = dirs[1] / "m1"
    model_dir.mkdir()

    assert server.unload_model(UnloadModelRequest(model_id="m1")) == UnloadModelResponse()
    assert not model_dir.exists()


def test_unload_model_runtime_error(dirs):
    runtime = FakeRuntime(unload_error=ModelRuntimeError(StatusCode.UNAVAILABLE, "down"))
    server, _, _ = make_server(dirs, runtime=runtime)
    model_dir = dirs[1] / "m1"
    model_dir.mkdir()

    with pytest.raises(ModelRuntimeError) as info:
        server.unload_model(UnloadModelRequest(model_id="m1"))
    assert info.value.code == StatusCode.UNAVAILABLE
    assert str(info.value) == "Failed to unload model from runtime"
    assert model_dir.exists()


def test_passthrough_calls(dirs):
    server, _, _ = make_server(dirs)
    assert server.predict_model_size(
        PredictModelSizeRequest(model_id="abcd")
    ) == PredictModelSizeResponse(size_in_bytes=4)
    assert server.model_size(ModelSizeRequest(model_id="x")) == ModelSizeResponse(
        size_in_bytes=42
    )


def test_runtime_status_ready_purges_models(dirs):
    server, runtime, _ = make_server(dirs)
    (dirs[1] / "m1").mkdir()
    (dirs[1] / "_keep").mkdir()

    response = server.runtime_status(RuntimeStatusRequest())

    assert response.status == RuntimeState.READY
    assert runtime.unloaded == ["m1"]
    assert sorted(os.listdir(dirs[1])) == ["_keep"]


def test_runtime_status_not_ready_leaves_models(dirs):
    runtime = FakeRuntime(status=RuntimeState.STARTING)
    server, _, _ = make_server(dirs, runtime=runtime)
    (dirs[1] / "m1").mkdir()

    response = server.runtime_status(RuntimeStatusRequest())

    assert response.status == RuntimeState.STARTING
    assert runtime.unloaded == []
    assert os.listdir(dirs[1]) == ["m1"]


def test_unload_all_ignores_not_found(dirs):
    runtime = FakeRuntime(unload_error=ModelRuntimeError(StatusCode.NOT_FOUND, "no"))
    server, _, _ = make_server(dirs, runtime=runtime)
    (dirs[1] / "a").mkdir()
    (dirs[1] / "b").mkdir()

    server.unload_all()

    assert runtime.unloaded == ["a", "b"]
    assert os.listdir(dirs[1]) == []


def test_unload_all_aborts_on_other_errors(dirs):
    runtime = FakeRuntime(unload_error=ModelRuntimeError(StatusCode.UNAVAILABLE, "down"))
    server, _, _ = make_server(dirs, runtime=runtime)
    (dirs[1] / "a").mkdir()
    (dirs[1] / "b").mkdir()

    with pytest.raises(ModelRuntimeError) as info:
        server.runtime_status(RuntimeStatusRequest())
    assert info.value.code == StatusCode.UNAVAILABLE
    assert runtime.unloaded == ["a"]
    assert sorted(os.listdir(dirs[1])) == ["a", "b"]