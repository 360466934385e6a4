"""Pull model files from storage into the local model directory."""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import PullerConfiguration, StorageConfigError, secure_join
from .dotpath import DotpathError, apply_parameter_overrides
from .messages import LoadModelRequest, ModelRuntimeError, StatusCode

__all__ = [
    "PullError",
    "Target",
    "PullCommand",
    "ModelKeyInfo",
    "Puller",
    "get_model_disk_size",
]

log = logging.getLogger(__name__)

_PARAMETER_KEY_TYPE = "type"
_DEFAULT_STORAGE_KEY = "default"


class PullError(Exception):
    """Raised when a model cannot be prepared, pulled or removed."""


@dataclass
class Target:
    """A remote object to fetch and the local name to store it under."""

    remote_path: str
    local_path: str


@dataclass
class PullCommand:
    """Everything a pull manager needs to download a set of targets."""

    storage_type: str
    storage_config: dict[str, Any]
    directory: str
    targets: list[Target] = field(default_factory=list)


class _PullManager(Protocol):
    def pull(self, command: PullCommand) -> None: ...


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ValueError(f"field {key!r} must be a string, got {value!r}")


def _canonical(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _canonical(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_canonical(v) for v in value]
    return value


@dataclass
class ModelKeyInfo:
    """The JSON document passed in the model key of a load request."""

    model_type: Any = None
    bucket: str = ""
    disk_size_bytes: int = 0
    schema_path: str | None = None
    storage_key: str | None = None
    storage_params: dict[str, str] | None = None

    @classmethod
    def from_json(cls, text: str) -> "ModelKeyInfo":
        """Parse a model key; raise ``ValueError`` if it is malformed."""
        data = json.loads(text)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("model key must be a JSON object")

        size = data.get("disk_size_bytes")
        if size is None:
            size = 0
        elif isinstance(size, bool) or not isinstance(size, int):
            raise ValueError(f"field 'disk_size_bytes' must be an integer, got {size!r}")

        params = data.get("storage_params")
        if params is not None:
            if not isinstance(params, dict):
                raise ValueError("field 'storage_params' must be an object")
            checked: dict[str, str] = {}
            for key, value in params.items():
                if value is None:
                    value = ""
                elif not isinstance(value, str):
                    raise ValueError(
                        f"storage parameter {key!r} must be a string, got {value!r}"
                    )
                checked[key] = value
            params = checked

        return cls(
            model_type=data.get("model_type"),
            bucket=_optional_str(data, "bucket") or "",
            disk_size_bytes=size,
            schema_path=_optional_str(data, "schema_path"),
            storage_key=_optional_str(data, "storage_key"),
            storage_params=params,
        )

    def to_json(self) -> str:
        """Serialise compactly, leaving out empty optional fields."""
        out: dict[str, Any] = {}
        if self.model_type is not None:
            out["model_type"] = _canonical(self.model_type)
        if self.bucket:
            out["bucket"] = self.bucket
        out["disk_size_bytes"] = self.disk_size_bytes
        if self.schema_path is not None:
            out["schema_path"] = self.schema_path
        if self.storage_key is not None:
            out["storage_key"] = self.storage_key
        if self.storage_params:
            out["storage_params"] = dict(sorted(self.storage_params.items()))
        return json.dumps(out, separators=(",", ":"), ensure_ascii=False)


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _status_code(exc: BaseException) -> StatusCode:
    if isinstance(exc, ModelRuntimeError):
        return exc.code
    return StatusCode.UNKNOWN


def get_model_disk_size(model_path: str) -> int:
    """Total size of all non-directory entries under ``model_path``.

    Symbolic links are not followed.
    """
    try:
        root_stat = os.lstat(model_path)
        if not os.path.isdir(model_path) or os.path.islink(model_path):
            return root_stat.st_size
        total = 0
        pending = [model_path]
        while pending:
            with os.scandir(pending.pop()) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)
                    else:
                        total += entry.stat(follow_symlinks=False).st_size
        return total
    except OSError as exc:
        raise PullError(f"Error computing model's disk size: {exc}") from exc


class Puller:
    """Rewrites load requests after fetching the model files they name."""

    def __init__(self, config: PullerConfiguration, pull_manager: _PullManager) -> None:
        self.config = config
        self.pull_manager = pull_manager
        log.info("Initializing Puller (dir=%s)", config.root_model_dir)

    def _storage_config_for(self, model_key: ModelKeyInfo) -> dict[str, Any]:
        if model_key.storage_key is None:
            storage_type = (model_key.storage_params or {}).get(_PARAMETER_KEY_TYPE, "")
            key = (
                _DEFAULT_STORAGE_KEY
                if not storage_type
                else f"{_DEFAULT_STORAGE_KEY}_{storage_type}"
            )
            try:
                return self.config.get_storage_configuration(key)
            except (StorageConfigError, OSError):
                # fall back to the per-request parameters alone
                return {}
        try:
            return self.config.get_storage_configuration(model_key.storage_key)
        except (StorageConfigError, OSError) as exc:
            raise PullError(
                f"Did not find storage config for key {model_key.storage_key}: {exc}"
            ) from exc

    def process_load_model_request(self, request: LoadModelRequest) -> LoadModelRequest:
        """Pull the model for ``request``, then rewrite it in place and return it.

        The model path and any schema path become local filesystem paths and
        the model key gains the size of the model on disk.
        """
        try:
            model_key = ModelKeyInfo.from_json(request.model_key)
        except ValueError as exc:
            raise PullError(
                "Invalid modelKey in LoadModelRequest. "
                f"Error processing JSON '{request.model_key}': {exc}"
            ) from exc

        storage_config = self._storage_config_for(model_key)

        if model_key.bucket and storage_config.get("bucket") is not None:
            log.warning(
                'Use of ModelKey["bucket"] is deprecated, '
                'use ModelKey["storage_params"]["bucket"] instead'
            )
            storage_config["bucket"] = model_key.bucket

        try:
            apply_parameter_overrides(storage_config, model_key.storage_params or {})
        except DotpathError as exc:
            raise PullError(
                "Unable to merge storage parameters from the storage config "
                f"and the Predictor Storage field: {exc}"
            ) from exc

        storage_type = storage_config.get(_PARAMETER_KEY_TYPE)
        if not isinstance(storage_type, str):
            raise PullError("Predictor Storage field missing")

        model_filename = _base(request.model_path)
        if model_filename in (".", "/"):
            model_filename = "_model"
        targets = [Target(remote_path=request.model_path, local_path=model_filename)]

        schema_filename = ""
        if model_key.schema_path is not None:
            schema_filename = _base(model_key.schema_path)
            if schema_filename == model_filename:
                schema_filename = "_schema.json"
            targets.append(
                Target(remote_path=model_key.schema_path, local_path=schema_filename)
            )

        try:
            model_dir = secure_join(self.config.root_model_dir, request.model_id)
        except OSError as exc:
            raise PullError(
                f"Error joining paths '{self.config.root_model_dir}' "
                f"and '{request.model_id}': {exc}"
            ) from exc

        command = PullCommand(
            storage_type=storage_type,
            storage_config=storage_config,
            directory=model_dir,
            targets=targets,
        )
        try:
            self.pull_manager.pull(command)
        except Exception as exc:
            raise ModelRuntimeError(
                _status_code(exc),
                f"Failed to pull model from storage due to error: {exc}",
            ) from exc

        # A plain join: the model may be a symlink to a mounted volume.
        model_full_path = os.path.normpath(os.path.join(model_dir, model_filename))
        request.model_path = model_full_path

        if model_key.schema_path is not None:
            try:
                model_key.schema_path = secure_join(model_dir, schema_filename)
            except OSError as exc:
                raise PullError(
                    f"Error joining paths '{model_dir}' and '{schema_filename}': {exc}"
                ) from exc

        try:
            model_key.disk_size_bytes = get_model_disk_size(model_full_path)
        except PullError:
            log.exception(
                "Model disk size will not be included in the LoadModelRequest"
            )

        model_key.storage_key = None
        model_key.storage_params = None
        model_key.bucket = ""
        request.model_key = model_key.to_json()
        return request

    def cleanup_model(self, model_id: str) -> None:
        """Delete the local files of ``model_id``; a missing model is not an error."""
        path = secure_join(self.config.root_model_dir, model_id)
        try:
            if os.path.islink(path) or os.path.isfile(path):
                os.remove(path)
            elif os.path.isdir(path):
                shutil.rmtree(path)
        except OSError as exc:
            log.error(
                "Model unload failed to delete files from the local filesystem: %s",
                path,
            )
            raise PullError(
                f"Failed to delete model from local filesystem: {exc}"
            ) from exc

    def clear_local_model_storage(self, exclude: str) -> None:
        """Remove every entry of the model directory except the one named ``exclude``."""
        with os.scandir(self.config.root_model_dir) as entries:
            doomed = [entry for entry in entries if entry.name != exclude]
        for entry in doomed:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)

    def list_models(self) -> list[str]:
        """Names of the entries in the model directory, sorted."""
        return sorted(os.listdir(self.config.root_model_dir))