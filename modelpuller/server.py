"""The puller server: pulls models before forwarding requests to a runtime."""

from __future__ import annotations

import logging
from typing import Protocol

from .messages import (
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
from .modelstate import ModelStateManager
from .puller import Puller
from .settings import PullerServerConfiguration

__all__ = ["PURGE_EXCLUDE_PREFIXES", "PullerServer"]

log = logging.getLogger(__name__)

PURGE_EXCLUDE_PREFIXES: tuple[str, ...] = ("_",)


class _RuntimeClient(Protocol):
    def load_model(self, request: LoadModelRequest) -> LoadModelResponse | None: ...

    def unload_model(
        self, request: UnloadModelRequest
    ) -> UnloadModelResponse | None: ...

    def predict_model_size(
        self, request: PredictModelSizeRequest
    ) -> PredictModelSizeResponse: ...

    def model_size(self, request: ModelSizeRequest) -> ModelSizeResponse: ...

    def runtime_status(self, request: RuntimeStatusRequest) -> RuntimeStatusResponse: ...


def _code_of(exc: BaseException) -> StatusCode:
    if isinstance(exc, ModelRuntimeError):
        return exc.code
    return StatusCode.UNKNOWN


def _is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ModelRuntimeError) and exc.code == StatusCode.NOT_FOUND


class _DirectHandler:
    """Runs requests immediately; used by the state manager's workers."""

    def __init__(self, server: "PullerServer") -> None:
        self._server = server

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse | None:
        return self._server._load_model(request)

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        return self._server._unload_model(request)


class PullerServer:
    """Pulls model files, then passes requests on to the model runtime."""

    def __init__(
        self,
        config: PullerServerConfiguration,
        puller: Puller,
        runtime_client: _RuntimeClient,
    ) -> None:
        self.config = config
        self.puller = puller
        self.runtime_client = runtime_client
        self.state_manager = ModelStateManager(_DirectHandler(self))

    def load_model(
        self, request: LoadModelRequest, timeout: float | None = None
    ) -> LoadModelResponse | None:
        """Pull and load a model; returns once the runtime has loaded it."""
        log.info("Enqueuing loading of the model")
        return self.state_manager.load_model(request, timeout)

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse | None:
        """Unload a model from the runtime and delete its local files."""
        log.info("Enqueuing unloading of the model")
        return self.state_manager.unload_model(request, timeout)

    def predict_model_size(
        self, request: PredictModelSizeRequest
    ) -> PredictModelSizeResponse:
        """Pass the request straight through to the runtime."""
        log.info(
            "Predicting model size (model_id=%s, model_path=%s, model_key=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_key,
            request.model_type,
        )
        return self.runtime_client.predict_model_size(request)

    def model_size(self, request: ModelSizeRequest) -> ModelSizeResponse:
        """Pass the request straight through to the runtime."""
        log.info("Getting model size (model_id=%s)", request.model_id)
        return self.runtime_client.model_size(request)

    def runtime_status(self, request: RuntimeStatusRequest) -> RuntimeStatusResponse:
        """Report runtime status; once ready, purge all previously loaded models."""
        log.info("Getting runtime status")
        response = self.runtime_client.runtime_status(request)
        if response.status != RuntimeState.READY:
            return response

        log.info("Unloading all prior loaded models to return to zero state")
        try:
            self.unload_all()
        except Exception:
            log.exception("Error unloading all models")
            raise
        return response

    def unload_all(self) -> None:
        """Unload and delete every local model not excluded from purging."""
        try:
            model_ids = self.puller.list_models()
        except OSError:
            log.exception("Unable to list the models for unloading")
            raise

        for model_id in model_ids:
            if model_id.startswith(PURGE_EXCLUDE_PREFIXES):
                log.info(
                    "Skipping purge because it is excluded from deletion (filename=%s)",
                    model_id,
                )
                continue
            try:
                self.runtime_client.unload_model(UnloadModelRequest(model_id=model_id))
            except Exception as exc:
                if not _is_not_found(exc):
                    log.error("Error requesting unload of model %s: %s", model_id, exc)
                    raise
            self.puller.cleanup_model(model_id)

    def _load_model(self, request: LoadModelRequest) -> LoadModelResponse | None:
        log.info(
            "Loading model (model_id=%s, model_path=%s, model_key=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_key,
            request.model_type,
        )
        try:
            request = self.puller.process_load_model_request(request)
        except Exception:
            log.exception("Failed to pull model from storage")
            raise

        try:
            return self.runtime_client.load_model(request)
        except Exception as exc:
            log.error(
                "Model runtime failed to load model %s: %s", request.model_id, exc
            )
            raise ModelRuntimeError(
                _code_of(exc),
                f"Failed to load model due to model runtime error: {exc}",
            ) from exc

    def _unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        log.info("Unloading model (model_id=%s)", request.model_id)
        try:
            self.runtime_client.unload_model(request)
        except Exception as exc:
            if _is_not_found(exc):
                # The runtime does not know the model; still remove its files.
                log.info(
                    "Unload request for model not found in the runtime: %s", exc
                )
            else:
                log.error("Failed to unload model from runtime: %s", exc)
                raise ModelRuntimeError(
                    _code_of(exc), "Failed to unload model from runtime"
                ) from exc

        try:
            self.puller.cleanup_model(request.model_id)
        except Exception as exc:
            raise ModelRuntimeError(
                _code_of(exc),
                f"Failed to delete model from local filesystem: {exc}",
            ) from exc

        return UnloadModelResponse()