"""Serialise load and unload requests per model.

Requests for the same model run one after another, in the order they were
submitted. Requests for different models run concurrently.
"""

from __future__ import annotations

import concurrent.futures
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from .messages import (
    LoadModelRequest,
    LoadModelResponse,
    UnloadModelRequest,
    UnloadModelResponse,
)

__all__ = [
    "STATE_MANAGER_CHANNEL_LENGTH",
    "StateManagerError",
    "ModelStateManager",
]

log = logging.getLogger(__name__)

STATE_MANAGER_CHANNEL_LENGTH = 25

_Request = Union[LoadModelRequest, UnloadModelRequest]


class StateManagerError(Exception):
    """Raised when a request cannot be queued or its result is not awaited."""


class _Handler(Protocol):
    def load_model(self, request: LoadModelRequest) -> LoadModelResponse | None: ...

    def unload_model(
        self, request: UnloadModelRequest
    ) -> UnloadModelResponse | None: ...


@dataclass
class _ModelData:
    requests: queue.SimpleQueue = field(default_factory=queue.SimpleQueue)
    ref_count: int = 0


class ModelStateManager:
    """Runs each model's requests on its own worker, one at a time."""

    def __init__(self, handler: _Handler) -> None:
        self.handler = handler
        self._lock = threading.Lock()
        self._data: dict[str, _ModelData] = {}

    def load_model(
        self, request: LoadModelRequest, timeout: float | None = None
    ) -> LoadModelResponse | None:
        """Queue a load request and wait up to ``timeout`` seconds for its result."""
        return self._submit(request, timeout)

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse | None:
        """Queue an unload request and wait up to ``timeout`` seconds for its result."""
        return self._submit(request, timeout)

    def tracked_models(self) -> list[str]:
        """Ids of the models that currently have requests pending, sorted."""
        with self._lock:
            return sorted(self._data)

    def _submit(self, request: Any, timeout: float | None) -> Any:
        model_id = getattr(request, "model_id", "")
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            data = self._data.get(model_id)
            if data is None:
                data = _ModelData()
                self._data[model_id] = data
                worker = threading.Thread(
                    target=self._run,
                    args=(model_id, data),
                    name=f"model-state-{model_id}",
                    daemon=True,
                )
                worker.start()
            if data.ref_count >= STATE_MANAGER_CHANNEL_LENGTH:
                raise StateManagerError("Unable to send load/unload model request")
            data.ref_count += 1
            data.requests.put((request, future))

        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError as exc:
            raise StateManagerError(
                "Context cancelled while waiting for response"
            ) from exc

    def _dispatch(self, request: Any) -> Any:
        if isinstance(request, LoadModelRequest):
            return self.handler.load_model(request)
        if isinstance(request, UnloadModelRequest):
            return self.handler.unload_model(request)
        raise StateManagerError(
            f"unrecognized request type: {type(request).__name__}"
        )

    def _run(self, model_id: str, data: _ModelData) -> None:
        while True:
            item = data.requests.get()
            if item is None:
                return
            request, future = item
            outcome: Any = None
            error: BaseException | None = None
            try:
                outcome = self._dispatch(request)
            except Exception as exc:
                error = exc

            with self._lock:
                data.ref_count -= 1
                if data.ref_count <= 0 and self._data.get(model_id) is data:
                    del self._data[model_id]
                    data.requests.put(None)

            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(outcome)