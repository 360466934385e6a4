"""Request, response and error types exchanged with a model runtime."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

__all__ = [
    "StatusCode",
    "ModelRuntimeError",
    "RuntimeState",
    "LoadModelRequest",
    "LoadModelResponse",
    "UnloadModelRequest",
    "UnloadModelResponse",
    "PredictModelSizeRequest",
    "PredictModelSizeResponse",
    "ModelSizeRequest",
    "ModelSizeResponse",
    "RuntimeStatusRequest",
    "RuntimeStatusResponse",
]


class StatusCode(IntEnum):
    """Canonical RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class ModelRuntimeError(Exception):
    """An error carrying an RPC status code."""

    def __init__(self, code: StatusCode | int, message: str) -> None:
        self.code = StatusCode(code)
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class RuntimeState(IntEnum):
    """Readiness state reported by a model runtime."""

    STARTING = 0
    READY = 1
    FAILING = 2


@dataclass
class LoadModelRequest:
    model_id: str = ""
    model_type: str = ""
    model_path: str = ""
    model_key: str = ""


@dataclass
class LoadModelResponse:
    size_in_bytes: int = 0
    max_concurrency: int = 0


@dataclass
class UnloadModelRequest:
    model_id: str = ""


@dataclass
class UnloadModelResponse:
    pass


@dataclass
class PredictModelSizeRequest:
    model_id: str = ""
    model_type: str = ""
    model_path: str = ""
    model_key: str = ""


@dataclass
class PredictModelSizeResponse:
    size_in_bytes: int = 0


@dataclass
class ModelSizeRequest:
    model_id: str = ""


@dataclass
class ModelSizeResponse:
    size_in_bytes: int = 0


@dataclass
class RuntimeStatusRequest:
    pass


@dataclass
class RuntimeStatusResponse:
    status: RuntimeState = RuntimeState.STARTING
    capacity_in_bytes: int = 0
    max_load_concurrency: int = 0
    model_loading_timeout_ms: int = 0
    default_model_size_in_bytes: int = 0
    runtime_version: str = ""