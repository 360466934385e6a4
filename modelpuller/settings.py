"""Configuration of the puller server itself."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

__all__ = ["PullerServerConfiguration"]


@dataclass
class PullerServerConfiguration:
    """Port the puller listens on and the model server it forwards to."""

    port: int = 8084
    model_server_endpoint: str = "port:8085"

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "PullerServerConfiguration":
        """Build a configuration from ``PORT`` and ``MODEL_SERVER_ENDPOINT``."""
        env = os.environ if environ is None else environ
        defaults = cls()

        port = defaults.port
        if "PORT" in env:
            raw = env["PORT"]
            try:
                port = int(raw)
            except ValueError as exc:
                raise ValueError(f"Invalid integer for PORT: {raw!r}") from exc

        return cls(
            port=port,
            model_server_endpoint=env.get(
                "MODEL_SERVER_ENDPOINT", defaults.model_server_endpoint
            ),
        )