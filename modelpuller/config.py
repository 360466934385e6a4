"""Puller configuration and access to mounted storage configuration files."""

from __future__ import annotations

import errno
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

__all__ = ["StorageConfigError", "PullerConfiguration", "secure_join"]

log = logging.getLogger(__name__)

_MAX_SYMLINKS = 255


class StorageConfigError(Exception):
    """Raised when a storage configuration cannot be found, read or parsed."""


def _clean(path: str) -> str:
    cleaned = os.path.normpath(path)
    # normpath keeps exactly two leading slashes; collapse them to one.
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def secure_join(root: str | os.PathLike[str], unsafe_path: str) -> str:
    """Join ``unsafe_path`` onto ``root`` so the result never leaves ``root``.

    ``..`` components and symbolic links are resolved as if ``root`` were the
    filesystem root. Components that do not exist are treated as plain names.
    """
    root_str = os.fspath(root)
    sep = os.sep
    resolved: list[str] = []
    remaining = unsafe_path
    links = 0

    while remaining:
        if links > _MAX_SYMLINKS:
            raise OSError(errno.ELOOP, "too many symbolic links", unsafe_path)

        component, _, remaining = remaining.partition(sep)

        scoped = _clean(sep + "".join(resolved) + component)
        if scoped == sep:
            resolved.clear()
            continue

        full = _clean(root_str + scoped)
        try:
            is_link = os.path.islink(full) if os.path.lexists(full) else False
        except OSError:
            raise
        if not is_link:
            resolved.append(component + sep)
            continue

        links += 1
        dest = os.readlink(full)
        if os.path.isabs(dest):
            resolved.clear()
        remaining = dest + sep + remaining

    full_path = _clean(sep + "".join(resolved))
    return _clean(root_str + full_path)


@dataclass
class PullerConfiguration:
    """Where models are stored locally and where storage configs are mounted."""

    root_model_dir: str = "/models"
    storage_configuration_dir: str = "/storage-config"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PullerConfiguration":
        """Build a configuration from ``ROOT_MODEL_DIR`` and ``STORAGE_CONFIG_DIR``."""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            root_model_dir=env.get("ROOT_MODEL_DIR", defaults.root_model_dir),
            storage_configuration_dir=env.get(
                "STORAGE_CONFIG_DIR", defaults.storage_configuration_dir
            ),
        )

    def get_storage_configuration(self, storage_key: str) -> dict[str, Any]:
        """Read the JSON storage configuration stored under ``storage_key``."""
        config_path = secure_join(self.storage_configuration_dir, storage_key)
        log.debug("Reading storage credentials")

        if not os.path.exists(config_path):
            raise StorageConfigError(f"Storage secretKey not found: {storage_key}")

        try:
            with open(config_path, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise StorageConfigError(
                f"Could not read storage configuration from {config_path}: {exc}"
            ) from exc

        try:
            storage_config = json.loads(raw)
        except ValueError as exc:
            raise StorageConfigError(
                f"Could not parse storage configuration json from {config_path}: {exc}"
            ) from exc

        if storage_config is None:
            storage_config = {}
        elif not isinstance(storage_config, dict):
            raise StorageConfigError(
                f"Could not parse storage configuration json from {config_path}: "
                "expected a JSON object"
            )

        # s3 configs may carry the bucket under the older "default_bucket" key.
        if storage_config.get("type") == "s3" and "default_bucket" in storage_config:
            if "bucket" in storage_config:
                log.info(
                    "Both bucket and default_bucket params were provided in S3 "
                    "storage config, ignoring default_bucket (bucket=%r, default_bucket=%r)",
                    storage_config["bucket"],
                    storage_config["default_bucket"],
                )
            else:
                storage_config["bucket"] = storage_config["default_bucket"]

        return storage_config