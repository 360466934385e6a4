"""Set string values inside nested JSON-style dictionaries using dotted paths.

The rules are kept deliberately simple:

* only string values are written,
* paths can only walk through object keys (never arrays),
* an existing value may only be overwritten if it is itself a string.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any

__all__ = ["DotpathError", "apply_parameter_overrides"]


class DotpathError(ValueError):
    """Raised when a dotted-path override cannot be applied."""


def apply_parameter_overrides(
    params: MutableMapping[str, Any] | None, overrides: Mapping[str, str]
) -> None:
    """Apply each ``dotpath -> value`` override to ``params`` in place."""
    for dotpath, value in overrides.items():
        _set(params, dotpath, value)


def _set(params: MutableMapping[str, Any] | None, dotpath: str, value: str) -> None:
    if params is None:
        raise DotpathError("got no mapping, unable to set value")

    *parents, last = dotpath.split(".")
    current = params
    for depth, field in enumerate(parents):
        if field not in current:
            child: dict[str, Any] = {}
            current[field] = child
            current = child
            continue
        child_obj = current[field]
        if not isinstance(child_obj, MutableMapping):
            where = ".".join(parents[: depth + 1])
            raise DotpathError(f"expected an object at '{where}'")
        current = child_obj

    if last in current and not isinstance(current[last], str):
        raise DotpathError(
            f"expected a string at '{dotpath}', but got {current[last]!r}"
        )
    current[last] = value