from __future__ import annotations

import copy
import struct
from typing import Any

import numpy as np

from .errors import ParameterError

_SCALARS = (str, bool, np.bool_, int, float, np.integer, np.floating)


def _check_plain(value: Any, path: str = "parameters") -> None:
    if value is None or isinstance(value, _SCALARS):
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise ParameterError("IllegalValue", f"non-string key {k!r} in {path}", path=path)
            _check_plain(v, f"{path}.{k}")
        return
    if isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            _check_plain(v, f"{path}[{i}]")
        return
    raise ParameterError(
        "IllegalValue",
        f"{path} holds a {type(value).__name__}; only plain data is allowed in parameters",
        path=path,
        type=type(value).__name__,
    )


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float, np.integer, np.floating)) and not isinstance(x, (bool, np.bool_))


def _differ(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return not (a is None and b is None)

    if _is_number(a) and _is_number(b):
        if isinstance(a, (float, np.floating)) or isinstance(b, (float, np.floating)):
            return struct.pack("<d", float(a)) != struct.pack("<d", float(b))
        return int(a) != int(b)

    if isinstance(a, (bool, np.bool_)) and isinstance(b, (bool, np.bool_)):
        return bool(a) != bool(b)

    if isinstance(a, str) and isinstance(b, str):
        return a != b

    if isinstance(a, dict) and isinstance(b, dict):
        if sorted(a) != sorted(b):
            return True
        return any(_differ(a[k], b[k]) for k in a)

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return True
        return any(_differ(x, y) for x, y in zip(a, b))

    # Mismatched kinds always count as a change.
    return True


def parameters_differ(a: Any, b: Any) -> bool:
    """
    Structural comparison of two parameter records.

    Records may only hold plain data: None, booleans, numbers, strings, and
    lists/dicts of those. Floats are compared by bit pattern so that ``inf`` and
    ``-inf`` equal themselves. Numeric arrays or binary blobs raise
    ``EParam.IllegalValue``.
    """
    _check_plain(a)
    _check_plain(b)
    return _differ(a, b)


def take_ownership(parameters: Any) -> Any:
    """Deep copy a parameter record so later caller mutations do not leak in."""
    _check_plain(parameters)
    return copy.deepcopy(parameters)
