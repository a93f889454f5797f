"""Path expressions over JSON-like data.

Shared by the variable resolver (``{{ node.field[0] }}`` placeholders) and
the ingestion gateway (``$.customer.email`` entity mappings). Lookups
never raise: a missing key, an out-of-range index or a type mismatch all
resolve to None.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Mapping, Tuple, Union

Segment = Union[str, int]

_TOKEN = re.compile(r"""
    \[\s*(-?\d+)\s*\]             # [0]
  | \[\s*["']([^"']*)["']\s*\]    # ["key"] / ['key']
  | ([^.\[\]]+)                   # bare key
""", re.VERBOSE)


@lru_cache(maxsize=1024)
def parse_path(path: str) -> Tuple[Segment, ...]:
    """Split ``a.b[0]["c d"]`` into ("a", "b", 0, "c d")."""
    segments = []
    for index, quoted, key in _TOKEN.findall(path or ""):
        if index:
            segments.append(int(index))
        elif quoted:
            segments.append(quoted)
        elif key.strip():
            segments.append(key.strip())
    return tuple(segments)


def get_path(obj: Any, path: Union[str, Tuple[Segment, ...]]) -> Any:
    """Walk obj along path; None when any step is missing."""
    segments = parse_path(path) if isinstance(path, str) else path
    current = obj
    for segment in segments:
        if current is None:
            return None
        if isinstance(segment, int):
            if not isinstance(current, (list, tuple)):
                return None
            if not -len(current) <= segment < len(current):
                return None
            current = current[segment]
        elif isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            idx = int(segment)
            current = current[idx] if idx < len(current) else None
        else:
            return None
    return current


def extract_value(payload: Any, path_or_value: Any) -> Any:
    """Resolve a ``$.``-prefixed path against payload, or return a static value.

    ``"$.customer.name"`` reads from the payload; ``"lead"`` is returned as is.
    ``"$"`` alone returns the whole payload.
    """
    if not isinstance(path_or_value, str):
        return path_or_value
    if path_or_value == "$":
        return payload
    if not path_or_value.startswith("$."):
        return path_or_value
    return get_path(payload, path_or_value[2:])
