"""Document sanitizer: strip values the document store refuses to persist.

Python has no ``undefined``, so "not provided" is spelled ``UNSET``.
Projections use it for fields the source document lacks; ``sanitize``
removes it before anything reaches the store.

Rules:
- Mappings drop keys whose value is ``UNSET``; explicit ``None`` is kept.
- Sequences drop both ``None`` and ``UNSET`` items.
- A nested container that only became empty because of stripping is
  dropped from its parent.
- Sets are written as lists.
- Scalars pass through unchanged.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class _Unset:
    """Marker for a field that has no value at all."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def sanitize(value: Any) -> Any:
    """Return a copy of ``value`` that is safe to persist.

    Args:
        value: Arbitrary value tree (mappings, sequences, scalars)

    Returns:
        Equivalent tree without ``UNSET`` anywhere and without ``None``
        inside sequences. A bare ``UNSET`` becomes ``None``.
    """
    if value is UNSET:
        return None
    return _clean(value)


def _clean(value: Any) -> Any:
    if isinstance(value, Mapping):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            if item is UNSET:
                continue
            result = _clean(item)
            if _emptied(item, result):
                continue
            cleaned[key] = result
        return cleaned

    if isinstance(value, (list, tuple, set, frozenset)):
        items = _ordered(value) if isinstance(value, (set, frozenset)) else value
        out: list[Any] = []
        for item in items:
            if item is None or item is UNSET:
                continue
            result = _clean(item)
            if _emptied(item, result):
                continue
            out.append(result)
        return out

    return value


def _emptied(original: Any, cleaned: Any) -> bool:
    """True when stripping turned a non-empty container into an empty one."""
    return isinstance(cleaned, (dict, list)) and not cleaned and bool(original)


def _ordered(values: set | frozenset) -> list[Any]:
    try:
        return sorted(values)
    except TypeError:
        return list(values)


def has_unset(value: Any) -> bool:
    """Whether ``UNSET`` appears anywhere in ``value``."""
    if value is UNSET:
        return True
    if isinstance(value, Mapping):
        return any(has_unset(v) for v in value.values())
    if isinstance(value, (list, tuple, set, frozenset)):
        return any(has_unset(v) for v in value)
    return False
