"""Helpers for comparing the freshness of server-issued ids.

Ids look like ``msg_01J9Z...``: a type prefix, an underscore, then a
time-sortable suffix. Anything that does not fit that shape is treated as
incomparable, and incomparable ids always count as newer so that data is
accepted rather than silently dropped.
"""

from typing import Any, Optional

MIN_SORTABLE_LENGTH = 10


def extract_sortable_suffix(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    _, sep, rest = trimmed.partition("_")
    candidate = rest if sep else trimmed
    if len(candidate) < MIN_SORTABLE_LENGTH:
        return None
    return candidate


def is_newer(candidate: Any, reference: Any) -> bool:
    """Return True unless ``candidate`` is provably not newer than ``reference``."""
    current = extract_sortable_suffix(candidate)
    ref = extract_sortable_suffix(reference)
    if current is None or ref is None:
        return True
    if len(current) != len(ref):
        return True
    return current > ref
