"""Decode `MessageQueue.Pages` storage entries into queue pages."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Mapping

from trading.recovery_types import DecodeError, QueuePage, origin_from_raw


def _unwrap(raw: Any) -> Any:
    # SCALE objects from substrate-interface expose the decoded python value on `.value`.
    if hasattr(raw, "value") and not isinstance(raw, (str, bytes, Mapping, list, tuple)):
        return raw.value
    return raw


def _decode_key(raw_key: Any) -> tuple[Any, int]:
    key = _unwrap(raw_key)
    if not isinstance(key, (list, tuple)) or len(key) != 2:
        raise DecodeError(f"storage key must decode to (origin, page_index), got {key!r}")
    raw_origin, raw_page = (_unwrap(part) for part in key)
    try:
        page_index = int(raw_page)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"invalid page index: {raw_page!r}") from exc
    if page_index < 0:
        raise DecodeError(f"negative page index: {page_index}")
    return origin_from_raw(raw_origin), page_index


def _decode_remaining(raw_value: Any) -> int:
    value = _unwrap(raw_value)
    if not isinstance(value, Mapping) or "remaining" not in value:
        raise DecodeError(f"page value has no 'remaining' field: {value!r}")
    try:
        remaining = int(value["remaining"])
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"invalid remaining count: {value['remaining']!r}") from exc
    if remaining < 0:
        raise DecodeError(f"negative remaining count: {remaining}")
    return remaining


def load_pages(entries: Iterable[tuple[Any, Any]]) -> list[QueuePage]:
    """Return pages in storage iteration order; any bad entry fails the whole load."""
    pages: list[QueuePage] = []
    for position, entry in enumerate(entries):
        try:
            raw_key, raw_value = entry
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"entry #{position} is not a (key, value) pair") from exc
        origin, page_index = _decode_key(raw_key)
        pages.append(QueuePage(origin=origin, page_index=page_index, remaining=_decode_remaining(raw_value)))
    return pages
