"""Small helpers for string lists, maps, paths and retries."""

from __future__ import annotations

import dataclasses
import json
import time
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from pathlib import Path
from typing import Any, TypeVar

T = TypeVar("T")


def contains_string(items: Iterable[str], s: str) -> bool:
    """Return True if ``s`` is one of ``items``."""
    return s in items


def slice_remove_string(items: Iterable[str], s: str) -> list[str]:
    """Return ``items`` without any occurrence of ``s``."""
    return [item for item in items if item != s]


def slice_sub_slice(src: Iterable[str], dst: Iterable[str]) -> list[str]:
    """Return the items of ``src`` that are not in ``dst``, in order."""
    excluded = set(dst)
    return [item for item in src if item not in excluded]


def slice_merge_slice(src: Iterable[str], dst: Iterable[str]) -> list[str]:
    """Return the union of ``src`` and ``dst`` without duplicates."""
    merged = dict.fromkeys(src)
    merged.update(dict.fromkeys(dst))
    return list(merged)


def slice_equal_slice(src: list[str], dst: list[str]) -> bool:
    """Return True if both lists have the same length and every item of ``src`` is in ``dst``."""
    if len(src) != len(dst):
        return False
    return all(item in dst for item in src)


def map_equal_map(src: Mapping[str, str], dst: Mapping[str, str]) -> bool:
    """Return True if both mappings hold the same keys with the same values."""
    if len(src) != len(dst):
        return False
    return all(key in dst and dst[key] == value for key, value in src.items())


def exists(path: str | Path) -> bool:
    """Return True if ``path`` exists."""
    return Path(path).exists()


def file_exists(path: str | Path) -> bool:
    """Return True if ``path`` exists and is a regular file."""
    return Path(path).is_file()


def dir_exists(path: str | Path) -> bool:
    """Return True if ``path`` exists and is a directory."""
    return Path(path).is_dir()


def until_max_retry(func: Callable[[], T], max_retry: int, interval: float) -> T | None:
    """Call ``func`` up to ``max_retry`` times, sleeping ``interval`` seconds after each failure.

    Returns the result of the first successful call; re-raises the last error
    when every attempt failed.
    """
    last_error: Exception | None = None
    for _ in range(max_retry):
        try:
            return func()
        except Exception as exc:  # noqa: BLE001 - any failure is retried
            last_error = exc
        time.sleep(interval)
    if last_error is not None:
        raise last_error
    return None


def fill(src: Any, dst: Any) -> Any:
    """Copy the fields of dataclass instance ``src`` into ``dst`` through JSON.

    ``dst`` may be a dataclass instance or a mutable mapping; fields of ``dst``
    that ``src`` does not carry are left alone. Returns ``dst``.
    """
    if not dataclasses.is_dataclass(src) or isinstance(src, type):
        raise TypeError("src must be a struct")
    dst_is_struct = dataclasses.is_dataclass(dst) and not isinstance(dst, type)
    if not dst_is_struct and not isinstance(dst, MutableMapping):
        raise TypeError("dst must be a point")
    try:
        data = json.loads(json.dumps(dataclasses.asdict(src)))
    except (TypeError, ValueError) as exc:
        raise ValueError("json Marshal fail") from exc
    if isinstance(dst, MutableMapping):
        dst.update(data)
        return dst
    names = {field.name for field in dataclasses.fields(dst)}
    for key, value in data.items():
        if key in names:
            setattr(dst, key, value)
    return dst