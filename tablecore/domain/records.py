"""
Record containers.

A record is an ordered mapping of field name to value whose lookups ignore case,
while iteration and serialization keep the caller's original spelling.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any, Dict, Iterator, Optional, Tuple


class CaseInsensitiveRecord(MutableMapping):
    """
    Ordered mapping with case-insensitive keys.

    The most recent spelling of a key is kept for iteration; `record["ID"]` and
    `record["id"]` address the same slot.
    """

    def __init__(self, data: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> None:
        self._store: Dict[str, Tuple[str, Any]] = {}
        if data is not None:
            self.update(data)
        if kwargs:
            self.update(kwargs)

    def __setitem__(self, key: str, value: Any) -> None:
        self._store[key.lower()] = (key, value)

    def __getitem__(self, key: str) -> Any:
        return self._store[key.lower()][1]

    def __delitem__(self, key: str) -> None:
        del self._store[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._store

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            other = CaseInsensitiveRecord(other)
            return dict(self.lower_items()) == dict(other.lower_items())
        return NotImplemented

    def lower_items(self) -> Iterator[Tuple[str, Any]]:
        return ((lowered, pair[1]) for lowered, pair in self._store.items())

    def copy(self) -> "CaseInsensitiveRecord":
        return CaseInsensitiveRecord(self)

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in self._store.values()}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_dict()!r})"


def as_record(data: Any) -> Optional[CaseInsensitiveRecord]:
    """Wrap a mapping as a record; anything else returns None."""
    if isinstance(data, CaseInsensitiveRecord):
        return data
    if isinstance(data, Mapping):
        return CaseInsensitiveRecord(data)
    return None


def field_value(record: Mapping, name: str, default: Any = None) -> Any:
    """Value of `name` in `record` ignoring case; an exact spelling wins."""
    if name in record:
        return record[name]
    return as_record(record).get(name, default)


def has_field(record: Mapping, name: str) -> bool:
    return name in as_record(record)


def discard_field(record: MutableMapping, name: str) -> None:
    """Remove every spelling of `name` from `record`."""
    if isinstance(record, CaseInsensitiveRecord):
        record.pop(name, None)
        return
    wanted = CaseInsensitiveRecord({name: None})
    for key in [key for key in record if key in wanted]:
        del record[key]


def plain(data: Any) -> Any:
    """Recursively convert records back into plain dicts for output."""
    if isinstance(data, CaseInsensitiveRecord):
        return {key: plain(value) for key, value in data.items()}
    if isinstance(data, dict):
        return {key: plain(value) for key, value in data.items()}
    if isinstance(data, list):
        return [plain(item) for item in data]
    return data


__all__ = ["CaseInsensitiveRecord", "as_record", "discard_field", "field_value", "has_field", "plain"]
