"""Directory-backed key/record namespaces.

Each namespace is a directory holding one JSON file per key.  The whole
namespace is loaded at construction and written through incrementally: a
``put`` or ``delete`` is durable before it returns.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Generic, TypeVar
from urllib.parse import quote, unquote

from rollcall.storage.fs import atomic_write, durable_unlink

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SUFFIX = ".json"


def _key_to_filename(key: str) -> str:
    return quote(key, safe="") + _SUFFIX


def _filename_to_key(name: str) -> str:
    return unquote(name[: -len(_SUFFIX)])


class JsonNamespace:
    """A durable ``str -> dict`` mapping stored under *directory*."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self._records: dict[str, dict] = {}
        self._load()

    def _load(self) -> None:
        for path in sorted(self.directory.glob(f"*{_SUFFIX}")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("skipping unreadable record %s: %s", path.name, exc)
                continue
            if not isinstance(record, dict):
                logger.warning("skipping non-object record %s", path.name)
                continue
            self._records[_filename_to_key(path.name)] = record

    def get(self, key: str) -> dict | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def put(self, key: str, record: dict) -> None:
        atomic_write(
            self.directory / _key_to_filename(key),
            json.dumps(record, sort_keys=True, indent=2) + "\n",
        )
        self._records[key] = copy.deepcopy(record)

    def delete(self, key: str) -> bool:
        existed = self._records.pop(key, None) is not None
        removed = durable_unlink(self.directory / _key_to_filename(key))
        return existed or removed

    def keys(self) -> list[str]:
        return list(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))


class TypedNamespace(Generic[T]):
    """A :class:`JsonNamespace` that (de)serializes records at the boundary.

    Records that fail to deserialize on load are logged and left on disk
    untouched; they are invisible to callers.
    """

    def __init__(
        self,
        directory: Path,
        decode: Callable[[dict], T],
        encode: Callable[[T], dict],
    ) -> None:
        self._raw = JsonNamespace(directory)
        self._encode = encode
        self._values: dict[str, T] = {}
        for key in self._raw:
            try:
                self._values[key] = decode(self._raw.get(key))
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("skipping invalid record '%s' in %s: %s", key, directory.name, exc)

    def get(self, key: str) -> T | None:
        value = self._values.get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: T) -> None:
        self._raw.put(key, self._encode(value))
        self._values[key] = copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        self._values.pop(key, None)
        return self._raw.delete(key)

    def values(self) -> list[T]:
        return [copy.deepcopy(v) for v in self._values.values()]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)
