"""Storage primitives for the Raft log: entries, storage keys and an in-memory engine."""

from __future__ import annotations

import bisect
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional

U64_MAX = 2**64 - 1

_U64 = struct.Struct(">Q")
_ENTRY_HEADER = struct.Struct(">QQB")


@dataclass(frozen=True)
class Entry:
    """A log entry: its index, the term it was proposed in, and a command.

    A command of None is a noop, appended when a leader is elected.
    """

    index: int
    term: int
    command: Optional[bytes] = None

    def encode(self) -> bytes:
        """Encodes the entry as bytes."""
        try:
            if self.command is None:
                return _ENTRY_HEADER.pack(self.index, self.term, 0)
            command = bytes(self.command)
            return (
                _ENTRY_HEADER.pack(self.index, self.term, 1)
                + _U64.pack(len(command))
                + command
            )
        except struct.error as exc:
            raise ValueError(f"entry index or term out of range: {self!r}") from exc

    @classmethod
    def decode(cls, data: bytes) -> "Entry":
        """Decodes an entry previously produced by encode()."""
        data = bytes(data)
        if len(data) < _ENTRY_HEADER.size:
            raise ValueError("truncated log entry")
        index, term, flag = _ENTRY_HEADER.unpack_from(data)
        offset = _ENTRY_HEADER.size
        if flag == 0:
            command = None
        elif flag == 1:
            if len(data) < offset + _U64.size:
                raise ValueError("truncated log entry command length")
            (length,) = _U64.unpack_from(data, offset)
            offset += _U64.size
            command = data[offset : offset + length]
            if len(command) != length:
                raise ValueError("truncated log entry command")
            offset += length
        else:
            raise ValueError(f"invalid log entry command flag {flag}")
        if offset != len(data):
            raise ValueError("trailing bytes after log entry")
        return cls(index, term, command)


class KeyKind(IntEnum):
    """The kinds of keys stored by the Raft log. Values are the key prefixes."""

    ENTRY = 0
    TERM_VOTE = 1
    COMMIT_INDEX = 2


def encode_key(kind: KeyKind, index: Optional[int] = None) -> bytes:
    """Encodes a storage key. Entry keys sort by index, before all other keys."""
    kind = KeyKind(kind)
    if kind is KeyKind.ENTRY:
        if index is None:
            raise ValueError("entry key requires an index")
        if not 0 <= index <= U64_MAX:
            raise ValueError(f"entry index {index} out of range")
        return bytes([kind]) + _U64.pack(index)
    if index is not None:
        raise ValueError(f"{kind.name} key takes no index")
    return bytes([kind])


def decode_key(data: bytes) -> tuple[KeyKind, Optional[int]]:
    """Decodes a storage key into its kind and index (None for non-entry keys)."""
    data = bytes(data)
    if not data:
        raise ValueError("empty key")
    try:
        kind = KeyKind(data[0])
    except ValueError as exc:
        raise ValueError(f"unknown key prefix {data[0]}") from exc
    if kind is KeyKind.ENTRY:
        if len(data) != 1 + _U64.size:
            raise ValueError("invalid entry key length")
        return kind, _U64.unpack_from(data, 1)[0]
    if len(data) != 1:
        raise ValueError(f"invalid {kind.name} key length")
    return kind, None


@dataclass(frozen=True)
class EngineStatus:
    """Storage engine status."""

    name: str
    keys: int
    size: int
    disk_size: int = 0
    live_disk_size: int = 0


class MemoryEngine:
    """An in-memory ordered key/value store."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}
        self._keys: list[bytes] = []

    def get(self, key: bytes) -> Optional[bytes]:
        """Returns the value of a key, or None if it does not exist."""
        return self._data.get(bytes(key))

    def set(self, key: bytes, value: bytes) -> None:
        """Stores a value for a key, replacing any existing value."""
        key = bytes(key)
        if key not in self._data:
            bisect.insort(self._keys, key)
        self._data[key] = bytes(value)

    def delete(self, key: bytes) -> None:
        """Removes a key, if it exists."""
        key = bytes(key)
        if self._data.pop(key, None) is not None:
            del self._keys[bisect.bisect_left(self._keys, key)]

    def scan(
        self, start: Optional[bytes] = None, end: Optional[bytes] = None
    ) -> Iterator[tuple[bytes, bytes]]:
        """Iterates over key/value pairs in key order, from start (inclusive)
        to end (exclusive). None leaves a side unbounded.

        The pairs are taken when the scan is created, so the engine may be
        modified while iterating.
        """
        lo = 0 if start is None else bisect.bisect_left(self._keys, bytes(start))
        hi = len(self._keys) if end is None else bisect.bisect_left(self._keys, bytes(end))
        return iter([(key, self._data[key]) for key in self._keys[lo:hi]])

    def flush(self) -> None:
        """Flushes writes to durable storage. Memory has none, so this does nothing."""

    def status(self) -> EngineStatus:
        """Returns the engine status."""
        size = sum(len(key) + len(value) for key, value in self._data.items())
        return EngineStatus(name="memory", keys=len(self._data), size=size)