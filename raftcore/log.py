"""The Raft log: a durable, replicated sequence of commands."""

from __future__ import annotations

import struct
from collections import deque
from itertools import pairwise
from typing import Iterable, Iterator, Optional

from raftcore.storage import U64_MAX, EngineStatus, Entry, KeyKind, encode_key

_TERM_VOTE = struct.Struct(">QBB")
_COMMIT = struct.Struct(">QQ")

# The first key after all entry keys, used as an exclusive upper scan bound.
_ENTRY_END = bytes([KeyKind.ENTRY + 1])


class LogInvariantError(RuntimeError):
    """Raised when an operation would violate a Raft log invariant."""


def _encode_term_vote(term: int, vote: Optional[int]) -> bytes:
    if vote is None:
        return _TERM_VOTE.pack(term, 0, 0)
    return _TERM_VOTE.pack(term, 1, vote)


def _decode_term_vote(data: Optional[bytes]) -> tuple[int, Optional[int]]:
    if data is None:
        return 0, None
    term, has_vote, vote = _TERM_VOTE.unpack(bytes(data))
    if has_vote not in (0, 1):
        raise ValueError(f"invalid vote flag {has_vote}")
    return term, (vote if has_vote else None)


def _decode_commit(data: Optional[bytes]) -> tuple[int, int]:
    if data is None:
        return 0, 0
    index, term = _COMMIT.unpack(bytes(data))
    return index, term


class Log:
    """A Raft log stored in a key/value storage engine.

    Entries are keyed by index, alongside the current term and vote and the
    commit index. The log upholds these invariants:

    * Entry indexes are contiguous from 1, and terms never decrease.
    * Entry terms are at or below the current term.
    * Appended entries use the current term and are flushed to storage.
    * Committed entries are never changed or removed.
    """

    def __init__(self, engine, *, fsync: bool = True) -> None:
        self.engine = engine
        # Fsyncing appended entries is mandated by Raft; disabling it trades
        # durability for write throughput.
        self.fsync = fsync
        self._term, self._vote = _decode_term_vote(engine.get(encode_key(KeyKind.TERM_VOTE)))
        last = deque(self.scan(), maxlen=1)
        if last:
            self._last_index, self._last_term = last[0].index, last[0].term
        else:
            self._last_index, self._last_term = 0, 0
        self._commit_index, self._commit_term = _decode_commit(
            engine.get(encode_key(KeyKind.COMMIT_INDEX))
        )

    @property
    def term(self) -> int:
        """The current term, 0 if none."""
        return self._term

    @property
    def vote(self) -> Optional[int]:
        """The node voted for in the current term, if any."""
        return self._vote

    @property
    def last_index(self) -> int:
        """The index of the last stored entry, 0 if none."""
        return self._last_index

    @property
    def last_term(self) -> int:
        """The term of the last stored entry, 0 if none."""
        return self._last_term

    @property
    def commit_index(self) -> int:
        """The index of the last committed entry, 0 if none."""
        return self._commit_index

    @property
    def commit_term(self) -> int:
        """The term of the last committed entry, 0 if none."""
        return self._commit_term

    def set_term(self, term: int, vote: Optional[int] = None) -> None:
        """Stores the current term and vote, always flushing to storage.

        The term may not regress, and the vote may not change within a term.
        """
        if term <= 0:
            raise LogInvariantError("can't set term 0")
        if term < self._term:
            raise LogInvariantError(f"term regression {self._term} → {term}")
        if term == self._term and self._vote is not None and vote != self._vote:
            raise LogInvariantError("can't change vote")
        if term == self._term and vote == self._vote:
            return
        self.engine.set(encode_key(KeyKind.TERM_VOTE), _encode_term_vote(term, vote))
        # Always flush: double voting could lead to split brain.
        self.engine.flush()
        self._term = term
        self._vote = vote

    def append(self, command: Optional[bytes] = None) -> int:
        """Appends a command (None for a noop) at the current term, returning its index."""
        if self._term == 0:
            raise LogInvariantError("can't append entry in term 0")
        entry = Entry(self._last_index + 1, self._term, command)
        self.engine.set(encode_key(KeyKind.ENTRY, entry.index), entry.encode())
        if self.fsync:
            self.engine.flush()
        self._last_index = entry.index
        self._last_term = entry.term
        return entry.index

    def commit(self, index: int) -> int:
        """Commits entries up to and including index, which must exist and be
        at or after the current commit index."""
        entry = self.get(index)
        if entry is None:
            raise LogInvariantError(f"commit index {index} does not exist")
        if entry.index < self._commit_index:
            raise LogInvariantError(
                f"commit index regression {self._commit_index} → {entry.index}"
            )
        if entry.index == self._commit_index:
            return index
        # The commit index need not be flushed: it can be recovered from a quorum.
        self.engine.set(encode_key(KeyKind.COMMIT_INDEX), _COMMIT.pack(index, entry.term))
        self._commit_index = index
        self._commit_term = entry.term
        return index

    def get(self, index: int) -> Optional[Entry]:
        """Returns the entry at index, or None if there is none."""
        if not 0 <= index <= U64_MAX:
            return None
        value = self.engine.get(encode_key(KeyKind.ENTRY, index))
        return None if value is None else Entry.decode(value)

    def has(self, index: int, term: int) -> bool:
        """Returns True if the log holds an entry with this index and term."""
        if index == 0 or index > self._last_index:
            return False
        if (index, term) == (self._last_index, self._last_term):
            return True
        entry = self.get(index)
        return entry is not None and entry.term == term

    def scan(self, start: Optional[int] = None, stop: Optional[int] = None) -> Iterator[Entry]:
        """Iterates over entries with start <= index < stop. None is unbounded."""
        start = 0 if start is None else start
        if start < 0 or (stop is not None and stop < 0):
            raise ValueError("scan bounds must not be negative")
        if start > U64_MAX:
            return iter(())
        low = encode_key(KeyKind.ENTRY, start)
        high = _ENTRY_END if stop is None or stop > U64_MAX else encode_key(KeyKind.ENTRY, stop)
        if high <= low:
            return iter(())
        return (Entry.decode(value) for _, value in self.engine.scan(low, high))

    def scan_apply(self, applied_index: int) -> Iterator[Entry]:
        """Iterates over committed entries after applied_index, ready to apply."""
        # The commit index is not flushed, so it may lag the applied index
        # after a restart; that is not an error.
        if applied_index >= self._commit_index:
            return iter(())
        return self.scan(applied_index + 1, self._commit_index + 1)

    def splice(self, entries: Iterable[Entry]) -> int:
        """Splices entries into the log, returning the new last index.

        New indexes are appended; overlapping entries with the same term are
        skipped; the first overlapping entry with a different term truncates
        the log there before the new entries are written.
        """
        entries = list(entries)
        if not entries:
            return self._last_index
        first, last = entries[0], entries[-1]

        if first.index == 0 or first.term == 0:
            raise LogInvariantError("spliced entry has index or term 0")
        if any(a.index + 1 != b.index for a, b in pairwise(entries)):
            raise LogInvariantError("spliced entries are not contiguous")
        if any(a.term > b.term for a, b in pairwise(entries)):
            raise LogInvariantError("spliced entries have term regression")

        if last.term > self._term:
            raise LogInvariantError(f"splice term {last.term} beyond current {self._term}")
        base = self.get(first.index - 1)
        if base is not None:
            if first.term < base.term:
                raise LogInvariantError(f"splice term regression {base.term} → {first.term}")
        elif first.index != 1:
            raise LogInvariantError(f"first index {first.index} must touch existing log")

        skip = 0
        for existing in self.scan(first.index, last.index + 1):
            new = entries[skip]
            if existing.index != new.index:
                raise LogInvariantError(f"index mismatch at {existing!r}")
            if existing.term != new.term:
                break
            if existing.command != new.command:
                raise LogInvariantError(f"command mismatch at {existing!r}")
            skip += 1

        remaining = entries[skip:]
        if not remaining:
            return self._last_index
        if remaining[0].index <= self._commit_index:
            raise LogInvariantError("spliced entries below commit index")

        for entry in remaining:
            self.engine.set(encode_key(KeyKind.ENTRY, entry.index), entry.encode())
        for index in range(last.index + 1, self._last_index + 1):
            self.engine.delete(encode_key(KeyKind.ENTRY, index))
        if self.fsync:
            self.engine.flush()

        self._last_index = last.index
        self._last_term = last.term
        return self._last_index

    def status(self) -> EngineStatus:
        """Returns the storage engine status."""
        return self.engine.status()