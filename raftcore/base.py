"""Shared node machinery: options, replication progress and the role-independent node core."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterable, Optional, TypeVar
from uuid import UUID

from raftcore.log import Log
from raftcore.message import Envelope, Message
from raftcore.state import State

logger = logging.getLogger(__name__)

# The interval between Raft ticks, the Raft unit of time.
TICK_INTERVAL = timedelta(milliseconds=100)

# The interval between leader heartbeats, in ticks.
HEARTBEAT_INTERVAL = 4

# The range of randomized election timeouts, in ticks.
ELECTION_TIMEOUT_RANGE = range(10, 20)

# The maximum number of log entries sent in a single append message.
MAX_APPEND_ENTRIES = 100

_N = TypeVar("_N", bound="RawNode")


@dataclass
class Options:
    """Raft node options."""

    heartbeat_interval: int = HEARTBEAT_INTERVAL
    election_timeout_range: range = field(default_factory=lambda: ELECTION_TIMEOUT_RANGE)
    max_append_entries: int = MAX_APPEND_ENTRIES

    def __post_init__(self) -> None:
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat interval must be positive")
        if len(self.election_timeout_range) == 0:
            raise ValueError("election timeout range is empty")
        if self.election_timeout_range.start <= 0:
            raise ValueError("election timeouts must be positive")
        if self.max_append_entries <= 0:
            raise ValueError("max append entries must be positive")


@dataclass
class Progress:
    """A follower's replication progress, as tracked by the leader in its term.

    next_index stays within [match_index+1, last_index+1]: entries from
    next_index on are pending, those from match_index+1 up to next_index are
    unacknowledged.
    """

    next_index: int
    match_index: int = 0
    read_seq: int = 0

    def advance(self, match_index: int) -> bool:
        """Advances the match index, and next_index past it if needed.

        Returns True if the match index advanced.
        """
        if match_index <= self.match_index:
            return False
        self.match_index = match_index
        self.next_index = max(self.next_index, match_index + 1)
        return True

    def advance_read(self, read_seq: int) -> bool:
        """Advances the confirmed read sequence number, returning True if it did."""
        if read_seq <= self.read_seq:
            return False
        self.read_seq = read_seq
        return True

    def regress_next(self, next_index: int) -> bool:
        """Moves next_index back towards next_index, never below match_index+1.

        Returns True if it moved.
        """
        if next_index >= self.next_index or self.next_index <= self.match_index + 1:
            return False
        self.next_index = max(next_index, self.match_index + 1)
        return True


@dataclass(frozen=True)
class PendingWrite:
    """A client write waiting to be committed and applied."""

    sender: int
    id: UUID


@dataclass(frozen=True)
class PendingRead:
    """A client read waiting for its sequence number to be confirmed by a quorum."""

    seq: int
    sender: int
    id: UUID
    command: bytes


class RawNode:
    """The role-independent core of a Raft node.

    Holds the node ID, its peers, the log, the state machine, the outbox for
    outbound envelopes and the options. Role classes build on it.
    """

    def __init__(
        self,
        node_id: int,
        peers: Iterable[int],
        log: Log,
        state: State,
        outbox: Callable[[Envelope], object],
        options: Optional[Options] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        peers = frozenset(peers)
        if node_id in peers:
            raise ValueError(f"node ID {node_id} can't be in peers")
        self.id = node_id
        self.peers = peers
        self.log = log
        self.state = state
        self.outbox = outbox
        self.options = options if options is not None else Options()
        self._rng = rng if rng is not None else random.Random()

    def _transfer(self, cls: type[_N]) -> _N:
        """Creates a node of another role sharing this node's core."""
        node = cls.__new__(cls)
        node.id = self.id
        node.peers = self.peers
        node.log = self.log
        node.state = self.state
        node.outbox = self.outbox
        node.options = self.options
        node._rng = self._rng
        return node

    @property
    def term(self) -> int:
        """The node's current term."""
        return self.log.term

    def cluster_size(self) -> int:
        """Returns the number of nodes in the cluster."""
        return len(self.peers) + 1

    def quorum_size(self) -> int:
        """Returns the size of a strict majority of the cluster."""
        return self.cluster_size() // 2 + 1

    def quorum_value(self, values):
        """Returns the value reached by a quorum, taking values in descending order.

        There must be exactly one value per cluster node.
        """
        values = list(values)
        if len(values) != self.cluster_size():
            raise ValueError("vector size must match cluster size")
        return sorted(values, reverse=True)[self.quorum_size() - 1]

    def random_election_timeout(self) -> int:
        """Returns a random election timeout from the configured range."""
        return self._rng.choice(self.options.election_timeout_range)

    def send(self, to: int, message: Message) -> None:
        """Sends a message to a recipient, tagged with our ID and current term."""
        envelope = Envelope(sender=self.id, term=self.term, recipient=to, message=message)
        logger.debug("Sending %r", envelope)
        self.outbox(envelope)

    def broadcast(self, message: Message) -> None:
        """Sends a message to all peers, in increasing ID order."""
        for peer in sorted(self.peers):
            self.send(peer, message)