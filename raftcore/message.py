"""Messages exchanged between Raft nodes and clients."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from raftcore.storage import EngineStatus, Entry


class AbortError(Exception):
    """A client request was aborted, e.g. on a leader or term change. Retry it."""

    def __init__(self, message: str = "operation aborted") -> None:
        super().__init__(message)

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and other.args == self.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


def new_request_id() -> uuid.UUID:
    """Returns a new random client request ID."""
    return uuid.uuid4()


class RequestKind(Enum):
    """The kinds of client request."""

    READ = "read"
    WRITE = "write"
    STATUS = "status"


@dataclass(frozen=True)
class Request:
    """A client request: a state machine read or write command, or a status query."""

    kind: RequestKind
    command: Optional[bytes] = None

    def __post_init__(self) -> None:
        kind = RequestKind(self.kind)
        object.__setattr__(self, "kind", kind)
        if kind is RequestKind.STATUS:
            if self.command is not None:
                raise ValueError("status request takes no command")
        else:
            if self.command is None:
                raise ValueError(f"{kind.value} request requires a command")
            object.__setattr__(self, "command", bytes(self.command))


@dataclass(frozen=True)
class Status:
    """Raft cluster status, generated by the leader."""

    leader: int
    term: int
    match_index: dict[int, int]
    commit_index: int
    applied_index: int
    storage: EngineStatus

    def __post_init__(self) -> None:
        object.__setattr__(self, "match_index", dict(sorted(self.match_index.items())))


@dataclass(frozen=True)
class Response:
    """A client response: a read or write result, or the cluster status."""

    kind: RequestKind
    payload: Union[bytes, Status]

    def __post_init__(self) -> None:
        kind = RequestKind(self.kind)
        object.__setattr__(self, "kind", kind)
        if kind is RequestKind.STATUS:
            if not isinstance(self.payload, Status):
                raise ValueError("status response requires a Status")
        else:
            if isinstance(self.payload, Status):
                raise ValueError(f"{kind.value} response requires bytes")
            object.__setattr__(self, "payload", bytes(self.payload))


@dataclass(frozen=True)
class Campaign:
    """A candidate solicits votes, giving its last log index and term."""

    last_index: int
    last_term: int


@dataclass(frozen=True)
class CampaignResponse:
    """A node's answer to a campaign."""

    vote: bool


@dataclass(frozen=True)
class Heartbeat:
    """A leader asserts leadership and shares its last and commit indexes."""

    last_index: int
    commit_index: int
    read_seq: int


@dataclass(frozen=True)
class HeartbeatResponse:
    """A follower confirms a heartbeat; match_index is 0 if it did not match."""

    match_index: int
    read_seq: int


@dataclass(frozen=True)
class Append:
    """A leader replicates entries following the base entry. No entries is a probe."""

    base_index: int
    base_term: int
    entries: tuple[Entry, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))


@dataclass(frozen=True)
class AppendResponse:
    """A follower accepts (match_index) or rejects (reject_index) an append."""

    match_index: int = 0
    reject_index: int = 0


@dataclass(frozen=True)
class Read:
    """A leader asks followers to confirm leadership at a read sequence number."""

    seq: int


@dataclass(frozen=True)
class ReadResponse:
    """A follower confirms a read sequence number."""

    seq: int


@dataclass(frozen=True)
class ClientRequest:
    """A client request, identified by a unique ID."""

    id: uuid.UUID
    request: Request


@dataclass(frozen=True)
class ClientResponse:
    """A response to a client request: a Response, or the exception it failed with."""

    id: uuid.UUID
    response: Union[Response, Exception]

    @property
    def ok(self) -> bool:
        """True if the request succeeded."""
        return not isinstance(self.response, Exception)


Message = Union[
    Campaign,
    CampaignResponse,
    Heartbeat,
    HeartbeatResponse,
    Append,
    AppendResponse,
    Read,
    ReadResponse,
    ClientRequest,
    ClientResponse,
]


@dataclass(frozen=True)
class Envelope:
    """A message with its sender, the sender's term, and its recipient."""

    sender: int
    term: int
    recipient: int
    message: Message