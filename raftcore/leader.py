"""Leader role of a Raft node, and node creation."""

from __future__ import annotations

import logging
from collections import deque
from itertools import islice
from typing import Callable, Iterable, Optional, Union

from raftcore.base import Options, PendingRead, PendingWrite, Progress, RawNode
from raftcore.follower import Candidate, Follower, _check_envelope
from raftcore.log import Log
from raftcore.message import (
    AbortError,
    Append,
    AppendResponse,
    Campaign,
    CampaignResponse,
    ClientRequest,
    ClientResponse,
    Envelope,
    Heartbeat,
    HeartbeatResponse,
    Read,
    ReadResponse,
    RequestKind,
    Response,
    Status,
)
from raftcore.state import State

logger = logging.getLogger(__name__)


class Leader(RawNode):
    """A leader serves client requests and replicates its log to followers.

    If it loses leadership, all in-flight client requests are aborted.
    Leaders are created by a candidate winning an election.
    """

    progress: dict[int, Progress]
    writes: dict[int, PendingWrite]
    reads: deque
    read_seq: int
    since_heartbeat: int

    def _progress(self, peer: int) -> Progress:
        try:
            return self.progress[peer]
        except KeyError:
            raise RuntimeError(f"unknown node {peer}") from None

    def into_follower(self, term: int) -> Follower:
        """Becomes a leaderless follower in a later term, aborting client requests."""
        if term <= self.term:
            raise RuntimeError("leader can only become follower in later term")
        logger.info("Discovered new term %s", term)

        writes, self.writes = self.writes, {}
        for write in sorted(writes.values(), key=lambda w: w.id):
            self.send(write.sender, ClientResponse(write.id, AbortError()))
        reads, self.reads = self.reads, deque()
        for read in sorted(reads, key=lambda r: r.id):
            self.send(read.sender, ClientResponse(read.id, AbortError()))

        self.log.set_term(term, None)
        return Follower._from_node(self, None, self.random_election_timeout())

    def step(self, envelope: Envelope) -> Union["Leader", Follower, Candidate]:
        """Processes an inbound message, returning the resulting node."""
        _check_envelope(self, envelope)
        if envelope.term < self.term:
            logger.debug("Dropping message from past term: %r", envelope)
            return self
        if envelope.term > self.term:
            return self.into_follower(envelope.term).step(envelope)

        sender = envelope.sender
        message = envelope.message
        match message:
            case HeartbeatResponse(match_index=match_index, read_seq=read_seq):
                last_index = self.log.last_index
                if match_index > last_index:
                    raise RuntimeError("future match index")
                if read_seq > self.read_seq:
                    raise RuntimeError("future read sequence number")
                if self._progress(sender).advance_read(read_seq):
                    self.maybe_read()
                # The follower lacks our last entry: probe for a common base.
                if match_index == 0:
                    self._progress(sender).regress_next(last_index)
                    self.maybe_send_append(sender, True)
                # A lost append response may show up here.
                if self._progress(sender).advance(match_index):
                    self.maybe_commit_and_apply()

            case AppendResponse(match_index=match_index, reject_index=0) if match_index > 0:
                if match_index > self.log.last_index:
                    raise RuntimeError("future match index")
                if self._progress(sender).advance(match_index):
                    self.maybe_commit_and_apply()
                # Send further pending entries, if any.
                self.maybe_send_append(sender, False)

            case AppendResponse(match_index=0, reject_index=reject_index) if reject_index > 0:
                if reject_index > self.log.last_index:
                    raise RuntimeError("future reject index")
                # A rejection at or below the match index is stale.
                if reject_index <= self._progress(sender).match_index:
                    return self
                if self._progress(sender).regress_next(reject_index):
                    self.maybe_send_append(sender, True)

            case AppendResponse():
                raise RuntimeError(f"invalid message {envelope!r}")

            case ReadResponse(seq=seq):
                if self._progress(sender).advance_read(seq):
                    self.maybe_read()

            case ClientRequest(id=request_id, request=request):
                if request.kind is RequestKind.WRITE:
                    index = self.propose(request.command)
                    self.writes[index] = PendingWrite(sender=sender, id=request_id)
                    if self.cluster_size() == 1:
                        self.maybe_commit_and_apply()
                elif request.kind is RequestKind.READ:
                    self.read_seq += 1
                    self.reads.append(
                        PendingRead(
                            seq=self.read_seq,
                            sender=sender,
                            id=request_id,
                            command=request.command,
                        )
                    )
                    self.broadcast(Read(self.read_seq))
                    if self.cluster_size() == 1:
                        self.maybe_read()
                else:
                    try:
                        response: Union[Response, Exception] = Response(
                            RequestKind.STATUS, self.status()
                        )
                    except Exception as exc:  # noqa: BLE001 - returned to the client
                        response = exc
                    self.send(sender, ClientResponse(request_id, response))

            case Campaign():
                self.send(sender, CampaignResponse(False))

            case CampaignResponse():
                # Late votes after winning the election.
                pass

            case Heartbeat() | Append() | Read():
                raise RuntimeError(f"saw other leader {sender} in term {envelope.term}")

            case _:
                raise RuntimeError(f"unexpected message {envelope!r}")
        return self

    def tick(self) -> "Leader":
        """Advances time by a tick, heartbeating at the heartbeat interval."""
        self.since_heartbeat += 1
        if self.since_heartbeat >= self.options.heartbeat_interval:
            self.heartbeat()
        return self

    def heartbeat(self) -> None:
        """Broadcasts a heartbeat to all peers."""
        if self.log.last_term != self.term:
            raise RuntimeError("leader's last_term not in current term")
        self.since_heartbeat = 0
        self.broadcast(Heartbeat(self.log.last_index, self.log.commit_index, self.read_seq))

    def propose(self, command: Optional[bytes]) -> int:
        """Appends a command to the log and replicates it, returning its index."""
        index = self.log.append(command)
        for peer in sorted(self.peers):
            # Only send eagerly to peers in steady state; others are being probed.
            if index == self._progress(peer).next_index:
                self.maybe_send_append(peer, False)
        return index

    def maybe_commit_and_apply(self) -> int:
        """Commits entries replicated to a quorum and applies them, answering
        clients. Returns the commit index."""
        last_index = self.log.last_index
        quorum_index = self.quorum_value(
            [p.match_index for p in self.progress.values()] + [last_index]
        )
        old_index, old_term = self.log.commit_index, self.log.commit_term
        # The quorum value may regress after a restart or leader change.
        if quorum_index <= old_index:
            return old_index

        # Only entries from our own term may be committed by counting replicas.
        entry = self.log.get(quorum_index)
        if entry is None:
            raise RuntimeError(f"commit index {quorum_index} missing")
        if entry.term != self.term:
            return old_index

        self.log.commit(quorum_index)

        for entry in self.log.scan_apply(self.state.applied_index):
            logger.debug("Applying %r", entry)
            write = self.writes.pop(entry.index, None)
            try:
                result: Union[Response, Exception] = Response(
                    RequestKind.WRITE, self.state.apply(entry)
                )
            except Exception as exc:  # noqa: BLE001 - deterministic errors go to the client
                result = exc
            if write is not None:
                self.send(write.sender, ClientResponse(write.id, result))

        # Reads may have been waiting for an entry from our term to commit.
        if old_term != self.term:
            self.maybe_read()
        return quorum_index

    def maybe_read(self) -> None:
        """Executes pending reads whose sequence numbers a quorum has confirmed."""
        if not self.reads:
            return
        # Reads are only safe once an entry from our term is committed and applied.
        commit_index, commit_term = self.log.commit_index, self.log.commit_term
        if commit_term < self.term or self.state.applied_index < commit_index:
            return

        quorum_read_seq = self.quorum_value(
            [p.read_seq for p in self.progress.values()] + [self.read_seq]
        )
        while self.reads and self.reads[0].seq <= quorum_read_seq:
            read = self.reads.popleft()
            try:
                response: Union[Response, Exception] = Response(
                    RequestKind.READ, self.state.read(read.command)
                )
            except Exception as exc:  # noqa: BLE001 - returned to the client
                response = exc
            self.send(read.sender, ClientResponse(read.id, response))

    def maybe_send_append(self, peer: int, probe: bool) -> None:
        """Sends pending entries to a follower, or an empty probe if requested.

        Sends nothing if the follower is caught up, or if there is nothing
        pending and no probe is needed.
        """
        last_index = self.log.last_index
        progress = self._progress(peer)
        if progress.next_index == 0:
            raise RuntimeError("invalid next_index")
        if progress.next_index <= progress.match_index:
            raise RuntimeError("invalid next_index <= match_index")
        if progress.match_index > last_index:
            raise RuntimeError("invalid match_index > last_index")
        if progress.next_index > last_index + 1:
            raise RuntimeError("invalid next_index > last_index + 1")

        if progress.match_index == last_index:
            return
        # No point probing a base already confirmed by match_index.
        probe = probe and progress.next_index > progress.match_index + 1
        if progress.next_index > last_index and not probe:
            return

        if progress.next_index == 1:
            base_index, base_term = 0, 0
        else:
            base = self.log.get(progress.next_index - 1)
            if base is None:
                raise RuntimeError("missing base entry")
            base_index, base_term = base.index, base.term

        if probe:
            entries = []
        else:
            entries = list(
                islice(self.log.scan(progress.next_index), self.options.max_append_entries)
            )
        # Assume acceptance, to avoid resending until a response arrives.
        if entries:
            progress.next_index = entries[-1].index + 1

        logger.debug("Replicating %d entries with base %d to %s", len(entries), base_index, peer)
        self.send(peer, Append(base_index, base_term, tuple(entries)))

    def status(self) -> Status:
        """Returns the cluster status."""
        match_index = {peer: p.match_index for peer, p in self.progress.items()}
        match_index[self.id] = self.log.last_index
        return Status(
            leader=self.id,
            term=self.term,
            match_index=match_index,
            commit_index=self.log.commit_index,
            applied_index=self.state.applied_index,
            storage=self.log.status(),
        )


def create_node(
    node_id: int,
    peers: Iterable[int],
    log: Log,
    state: State,
    outbox: Callable[[Envelope], object],
    options: Optional[Options] = None,
) -> Union[Follower, Leader]:
    """Creates a Raft node as a leaderless follower.

    A single-node cluster becomes leader immediately.
    """
    node = Follower(node_id, peers, log, state, outbox, options)
    if node.cluster_size() == 1:
        return node.into_candidate().into_leader()
    return node