"""Follower and candidate roles of a Raft node."""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Optional, Union

from raftcore.base import Options, Progress, RawNode
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
)

logger = logging.getLogger(__name__)


def _check_envelope(node: RawNode, envelope: Envelope) -> None:
    """Rejects envelopes addressed to another node or sent by an unknown node."""
    if envelope.recipient != node.id:
        raise ValueError(f"message to other node: {envelope!r}")
    if envelope.sender != node.id and envelope.sender not in node.peers:
        raise ValueError(f"unknown sender: {envelope!r}")
    logger.debug("Stepping %r", envelope)


class Follower(RawNode):
    """A follower replicates entries from a leader and forwards client requests.

    Nodes start out as leaderless followers until they discover a leader or
    hold an election.
    """

    def __init__(
        self,
        node_id: int,
        peers: Iterable[int],
        log,
        state,
        outbox,
        options: Optional[Options] = None,
        *,
        rng=None,
    ) -> None:
        super().__init__(node_id, peers, log, state, outbox, options, rng=rng)
        self._reset_role(None, self.random_election_timeout())
        # State machine writes aren't flushed, so apply any pending entries.
        self.maybe_apply()

    @classmethod
    def _from_node(cls, node: RawNode, leader: Optional[int], election_timeout: int) -> "Follower":
        """Turns a node of another role into a follower."""
        follower = node._transfer(cls)
        follower._reset_role(leader, election_timeout)
        return follower

    def _reset_role(self, leader: Optional[int], election_timeout: int) -> None:
        self.leader: Optional[int] = leader
        self.leader_seen = 0
        self.election_timeout = election_timeout
        self.forwarded: set = set()

    def into_candidate(self) -> "Candidate":
        """Becomes a candidate and campaigns for leadership in a new term."""
        self.abort_forwarded()
        # Catch up the state machine, in case we win.
        self.maybe_apply()
        node = Candidate._from_node(self)
        node.campaign()
        if node.id not in node.votes:
            raise RuntimeError("candidate did not vote for self")
        if node.log.term == 0:
            raise RuntimeError("candidate can't have term 0")
        if node.log.vote != node.id:
            raise RuntimeError("log vote does not match self")
        return node

    def into_follower(self, term: int, leader: Optional[int]) -> "Follower":
        """Follows a leader in the current term, or becomes a leaderless
        follower in a new term."""
        if term == 0:
            raise RuntimeError("can't become follower in term 0")
        self.abort_forwarded()
        if leader is not None:
            if leader not in self.peers:
                raise RuntimeError("leader is not a peer")
            if self.leader is not None:
                raise RuntimeError("already have leader in term")
            if term != self.term:
                raise RuntimeError("can't follow leader in different term")
            logger.info("Following leader %s in term %s", leader, term)
            self._reset_role(leader, self.election_timeout)
        else:
            if term == self.term:
                raise RuntimeError("can't become leaderless follower in current term")
            logger.info("Discovered new term %s", term)
            self.log.set_term(term, None)
            self._reset_role(None, self.random_election_timeout())
        return self

    def _follow(self, envelope: Envelope) -> None:
        """Checks that the message is from our leader, or follows its sender."""
        if self.leader is None:
            self.into_follower(envelope.term, envelope.sender)
        elif envelope.sender != self.leader:
            raise RuntimeError("multiple leaders in term")

    def step(self, envelope: Envelope) -> Union["Follower", "Candidate", RawNode]:
        """Processes an inbound message, returning the resulting node."""
        _check_envelope(self, envelope)
        if envelope.term < self.term:
            logger.debug("Dropping message from past term: %r", envelope)
            return self
        if envelope.term > self.term:
            return self.into_follower(envelope.term, None).step(envelope)

        if envelope.sender == self.leader:
            self.leader_seen = 0

        message = envelope.message
        match message:
            case Heartbeat(last_index=last_index, commit_index=commit_index, read_seq=read_seq):
                if commit_index > last_index:
                    raise RuntimeError("commit_index after last_index")
                self._follow(envelope)
                # The leader's last entry always has the leader's term.
                match_index = last_index if self.log.has(last_index, envelope.term) else 0
                self.send(envelope.sender, HeartbeatResponse(match_index, read_seq))
                # Matching last_index means our log is identical up to it, so
                # the commit index is safe to take.
                if match_index != 0 and commit_index > self.log.commit_index:
                    self.log.commit(commit_index)
                    self.maybe_apply()

            case Append(base_index=base_index, base_term=base_term, entries=entries):
                if entries and base_index != entries[0].index - 1:
                    raise RuntimeError("base index mismatch")
                self._follow(envelope)
                if base_index == 0 or self.log.has(base_index, base_term):
                    match_index = entries[-1].index if entries else base_index
                    self.log.splice(entries)
                    response = AppendResponse(match_index=match_index)
                else:
                    # Skip all missing entries if our log is shorter.
                    reject_index = min(base_index, self.log.last_index + 1)
                    response = AppendResponse(reject_index=reject_index)
                self.send(envelope.sender, response)

            case Read(seq=seq):
                self._follow(envelope)
                self.send(envelope.sender, ReadResponse(seq))

            case Campaign(last_index=last_index, last_term=last_term):
                vote = self.log.vote
                if vote is not None and envelope.sender != vote:
                    self.send(envelope.sender, CampaignResponse(False))
                    return self
                # Only vote for candidates whose log is at least as recent.
                log_index, log_term = self.log.last_index, self.log.last_term
                if log_term > last_term or (log_term == last_term and log_index > last_index):
                    self.send(envelope.sender, CampaignResponse(False))
                    return self
                logger.info("Voting for %s in term %s election", envelope.sender, envelope.term)
                self.log.set_term(envelope.term, envelope.sender)
                self.send(envelope.sender, CampaignResponse(True))

            case ClientRequest(id=request_id):
                if envelope.sender != self.id:
                    raise RuntimeError("client request from other node")
                if self.leader is not None:
                    logger.debug("Forwarding request to leader %s: %r", self.leader, envelope)
                    self.forwarded.add(request_id)
                    self.send(self.leader, message)
                else:
                    self.send(envelope.sender, ClientResponse(request_id, AbortError()))

            case ClientResponse(id=request_id, response=response):
                if envelope.sender != self.leader:
                    raise RuntimeError("client response from non-leader")
                if request_id in self.forwarded:
                    self.forwarded.discard(request_id)
                    self.send(self.id, ClientResponse(request_id, response))

            case CampaignResponse():
                # A late vote after a lost election.
                pass

            case _:
                raise RuntimeError(f"unexpected message {envelope!r}")
        return self

    def tick(self) -> Union["Follower", "Candidate"]:
        """Advances time by a tick, campaigning if the election timeout passes."""
        self.leader_seen += 1
        if self.leader_seen >= self.election_timeout:
            return self.into_candidate()
        return self

    def abort_forwarded(self) -> None:
        """Aborts all forwarded client requests, in request ID order."""
        forwarded, self.forwarded = self.forwarded, set()
        for request_id in sorted(forwarded):
            logger.debug("Aborting forwarded request %s", request_id)
            self.send(self.id, ClientResponse(request_id, AbortError()))

    def maybe_apply(self) -> None:
        """Applies any committed but unapplied log entries."""
        for entry in self.log.scan_apply(self.state.applied_index):
            logger.debug("Applying %r", entry)
            # Only the leader answers clients, so results and errors are dropped.
            try:
                self.state.apply(entry)
            except Exception as exc:  # noqa: BLE001 - results are the client's business
                logger.debug("Apply of %r failed: %s", entry, exc)


class Candidate(RawNode):
    """A candidate campaigns for leadership."""

    @classmethod
    def _from_node(cls, node: RawNode) -> "Candidate":
        """Turns a node of another role into a candidate."""
        candidate = node._transfer(cls)
        candidate._reset_role(candidate.random_election_timeout())
        return candidate

    def _reset_role(self, election_timeout: int) -> None:
        self.votes: set[int] = set()
        self.election_duration = 0
        self.election_timeout = election_timeout

    def into_follower(self, term: int, leader: Optional[int]) -> Follower:
        """Follows the election winner, or becomes a leaderless follower in a new term."""
        election_timeout = self.random_election_timeout()
        if leader is not None:
            if term != self.term:
                raise RuntimeError("can't follow leader in different term")
            logger.info("Lost election, following leader %s in term %s", leader, term)
            return Follower._from_node(self, leader, election_timeout)
        if term == self.term:
            raise RuntimeError("can't become leaderless follower in current term")
        logger.info("Discovered new term %s", term)
        self.log.set_term(term, None)
        return Follower._from_node(self, None, election_timeout)

    def into_leader(self):
        """Becomes leader after winning the election."""
        from raftcore.leader import Leader

        term, vote = self.log.term, self.log.vote
        if term == 0:
            raise RuntimeError("leaders can't have term 0")
        if vote != self.id:
            raise RuntimeError("leader did not vote for self")
        logger.info("Won election for term %s, becoming leader", term)

        node = self._transfer(Leader)
        next_index = self.log.last_index + 1
        node.progress = {peer: Progress(next_index=next_index) for peer in self.peers}
        node.writes = {}
        node.reads = deque()
        node.read_seq = 0
        node.since_heartbeat = 0

        # Append a noop to commit entries from earlier terms, before the
        # heartbeat to save a replication round trip.
        node.propose(None)
        node.maybe_commit_and_apply()
        node.heartbeat()
        return node

    def step(self, envelope: Envelope):
        """Processes an inbound message, returning the resulting node."""
        _check_envelope(self, envelope)
        if envelope.term < self.term:
            logger.debug("Dropping message from past term: %r", envelope)
            return self
        if envelope.term > self.term:
            return self.into_follower(envelope.term, None).step(envelope)

        message = envelope.message
        match message:
            case CampaignResponse(vote=True):
                self.votes.add(envelope.sender)
                if len(self.votes) >= self.quorum_size():
                    return self.into_leader()
            case CampaignResponse(vote=False):
                pass
            case Campaign():
                self.send(envelope.sender, CampaignResponse(False))
            case Heartbeat() | Append() | Read():
                # A leader exists in this term: we lost.
                return self.into_follower(envelope.term, envelope.sender).step(envelope)
            case ClientRequest(id=request_id):
                self.send(envelope.sender, ClientResponse(request_id, AbortError()))
            case _:
                raise RuntimeError(f"unexpected message {envelope!r}")
        return self

    def tick(self) -> "Candidate":
        """Advances time by a tick, starting a new election on timeout."""
        self.election_duration += 1
        if self.election_duration >= self.election_timeout:
            self.campaign()
        return self

    def campaign(self) -> None:
        """Starts an election in the next term, voting for ourself."""
        term = self.term + 1
        logger.info("Starting new election for term %s", term)
        self._reset_role(self.random_election_timeout())
        self.votes.add(self.id)
        self.log.set_term(term, self.id)
        self.broadcast(Campaign(self.log.last_index, self.log.last_term))