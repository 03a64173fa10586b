import random
import uuid

import pytest

from raftcore.base import Options
from raftcore.follower import Candidate, Follower
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
    Request,
    RequestKind,
    Response,
)
from raftcore.state import KVCommand, KVResponse, KVState
from raftcore.storage import Entry, MemoryEngine

TIMEOUT = 3


def make_follower(log=None, state=None, node_id=1, peers=(2, 3)):
    outbox = []
    node = Follower(
        node_id,
        peers,
        log if log is not None else Log(MemoryEngine()),
        state if state is not None else KVState(),
        outbox.append,
        Options(election_timeout_range=range(TIMEOUT, TIMEOUT + 1)),
        rng=random.Random(1),
    )
    return node, outbox


def make_candidate():
    node, outbox = make_follower()
    for _ in range(TIMEOUT):
        node = node.tick()
    outbox.clear()
    return node, outbox


def put(key, value):
    return KVCommand("put", key, value).encode()


def test_new_follower_is_leaderless():
    node, outbox = make_follower()
    assert node.leader is None
    assert node.election_timeout == TIMEOUT
    assert node.term == 0
    assert outbox == []


def test_new_follower_applies_committed_entries():
    log = Log(MemoryEngine())
    log.set_term(1)
    log.append(put("a", "1"))
    log.append(put("b", "2"))
    log.commit(1)
    state = KVState()
    make_follower(log=log, state=state)
    assert state.applied_index == 1
    result = KVResponse.decode(state.read(KVCommand("scan").encode()))
    assert result.result == {"a": "1"}


def test_node_in_own_peers_rejected():
    with pytest.raises(ValueError):
        make_follower(node_id=2, peers=(2, 3))


def test_tick_timeout_becomes_candidate():
    node, outbox = make_follower()
    for _ in range(TIMEOUT - 1):
        node = node.tick()
    assert isinstance(node, Follower) and node.leader_seen == TIMEOUT - 1
    node = node.tick()
    assert isinstance(node, Candidate)
    assert node.term == 1
    assert node.log.vote == 1
    assert node.votes == {1}
    assert outbox == [
        Envelope(1, 1, 2, Campaign(0, 0)),
        Envelope(1, 1, 3, Campaign(0, 0)),
    ]


def test_heartbeat_follows_leader_in_new_term():
    node, outbox = make_follower()
    node = node.step(Envelope(2, 1, 1, Heartbeat(0, 0, 0)))
    assert node.leader == 2
    assert node.term == 1
    assert outbox == [Envelope(1, 1, 2, HeartbeatResponse(0, 0))]


def test_append_splices_entries():
    node, outbox = make_follower()
    entry = Entry(1, 1, put("a", "1"))
    node = node.step(Envelope(2, 1, 1, Append(0, 0, (entry,))))
    assert node.log.get(1) == entry
    assert node.log.last_index == 1
    assert outbox == [Envelope(1, 1, 2, AppendResponse(match_index=1))]


def test_append_rejected_lowers_reject_index():
    node, outbox = make_follower()
    node = node.step(Envelope(2, 1, 1, Append(5, 1, ())))
    assert outbox == [Envelope(1, 1, 2, AppendResponse(reject_index=1))]
    assert node.log.last_index == 0


def test_append_base_mismatch_raises():
    node, _ = make_follower()
    with pytest.raises(RuntimeError):
        node.step(Envelope(2, 1, 1, Append(3, 1, (Entry(1, 1, None),))))


def test_heartbeat_commits_and_applies():
    state = KVState()
    node, outbox = make_follower(state=state)
    node = node.step(Envelope(2, 1, 1, Append(0, 0, (Entry(1, 1, put("a", "1")),))))
    outbox.clear()
    node = node.step(Envelope(2, 1, 1, Heartbeat(1, 1, 0)))
    assert outbox == [Envelope(1, 1, 2, HeartbeatResponse(1, 0))]
    assert node.log.commit_index == 1
    assert state.applied_index == 1
    assert KVResponse.decode(state.read(KVCommand("get", "a").encode())).result == "1"


def test_heartbeat_from_other_leader_raises():
    node, _ = make_follower()
    node = node.step(Envelope(2, 1, 1, Heartbeat(0, 0, 0)))
    with pytest.raises(RuntimeError):
        node.step(Envelope(3, 1, 1, Heartbeat(0, 0, 0)))


def test_read_is_confirmed():
    node, outbox = make_follower()
    node = node.step(Envelope(2, 1, 1, Read(7)))
    assert node.leader == 2
    assert outbox == [Envelope(1, 1, 2, ReadResponse(7))]


def test_campaign_vote_granted_once():
    node, outbox = make_follower()
    node = node.step(Envelope(2, 1, 1, Campaign(0, 0)))
    assert node.log.vote == 2
    node = node.step(Envelope(3, 1, 1, Campaign(0, 0)))
    node = node.step(Envelope(2, 1, 1, Campaign(0, 0)))
    assert node.log.vote == 2
    assert outbox == [
        Envelope(1, 1, 2, CampaignResponse(True)),
        Envelope(1, 1, 3, CampaignResponse(False)),
        Envelope(1, 1, 2, CampaignResponse(True)),
    ]


def test_campaign_refused_when_log_newer():
    log = Log(MemoryEngine())
    log.set_term(2)
    log.append(None)
    node, outbox = make_follower(log=log)
    node = node.step(Envelope(2, 3, 1, Campaign(0, 0)))
    assert node.term == 3
    assert node.log.vote is None
    assert outbox == [Envelope(1, 3, 2, CampaignResponse(False))]


def test_client_request_without_leader_aborted():
    node, outbox = make_follower()
    request_id = uuid.uuid4()
    request = Request(RequestKind.WRITE, put("a", "1"))
    node.step(Envelope(1, 0, 1, ClientRequest(request_id, request)))
    assert outbox == [Envelope(1, 0, 1, ClientResponse(request_id, AbortError()))]
    assert not outbox[0].message.ok


def test_client_request_forwarded_and_response_returned():
    node, outbox = make_follower()
    node = node.step(Envelope(2, 1, 1, Heartbeat(0, 0, 0)))
    outbox.clear()
    request_id = uuid.uuid4()
    message = ClientRequest(request_id, Request(RequestKind.WRITE, put("a", "1")))
    node = node.step(Envelope(1, 1, 1, message))
    assert outbox == [Envelope(1, 1, 2, message)]
    assert node.forwarded == {request_id}
    response = ClientResponse(request_id, Response(RequestKind.WRITE, b"ok"))
    node = node.step(Envelope(2, 1, 1, response))
    assert outbox[-1] == Envelope(1, 1, 1, response)
    assert node.forwarded == set()


def test_forwarded_requests_aborted_on_term_change():
    node, outbox = make_follower()
    node = node.step(Envelope(2, 1, 1, Heartbeat(0, 0, 0)))
    ids = sorted(uuid.uuid4() for _ in range(2))
    for request_id in reversed(ids):
        node = node.step(
            Envelope(1, 1, 1, ClientRequest(request_id, Request(RequestKind.READ, b"q")))
        )
    outbox.clear()
    node = node.step(Envelope(3, 2, 1, Heartbeat(0, 0, 0)))
    assert node.leader == 3
    assert outbox[:2] == [
        Envelope(1, 1, 1, ClientResponse(ids[0], AbortError())),
        Envelope(1, 1, 1, ClientResponse(ids[1], AbortError())),
    ]


def test_past_term_message_dropped():
    log = Log(MemoryEngine())
    log.set_term(2)
    node, outbox = make_follower(log=log)
    node = node.step(Envelope(2, 1, 1, Heartbeat(0, 0, 0)))
    assert node.leader is None
    assert outbox == []


def test_message_to_other_node_rejected():
    node, _ = make_follower()
    with pytest.raises(ValueError):
        node.step(Envelope(2, 1, 3, Heartbeat(0, 0, 0)))


def test_unknown_sender_rejected():
    node, _ = make_follower()
    with pytest.raises(ValueError):
        node.step(Envelope(9, 1, 1, Heartbeat(0, 0, 0)))


def test_unexpected_message_raises():
    node, _ = make_follower()
    with pytest.raises(RuntimeError):
        node.step(Envelope(2, 0, 1, HeartbeatResponse(1, 0)))


def test_follow_non_peer_raises():
    node, _ = make_follower()
    node.log.set_term(1)
    with pytest.raises(RuntimeError):
        node.into_follower(1, 7)


def test_candidate_refuses_other_campaigns():
    node, outbox = make_candidate()
    node = node.step(Envelope(2, 1, 1, Campaign(0, 0)))
    assert isinstance(node, Candidate)
    assert outbox == [Envelope(1, 1, 2, CampaignResponse(False))]


def test_candidate_aborts_client_requests():
    node, outbox = make_candidate()
    request_id = uuid.uuid4()
    node.step(Envelope(1, 1, 1, ClientRequest(request_id, Request(RequestKind.STATUS))))
    assert outbox == [Envelope(1, 1, 1, ClientResponse(request_id, AbortError()))]


def test_candidate_follows_leader_on_heartbeat():
    node, outbox = make_candidate()
    node = node.step(Envelope(3, 1, 1, Heartbeat(0, 0, 0)))
    assert isinstance(node, Follower)
    assert node.leader == 3
    assert node.log.vote == 1
    assert outbox == [Envelope(1, 1, 3, HeartbeatResponse(0, 0))]


def test_candidate_votes_in_future_term():
    node, outbox = make_candidate()
    node = node.step(Envelope(2, 2, 1, Campaign(0, 0)))
    assert isinstance(node, Follower)
    assert node.term == 2
    assert node.log.vote == 2
    assert outbox == [Envelope(1, 2, 2, CampaignResponse(True))]


def test_candidate_rejected_vote_keeps_campaigning():
    node, _ = make_candidate()
    node = node.step(Envelope(2, 1, 1, CampaignResponse(False)))
    assert isinstance(node, Candidate)
    assert node.votes == {1}


def test_candidate_recampaigns_on_timeout():
    node, outbox = make_candidate()
    for _ in range(TIMEOUT):
        node = node.tick()
    assert node.term == 2
    assert node.votes == {1}
    assert outbox == [
        Envelope(1, 2, 2, Campaign(0, 0)),
        Envelope(1, 2, 3, Campaign(0, 0)),
    ]


def test_candidate_wins_with_quorum():
    node, _ = make_candidate()
    node = node.step(Envelope(2, 1, 1, CampaignResponse(True)))
    assert not isinstance(node, (Candidate, Follower))
    assert node.term == 1
    assert node.log.last_index == 1
    assert node.log.get(1) == Entry(1, 1, None)


def test_candidate_unexpected_message_raises():
    node, _ = make_candidate()
    with pytest.raises(RuntimeError):
        node.step(Envelope(2, 1, 1, ReadResponse(1)))