# raftcore

`raftcore` implements the Raft distributed consensus protocol as a plain,
deterministic state machine. A node does no I/O of its own. You pass it
inbound messages with `step()` and advance its logical clock with `tick()`.
It hands every outbound `Envelope` to an outbox callable, and you deliver
those envelopes to its peers or clients. Each call to `step()` or `tick()`
returns the node that results, which may have a different role. Assign it
back: `node = node.step(envelope)`.

## Modules

- `raftcore.storage` holds log entries (`Entry`, with `encode()` and
  `Entry.decode()`), storage key encoding (`KeyKind`, `encode_key`,
  `decode_key`) and `MemoryEngine`, an ordered in-memory key/value engine
  that reports an `EngineStatus`.
- `raftcore.log` holds `Log`, the Raft log on top of a storage engine. It
  stores the term and vote (`set_term`), appends entries (`append`), splices
  in entries replicated from a leader (`splice`), commits (`commit`), and
  looks entries up (`get`, `has`). It can also scan a range of entries
  (`scan`) or only the committed entries that are not yet applied
  (`scan_apply`). The `term`, `vote`, `last_index`, `last_term`,
  `commit_index` and `commit_term` properties expose its position. Any
  operation that would break a log invariant raises `LogInvariantError`.
  `Log(engine, fsync=False)` skips the flush after entry writes. Term and
  vote changes are always flushed.
- `raftcore.message` defines `Envelope` (sender, term, recipient, message)
  and the message types `Campaign`, `CampaignResponse`, `Heartbeat`,
  `HeartbeatResponse`, `Append`, `AppendResponse`, `Read`, `ReadResponse`,
  `ClientRequest` and `ClientResponse`. It also defines client `Request`s and
  `Response`s of the kinds in `RequestKind` (read, write, status), the
  cluster `Status`, `AbortError` and `new_request_id()`.
- `raftcore.state` defines the `State` interface (`applied_index`, `apply`,
  `read`). It provides `NoopState`, and `KVState`, a string key/value store
  driven by `KVCommand` (`get`, `put`, `scan`) that answers with
  `KVResponse`. It also provides `EmitState`, which wraps another state
  machine and passes every applied entry to a callback.
- `raftcore.base` defines `Options` (heartbeat interval, election timeout
  range, maximum entries per append), the leader's per-follower `Progress`,
  and `RawNode`, the core that all roles share.
- `raftcore.follower` defines the `Follower` and `Candidate` roles.
- `raftcore.leader` defines the `Leader` role and `create_node()`, which
  creates a node as a leaderless follower. In a single-node cluster the node
  becomes leader immediately.

## Installation

```
pip install .
```

## Example

The example below runs a single-node cluster with a key/value state machine.

```python
from raftcore.leader import create_node
from raftcore.log import Log
from raftcore.message import ClientRequest, Envelope, Request, RequestKind, new_request_id
from raftcore.state import KVCommand, KVResponse, KVState
from raftcore.storage import MemoryEngine

outbox = []
node = create_node(1, [], Log(MemoryEngine()), KVState(), outbox.append)

def submit(node, request):
    message = ClientRequest(new_request_id(), request)
    return node.step(Envelope(sender=1, term=node.term, recipient=1, message=message))

node = submit(node, Request(RequestKind.WRITE, KVCommand("put", "a", "1").encode()))
print(KVResponse.decode(outbox[-1].message.response.payload))  # applied index: 2

node = submit(node, Request(RequestKind.READ, KVCommand("get", "a").encode()))
print(KVResponse.decode(outbox[-1].message.response.payload))  # 1
```

With more than one node, you route each envelope from an outbox to the
`step()` of the node it is addressed to. Envelopes whose sender and
recipient are the same node are responses meant for the local client. You
call `tick()` on every node at a regular interval. A follower that hears
from no leader before its randomized election timeout runs out becomes a
candidate and starts an election.

## What the package does not do

- It has no network transport. Delivering envelopes between nodes is up to
  the caller.
- It has no durable storage engine. `MemoryEngine` keeps everything in
  memory, so to persist a log you must supply an engine of your own with the
  same `get`, `set`, `delete`, `scan`, `flush` and `status` methods.
- It has no simulated multi-node cluster harness and no command-line
  program.
- The protocol has no snapshots, no log truncation and no membership
  changes. Every read is confirmed with a quorum, and there are no leader
  leases.

## Running the tests

```
pip install .[test]
pytest
```