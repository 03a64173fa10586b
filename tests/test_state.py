import pytest

from raftcore.state import (
    EmitState,
    KVCommand,
    KVResponse,
    KVState,
    NoopState,
    State,
)
from raftcore.storage import Entry


def put(index, key, value, term=1):
    return Entry(index, term, KVCommand("put", key, value).encode())


def test_state_is_abstract():
    with pytest.raises(TypeError):
        State()


@pytest.mark.parametrize(
    "command",
    [KVCommand("get", "a"), KVCommand("put", "a", "1"), KVCommand("scan")],
)
def test_kv_command_round_trip(command):
    assert KVCommand.decode(command.encode()) == command


def test_kv_command_str():
    assert str(KVCommand("get", "foo")) == "get foo"
    assert str(KVCommand("put", "foo", "bar")) == "put foo=bar"
    assert str(KVCommand("scan")) == "scan"


@pytest.mark.parametrize(
    "args",
    [("delete", "a"), ("get",), ("put", "a"), ("scan", "a"), ("get", "a", "b")],
)
def test_kv_command_invalid(args):
    with pytest.raises(ValueError):
        KVCommand(*args)


@pytest.mark.parametrize("data", [b"", b"\xff", b"[]", b'{"op": "get"}', b'{"op": "scan", "x": 1}'])
def test_kv_command_decode_invalid(data):
    with pytest.raises(ValueError):
        KVCommand.decode(data)


@pytest.mark.parametrize(
    "response",
    [
        KVResponse("get", "value"),
        KVResponse("get", None),
        KVResponse("put", 7),
        KVResponse("scan", {"b": "2", "a": "1"}),
        KVResponse("scan", {}),
    ],
)
def test_kv_response_round_trip(response):
    assert KVResponse.decode(response.encode()) == response


def test_kv_response_str():
    assert str(KVResponse("get", "value")) == "value"
    assert str(KVResponse("get", None)) == "None"
    assert str(KVResponse("put", 3)) == "3"
    assert str(KVResponse("scan", {"b": "2", "a": "1"})) == "a=1,b=2"


@pytest.mark.parametrize(
    "args", [("get", 1), ("put", "x"), ("put", -1), ("put", True), ("scan", {"a": 1}), ("del", None)]
)
def test_kv_response_invalid(args):
    with pytest.raises(ValueError):
        KVResponse(*args)


def test_kv_state_put_and_read():
    state = KVState()
    assert state.applied_index == 0
    result = state.apply(put(1, "a", "1"))
    assert KVResponse.decode(result) == KVResponse("put", 1)
    state.apply(put(2, "b", "2"))
    state.apply(put(3, "a", "3"))
    assert state.applied_index == 3
    got = KVResponse.decode(state.read(KVCommand("get", "a").encode()))
    assert got == KVResponse("get", "3")
    missing = KVResponse.decode(state.read(KVCommand("get", "z").encode()))
    assert missing.result is None
    scan = KVResponse.decode(state.read(KVCommand("scan").encode()))
    assert scan.result == {"a": "3", "b": "2"}


def test_kv_state_noop_entry_advances_index():
    state = KVState()
    assert state.apply(Entry(1, 1, None)) == b""
    assert state.applied_index == 1


def test_kv_state_read_command_as_write_raises():
    state = KVState()
    entry = Entry(1, 1, KVCommand("get", "a").encode())
    with pytest.raises(RuntimeError):
        state.apply(entry)


def test_kv_state_write_command_as_read_raises():
    state = KVState()
    with pytest.raises(RuntimeError):
        state.read(KVCommand("put", "a", "1").encode())


def test_kv_state_invalid_command_keeps_index():
    state = KVState()
    state.apply(put(1, "a", "1"))
    with pytest.raises(ValueError):
        state.apply(Entry(2, 1, b"garbage"))
    assert state.applied_index == 1


def test_noop_state():
    state = NoopState()
    assert state.apply(put(4, "a", "1")) == b""
    assert state.applied_index == 4
    assert state.read(b"anything") == b""


def test_emit_state_emits_applied_entries():
    emitted = []
    state = EmitState(KVState(), emitted.append)
    first = put(1, "a", "1")
    second = Entry(2, 1, None)
    state.apply(first)
    state.apply(second)
    assert emitted == [first, second]
    assert state.applied_index == 2
    got = KVResponse.decode(state.read(KVCommand("get", "a").encode()))
    assert got.result == "1"


def test_emit_state_does_not_emit_failures():
    emitted = []
    state = EmitState(KVState(), emitted.append)
    with pytest.raises(ValueError):
        state.apply(Entry(1, 1, b"garbage"))
    assert emitted == []
    assert state.applied_index == 0