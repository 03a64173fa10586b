"""State machines driven by the Raft log."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from raftcore.storage import Entry


class State(ABC):
    """A state machine that applies committed log commands.

    Commands must be deterministic, so that all nodes reach the same state.
    Writes go through apply() on all nodes; reads go through read() on one node
    and must not change the state.
    """

    @property
    @abstractmethod
    def applied_index(self) -> int:
        """The index of the last applied log entry."""

    @abstractmethod
    def apply(self, entry: Entry) -> bytes:
        """Applies a log entry, returning a result for the client.

        Exceptions raised here count as applied results for the client.
        Noop entries must still advance the applied index.
        """

    @abstractmethod
    def read(self, command: bytes) -> bytes:
        """Executes a read command without changing the state."""


class NoopState(State):
    """A state machine that ignores all commands."""

    def __init__(self) -> None:
        self._applied_index = 0

    @property
    def applied_index(self) -> int:
        return self._applied_index

    def apply(self, entry: Entry) -> bytes:
        self._applied_index = entry.index
        return b""

    def read(self, command: bytes) -> bytes:
        return b""


_KV_COMMAND_OPS = ("get", "put", "scan")
_KV_RESPONSE_OPS = ("get", "put", "scan")


def _load_json_object(data: bytes, what: str) -> dict[str, Any]:
    try:
        obj = json.loads(bytes(data).decode("utf-8"))
    except ValueError as exc:
        raise ValueError(f"invalid {what}: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError(f"invalid {what}: not an object")
    return obj


@dataclass(frozen=True)
class KVCommand:
    """A key/value store command: get a key, put a key/value pair, or scan all pairs."""

    op: str
    key: Optional[str] = None
    value: Optional[str] = None

    def __post_init__(self) -> None:
        if self.op not in _KV_COMMAND_OPS:
            raise ValueError(f"unknown KV command {self.op!r}")
        wants_key = self.op in ("get", "put")
        wants_value = self.op == "put"
        if wants_key != isinstance(self.key, str) or (not wants_key and self.key is not None):
            raise ValueError(f"invalid key for {self.op} command")
        if wants_value != isinstance(self.value, str) or (
            not wants_value and self.value is not None
        ):
            raise ValueError(f"invalid value for {self.op} command")

    def encode(self) -> bytes:
        """Encodes the command as bytes."""
        obj: dict[str, Any] = {"op": self.op}
        if self.key is not None:
            obj["key"] = self.key
        if self.value is not None:
            obj["value"] = self.value
        return json.dumps(obj, sort_keys=True).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "KVCommand":
        """Decodes a command produced by encode()."""
        obj = _load_json_object(data, "KV command")
        if set(obj) - {"op", "key", "value"}:
            raise ValueError("invalid KV command: unexpected fields")
        return cls(obj.get("op"), obj.get("key"), obj.get("value"))

    def __str__(self) -> str:
        if self.op == "get":
            return f"get {self.key}"
        if self.op == "put":
            return f"put {self.key}={self.value}"
        return "scan"


@dataclass(frozen=True)
class KVResponse:
    """A key/value store response.

    get carries the value or None, put the applied index, scan all pairs.
    """

    op: str
    result: Union[str, int, dict[str, str], None] = None

    def __post_init__(self) -> None:
        if self.op not in _KV_RESPONSE_OPS:
            raise ValueError(f"unknown KV response {self.op!r}")
        result = self.result
        if self.op == "get":
            if result is not None and not isinstance(result, str):
                raise ValueError("get response must hold a string or None")
        elif self.op == "put":
            if isinstance(result, bool) or not isinstance(result, int) or result < 0:
                raise ValueError("put response must hold an applied index")
        else:
            if not isinstance(result, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in result.items()
            ):
                raise ValueError("scan response must hold string pairs")
            object.__setattr__(self, "result", dict(sorted(result.items())))

    def encode(self) -> bytes:
        """Encodes the response as bytes."""
        return json.dumps({"op": self.op, "result": self.result}, sort_keys=True).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "KVResponse":
        """Decodes a response produced by encode()."""
        obj = _load_json_object(data, "KV response")
        if set(obj) != {"op", "result"}:
            raise ValueError("invalid KV response: unexpected fields")
        return cls(obj["op"], obj["result"])

    def __str__(self) -> str:
        if self.op == "get":
            return "None" if self.result is None else str(self.result)
        if self.op == "put":
            return str(self.result)
        assert isinstance(self.result, dict)
        return ",".join(f"{k}={v}" for k, v in self.result.items())


class KVState(State):
    """A simple string key/value store driven by KVCommands."""

    def __init__(self) -> None:
        self._applied_index = 0
        self._data: dict[str, str] = {}

    @property
    def applied_index(self) -> int:
        return self._applied_index

    def apply(self, entry: Entry) -> bytes:
        command = None if entry.command is None else KVCommand.decode(entry.command)
        if command is None:
            response = b""
        elif command.op == "put":
            assert command.key is not None and command.value is not None
            self._data[command.key] = command.value
            response = KVResponse("put", entry.index).encode()
        else:
            raise RuntimeError(f"{command} submitted as write command")
        self._applied_index = entry.index
        return response

    def read(self, command: bytes) -> bytes:
        decoded = KVCommand.decode(command)
        if decoded.op == "get":
            return KVResponse("get", self._data.get(decoded.key or "")).encode()
        if decoded.op == "scan":
            return KVResponse("scan", dict(self._data)).encode()
        raise RuntimeError(f"{decoded} submitted as read command")


class EmitState(State):
    """Wraps a state machine and passes each successfully applied entry to emit."""

    def __init__(self, inner: State, emit: Callable[[Entry], Any]) -> None:
        self.inner = inner
        self.emit = emit

    @property
    def applied_index(self) -> int:
        return self.inner.applied_index

    def apply(self, entry: Entry) -> bytes:
        response = self.inner.apply(entry)
        self.emit(entry)
        return response

    def read(self, command: bytes) -> bytes:
        return self.inner.read(command)