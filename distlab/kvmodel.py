"""Key/value RPC messages and a linearizability model of a versioned store."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

OP_GET = 0
OP_PUT = 1

INVALID = "<invalid>"


class Err(str, Enum):
    """Results returned by key/value servers and clerks."""

    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_VERSION = "ErrVersion"
    # Returned by a clerk only.
    ERR_MAYBE = "ErrMaybe"
    ERR_WRONG_LEADER = "ErrWrongLeader"
    ERR_WRONG_GROUP = "ErrWrongGroup"

    def __str__(self) -> str:
        return self.value


@dataclass
class PutArgs:
    key: str
    value: str
    version: int = 0


@dataclass
class PutReply:
    err: Err = Err.OK


@dataclass
class GetArgs:
    key: str


@dataclass
class GetReply:
    value: str = ""
    version: int = 0
    err: Err = Err.OK


@dataclass(frozen=True)
class KvInput:
    """One client call: ``op`` is OP_GET or OP_PUT."""

    op: int
    key: str
    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class KvOutput:
    value: str = ""
    version: int = 0
    err: str = ""


@dataclass(frozen=True)
class KvState:
    """State of a single key."""

    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class Operation:
    """A call as observed by a client, with its call and return times."""

    input: KvInput
    output: KvOutput
    call: int
    ret: int
    client_id: int = 0


def partition(history: Iterable[Operation]) -> list[list[Operation]]:
    """Split a history into per-key histories, ordered by key."""
    by_key: dict[str, list[Operation]] = defaultdict(list)
    for operation in history:
        by_key[operation.input.key].append(operation)
    return [by_key[key] for key in sorted(by_key)]


def init_state() -> KvState:
    """State of a key that has never been written."""
    return KvState("", 0)


def step(state: KvState, inp: KvInput, out: KvOutput) -> tuple[bool, Any]:
    """Apply one operation; return whether the output is legal and the next state."""
    if inp.op == OP_GET:
        return out.value == state.value, state
    if inp.op == OP_PUT:
        if state.version == inp.version:
            legal = out.err in (Err.OK, Err.ERR_MAYBE)
            return legal, KvState(inp.value, state.version + 1)
        return out.err in (Err.ERR_VERSION, Err.ERR_MAYBE), state
    return False, INVALID


def describe_operation(inp: KvInput, out: KvOutput) -> str:
    """Human-readable form of an operation."""
    if inp.op == OP_GET:
        return f"get('{inp.key}') -> ('{out.value}', '{out.version}', '{out.err}')"
    if inp.op == OP_PUT:
        return f"put('{inp.key}', '{inp.value}', '{inp.version}') -> ('{out.err}')"
    return INVALID