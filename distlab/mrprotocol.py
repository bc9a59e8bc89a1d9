"""Messages exchanged between MapReduce workers and the coordinator."""

from __future__ import annotations

import dataclasses
import json
import os
import socket
from dataclasses import dataclass
from enum import IntEnum
from itertools import groupby
from operator import attrgetter
from typing import Iterable, Iterator

SOCKET_PREFIX = "/var/tmp/5840-mr-"

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


class TaskType(IntEnum):
    MAP = 0
    REDUCE = 1
    WAIT = 2
    DONE = 3


class WorkStatus(IntEnum):
    MAP_COMPLETED = 0
    MAP_FAILED = 1
    REDUCE_COMPLETED = 2
    REDUCE_FAILED = 3


@dataclass
class TaskRequest:
    """Sent by a worker: asks for a task, or reports how one ended."""

    task_id: int = 0
    work_state: WorkStatus = WorkStatus.MAP_COMPLETED

    def __post_init__(self) -> None:
        self.work_state = WorkStatus(self.work_state)


@dataclass
class TaskReply:
    """Sent by the coordinator: the task a worker is to run."""

    task_id: int = 0
    task_type: TaskType = TaskType.MAP
    file_name: str = ""
    n_reduce: int = 0
    n_map: int = 0

    def __post_init__(self) -> None:
        self.task_type = TaskType(self.task_type)


@dataclass(frozen=True)
class KeyValue:
    """One pair emitted by a map function."""

    key: str
    value: str


def ihash(key: str) -> int:
    """Non-negative 32-bit FNV-1a hash; ``ihash(key) % n_reduce`` picks a reduce task."""
    h = _FNV32_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h & 0x7FFFFFFF


def coordinator_socket() -> str:
    """Per-user UNIX-domain socket path for the coordinator."""
    return SOCKET_PREFIX + str(os.getuid())


def group_by_key(pairs: Iterable[KeyValue]) -> Iterator[tuple[str, list[str]]]:
    """Sort pairs by key and yield each key with all of its values."""
    ordered = sorted(pairs, key=attrgetter("key"))
    for key, group in groupby(ordered, key=attrgetter("key")):
        yield key, [pair.value for pair in group]


def send_request(sockname: str, method: str, args: TaskRequest) -> TaskReply:
    """Call ``method`` on the coordinator listening at ``sockname``.

    The request and the response are each one JSON object on one line.
    Raises OSError if the coordinator cannot be reached, ConnectionError if
    it hangs up without answering, and RuntimeError if it reports an error.
    """
    message = {"method": method, "args": dataclasses.asdict(args)}
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.connect(sockname)
        with sock.makefile("rwb") as stream:
            stream.write(json.dumps(message).encode("utf-8") + b"\n")
            stream.flush()
            line = stream.readline()
    if not line:
        raise ConnectionError(f"{method}: connection closed without a reply")
    response = json.loads(line)
    if "error" in response:
        raise RuntimeError(f"{method}: {response['error']}")
    return TaskReply(**response["reply"])