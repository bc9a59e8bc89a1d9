"""A MapReduce worker: asks the coordinator for tasks and runs them."""

from __future__ import annotations

import json
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Callable, Sequence

from distlab.apps import load_app
from distlab.mrprotocol import (
    KeyValue,
    TaskReply,
    TaskRequest,
    TaskType,
    WorkStatus,
    coordinator_socket,
    group_by_key,
    ihash,
    send_request,
)

MapFunc = Callable[[str, str], list[KeyValue]]
ReduceFunc = Callable[[str, list[str]], str]

USAGE = "Usage: mrworker xxx.so"
PAUSE = 1.0


def _intermediate_name(map_id: int, reduce_id: int) -> str:
    return f"mr-{map_id}-{reduce_id}"


def call(rpcname: str, args: TaskRequest) -> TaskReply | None:
    """Send an RPC to the coordinator and return its reply.

    Returns None, after printing the error, if the coordinator reports a
    failure. Raises OSError if the coordinator cannot be reached.
    """
    try:
        return send_request(coordinator_socket(), rpcname, args)
    except RuntimeError as exc:
        print(exc)
        return None


def run_map_task(mapf: MapFunc, filename: str, n_reduce: int, task_id: int) -> list[Path]:
    """Map one input file into ``n_reduce`` intermediate files in the working directory.

    Each file is written under a temporary name and renamed into place, so
    a crashed worker never leaves a partial file behind.
    """
    with open(filename, encoding="utf-8", errors="replace", newline="") as stream:
        content = stream.read()
    buckets: list[list[KeyValue]] = [[] for _ in range(n_reduce)]
    for pair in mapf(filename, content):
        buckets[ihash(pair.key) % n_reduce].append(pair)

    written = []
    for reduce_id, pairs in enumerate(buckets):
        name = _intermediate_name(task_id, reduce_id)
        with tempfile.NamedTemporaryFile(
            "w", dir=".", prefix=name, delete=False, encoding="utf-8"
        ) as out:
            for pair in pairs:
                out.write(json.dumps({"Key": pair.key, "Value": pair.value}) + "\n")
        os.replace(out.name, name)
        written.append(Path(name))
    return written


def _read_intermediate(path: str) -> list[KeyValue]:
    pairs = []
    with open(path, encoding="utf-8") as stream:
        for line in stream:
            try:
                record = json.loads(line)
                pairs.append(KeyValue(record["Key"], record["Value"]))
            except (ValueError, KeyError, TypeError):
                break
    return pairs


def run_reduce_task(reducef: ReduceFunc, n_map: int, task_id: int) -> Path:
    """Reduce the intermediate files of every map task for reduce task ``task_id``.

    Raises OSError if an intermediate file is missing.
    """
    pairs: list[KeyValue] = []
    for map_id in range(n_map):
        pairs.extend(_read_intermediate(_intermediate_name(map_id, task_id)))
    output = Path(f"mr-out-{task_id}")
    with open(output, "w", encoding="utf-8", newline="\n") as out:
        for key, values in group_by_key(pairs):
            out.write(f"{key} {reducef(key, values)}\n")
    return output


def _report(task_id: int, state: WorkStatus) -> None:
    if call("Coordinator.WorkDoneTask", TaskRequest(task_id, state)) is None:
        print("EndTask call failed!")


def worker(mapf: MapFunc, reducef: ReduceFunc) -> None:
    """Run tasks from the coordinator until it says the job is done."""
    while True:
        reply = call("Coordinator.RequestTask", TaskRequest())
        if reply is None:
            print("RequestTask call failed!")
        elif reply.task_type is TaskType.MAP:
            run_map_task(mapf, reply.file_name, reply.n_reduce, reply.task_id)
            _report(reply.task_id, WorkStatus.MAP_COMPLETED)
        elif reply.task_type is TaskType.REDUCE:
            run_reduce_task(reducef, reply.n_map, reply.task_id)
            _report(reply.task_id, WorkStatus.REDUCE_COMPLETED)
        elif reply.task_type is TaskType.WAIT:
            time.sleep(PAUSE)
        elif reply.task_type is TaskType.DONE:
            return
        time.sleep(PAUSE)


def main(argv: Sequence[str] | None = None) -> int:
    """Command entry point: ``mrworker APP``."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 1:
        print(USAGE, file=sys.stderr)
        return 1
    try:
        app = load_app(args[0])
    except LookupError:
        print(f"cannot load plugin {args[0]}", file=sys.stderr)
        return 1
    try:
        worker(app.map, app.reduce)
    except OSError as exc:
        print(f"dialing: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())