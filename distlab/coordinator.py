"""The MapReduce coordinator: hands out map and reduce tasks to workers.

Workers reach the coordinator over a UNIX-domain socket. Each request is
one JSON line naming a method and its arguments, and each response is one
JSON line holding either the reply or an error message.
"""

from __future__ import annotations

import dataclasses
import json
import os
import socketserver
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Sequence

from distlab.mrprotocol import TaskReply, TaskRequest, TaskType, WorkStatus, coordinator_socket

TASK_TIMEOUT = 10.0  # seconds before an assigned task is handed out again
N_REDUCE = 10
USAGE = "Usage: mrcoordinator inputfiles..."


class TaskStatus(IntEnum):
    UNASSIGNED = 0
    ASSIGNED = 1
    FAILED = 2
    COMPLETED = 3


@dataclass
class TaskInfo:
    """Progress of one map or reduce task."""

    status: TaskStatus = TaskStatus.UNASSIGNED
    file_name: str = ""
    timestamp: float = field(default_factory=time.monotonic)

    def assignable(self, now: float) -> bool:
        if self.status in (TaskStatus.UNASSIGNED, TaskStatus.FAILED):
            return True
        return self.status is TaskStatus.ASSIGNED and now - self.timestamp >= TASK_TIMEOUT


def _plain(value: Any) -> Any:
    return int(value) if isinstance(value, IntEnum) else value


class _Handler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        line = self.rfile.readline()
        if not line:
            return
        try:
            message = json.loads(line)
            method = self.server.methods[message["method"]]
            reply = method(TaskRequest(**message.get("args", {})))
            response = {
                "reply": {key: _plain(value) for key, value in dataclasses.asdict(reply).items()}
            }
        except KeyError as exc:
            response = {"error": f"unknown method or missing field {exc}"}
        except Exception as exc:  # reported to the caller
            response = {"error": f"{type(exc).__name__}: {exc}"}
        self.wfile.write(json.dumps(response).encode("utf-8") + b"\n")
        self.wfile.flush()


class _RPCServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, methods: dict[str, Callable[[TaskRequest], TaskReply]]) -> None:
        self.methods = methods
        super().__init__(path, _Handler)


class Coordinator:
    """Tracks the state of every task of one MapReduce job."""

    def __init__(self, files: Sequence[str], n_reduce: int, sockname: str | None = None) -> None:
        self.n_reduce = n_reduce
        self.n_map = len(files)
        self.sockname = sockname if sockname is not None else coordinator_socket()
        self.map_tasks = [TaskInfo(file_name=name) for name in files]
        self.reduce_tasks = [TaskInfo() for _ in range(n_reduce)]
        self._lock = threading.Lock()
        self._all_map_done = False
        self._all_reduce_done = False
        self._server: _RPCServer | None = None
        self._thread: threading.Thread | None = None

    def __enter__(self) -> Coordinator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _assign(self, tasks: list[TaskInfo], task_type: TaskType) -> TaskReply | None:
        now = time.monotonic()
        for task_id, info in enumerate(tasks):
            if info.assignable(now):
                info.status = TaskStatus.ASSIGNED
                info.timestamp = now
                return TaskReply(
                    task_id=task_id,
                    task_type=task_type,
                    file_name=info.file_name,
                    n_reduce=self.n_reduce,
                    n_map=self.n_map,
                )
        return None

    @staticmethod
    def _all_completed(tasks: list[TaskInfo]) -> bool:
        return all(info.status is TaskStatus.COMPLETED for info in tasks)

    def request_task(self, args: TaskRequest | None = None) -> TaskReply:
        """Hand out the next task: a map, a reduce, a wait, or the end of the job."""
        with self._lock:
            if not self._all_map_done:
                reply = self._assign(self.map_tasks, TaskType.MAP)
                if reply is not None:
                    return reply
                if not self._all_completed(self.map_tasks):
                    return TaskReply(task_type=TaskType.WAIT)
                self._all_map_done = True
            if not self._all_reduce_done:
                reply = self._assign(self.reduce_tasks, TaskType.REDUCE)
                if reply is not None:
                    return reply
                if not self._all_completed(self.reduce_tasks):
                    return TaskReply(task_type=TaskType.WAIT)
                self._all_reduce_done = True
            return TaskReply(task_type=TaskType.DONE)

    def work_done_task(self, args: TaskRequest) -> TaskReply:
        """Record how a task ended. Raises IndexError for an unknown task id."""
        with self._lock:
            if args.work_state in (WorkStatus.MAP_COMPLETED, WorkStatus.MAP_FAILED):
                tasks = self.map_tasks
            else:
                tasks = self.reduce_tasks
            if not 0 <= args.task_id < len(tasks):
                raise IndexError(f"no task {args.task_id}")
            completed = args.work_state in (WorkStatus.MAP_COMPLETED, WorkStatus.REDUCE_COMPLETED)
            tasks[args.task_id].status = TaskStatus.COMPLETED if completed else TaskStatus.FAILED
        return TaskReply()

    def done(self) -> bool:
        """True once every map and every reduce task has completed."""
        with self._lock:
            return self._all_map_done and self._all_reduce_done

    def serve(self) -> None:
        """Start answering workers on the coordinator socket in a background thread."""
        if self._server is not None:
            raise RuntimeError("coordinator is already serving")
        try:
            os.remove(self.sockname)
        except FileNotFoundError:
            pass
        self._server = _RPCServer(
            self.sockname,
            {
                "Coordinator.RequestTask": self.request_task,
                "Coordinator.WorkDoneTask": self.work_done_task,
            },
        )
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop serving and remove the socket."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None
        try:
            os.remove(self.sockname)
        except FileNotFoundError:
            pass


def make_coordinator(files: Sequence[str], n_reduce: int) -> Coordinator:
    """Create a coordinator for ``files`` with ``n_reduce`` reduce tasks and start serving."""
    coordinator = Coordinator(files, n_reduce)
    coordinator.serve()
    return coordinator


def main(argv: Sequence[str] | None = None) -> int:
    """Command entry point: ``mrcoordinator INPUTFILE...``."""
    files = list(sys.argv[1:] if argv is None else argv)
    if not files:
        print(USAGE, file=sys.stderr)
        return 1
    with make_coordinator(files, N_REDUCE) as coordinator:
        while not coordinator.done():
            time.sleep(1)
        time.sleep(1)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())