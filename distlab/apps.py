"""MapReduce applications: pairs of map and reduce functions.

Each application is a :class:`MapReduceApp`; :func:`load_app` finds one by
name, accepting forms such as ``"wc"``, ``"wc.so"`` or ``"../mrapps/wc.so"``.
Several applications exist only to exercise the framework: they crash,
stall, or record how many workers run at once.
"""

from __future__ import annotations

import itertools
import os
import re
import secrets
import sys
import time
from dataclasses import dataclass
from itertools import groupby
from pathlib import Path
from typing import Callable

from distlab.mrprotocol import KeyValue

MapFunc = Callable[[str, str], list[KeyValue]]
ReduceFunc = Callable[[str, list[str]], str]

JOBCOUNT_PREFIX = "mr-worker-jobcount"


@dataclass(frozen=True)
class MapReduceApp:
    """A named map function and reduce function."""

    name: str
    map: MapFunc
    reduce: ReduceFunc


def _words(text: str) -> list[str]:
    """Maximal runs of letters; every other character separates words."""
    return ["".join(run) for is_letter, run in groupby(text, key=str.isalpha) if is_letter]


def _sorted_join(values: list[str]) -> str:
    return " ".join(sorted(values))


def _file_summary(filename: str, contents: str) -> list[KeyValue]:
    return [
        KeyValue("a", filename),
        KeyValue("b", str(len(filename))),
        KeyValue("c", str(len(contents))),
        KeyValue("d", "xyzzy"),
    ]


# Word count.


def wc_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit ``(word, "1")`` for every word in ``contents``; the file name is ignored."""
    return [KeyValue(word, "1") for word in _words(contents)]


def wc_reduce(key: str, values: list[str]) -> str:
    """Number of occurrences of the word."""
    return str(len(values))


# Inverted index.


def indexer_map(document: str, value: str) -> list[KeyValue]:
    """Emit ``(word, document)`` once for each distinct word of the document."""
    distinct = dict.fromkeys(_words(value))
    return [KeyValue(word, document) for word in distinct]


def indexer_reduce(key: str, values: list[str]) -> str:
    """Count of documents holding the word, then their sorted, comma-separated names."""
    documents = sorted(values)
    return f"{len(documents)} {','.join(documents)}"


# Sometimes crashes, sometimes stalls.


def _maybe_crash() -> None:
    roll = secrets.randbelow(1000)
    if roll < 330:
        sys.exit(1)
    elif roll < 660:
        time.sleep(secrets.randbelow(10 * 1000) / 1000)


def crash_map(filename: str, contents: str) -> list[KeyValue]:
    """Like :func:`nocrash_map`, but may exit the process or pause for up to ten seconds."""
    _maybe_crash()
    return _file_summary(filename, contents)


def crash_reduce(key: str, values: list[str]) -> str:
    """Like :func:`nocrash_reduce`, but may exit the process or pause for up to ten seconds."""
    _maybe_crash()
    return _sorted_join(values)


def nocrash_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit the file name, its length, the contents' length and a fixed marker."""
    return _file_summary(filename, contents)


def nocrash_reduce(key: str, values: list[str]) -> str:
    """The values, sorted and joined with spaces, so that output is deterministic."""
    return _sorted_join(values)


# Some reduce tasks take a long time.


def early_exit_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit ``(filename, "1")`` once per file."""
    return [KeyValue(filename, "1")]


def early_exit_reduce(key: str, values: list[str]) -> str:
    """Number of values; pauses three seconds for some keys."""
    if "sherlock" in key or "tom" in key:
        time.sleep(3)
    return str(len(values))


# Counts how many times map tasks run.

_job_counter = itertools.count()


def jobcount_map(filename: str, contents: str) -> list[KeyValue]:
    """Leave a marker file in the working directory for each map invocation."""
    marker = Path(f"{JOBCOUNT_PREFIX}-{os.getpid()}-{next(_job_counter)}")
    marker.write_text("x")
    time.sleep((2000 + secrets.randbelow(3000)) / 1000)
    return [KeyValue("a", "x")]


def jobcount_reduce(key: str, values: list[str]) -> str:
    """Number of marker files left by map invocations."""
    invocations = sum(1 for name in os.listdir(".") if name.startswith(JOBCOUNT_PREFIX))
    return str(invocations)


# Parallelism probes.


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def nparallel(phase: str) -> int:
    """Number of live workers, this one included, currently in ``phase``.

    Each worker announces itself with a file in the working directory,
    then counts the announcements whose process is still running.
    """
    mine = Path(f"mr-worker-{phase}-{os.getpid()}")
    mine.write_text("x")
    pattern = re.compile(rf"mr-worker-{re.escape(phase)}-([+-]?\d+)")
    running = 0
    for name in os.listdir("."):
        match = pattern.match(name)
        if match and _alive(int(match.group(1))):
            running += 1
    time.sleep(1)
    mine.unlink()
    return running


def mtiming_map(filename: str, contents: str) -> list[KeyValue]:
    """Report when this map started and how many map workers ran with it."""
    started = time.time()
    pid = os.getpid()
    running = nparallel("map")
    return [
        KeyValue(f"times-{pid}", f"{started:.1f}"),
        KeyValue(f"parallel-{pid}", str(running)),
    ]


def mtiming_reduce(key: str, values: list[str]) -> str:
    """The values, sorted and joined with spaces."""
    return _sorted_join(values)


def rtiming_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit ten fixed keys so that there are many reduce tasks."""
    return [KeyValue(key, "1") for key in "abcdefghij"]


def rtiming_reduce(key: str, values: list[str]) -> str:
    """How many reduce workers ran at the same time as this one."""
    return str(nparallel("reduce"))


_APPS = {
    app.name: app
    for app in (
        MapReduceApp("wc", wc_map, wc_reduce),
        MapReduceApp("indexer", indexer_map, indexer_reduce),
        MapReduceApp("crash", crash_map, crash_reduce),
        MapReduceApp("nocrash", nocrash_map, nocrash_reduce),
        MapReduceApp("early_exit", early_exit_map, early_exit_reduce),
        MapReduceApp("jobcount", jobcount_map, jobcount_reduce),
        MapReduceApp("mtiming", mtiming_map, mtiming_reduce),
        MapReduceApp("rtiming", rtiming_map, rtiming_reduce),
    )
}


def load_app(name: str) -> MapReduceApp:
    """Find an application by name; directory and file suffix are ignored.

    Raises LookupError if there is no such application.
    """
    key = Path(name).stem
    try:
        return _APPS[key]
    except KeyError:
        raise LookupError(f"cannot load application {name!r}") from None