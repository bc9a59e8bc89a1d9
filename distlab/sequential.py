"""Run a MapReduce application in one process, without a coordinator."""

from __future__ import annotations

import sys
from os import PathLike
from typing import Iterable, Sequence

from distlab.apps import MapReduceApp, load_app
from distlab.mrprotocol import KeyValue, group_by_key

USAGE = "Usage: mrsequential xxx.so inputfiles..."


def run_sequential(
    app: MapReduceApp,
    files: Iterable[str | PathLike],
    output: str | PathLike = "mr-out-0",
) -> None:
    """Map every input file, then reduce each distinct key into ``output``.

    Each output line is the key, a space and the reduce result. Raises
    OSError if an input file cannot be read.
    """
    intermediate: list[KeyValue] = []
    for filename in files:
        with open(filename, encoding="utf-8", errors="replace", newline="") as stream:
            content = stream.read()
        intermediate.extend(app.map(str(filename), content))

    with open(output, "w", encoding="utf-8", newline="\n") as out:
        for key, values in group_by_key(intermediate):
            out.write(f"{key} {app.reduce(key, values)}\n")


def main(argv: Sequence[str] | None = None) -> int:
    """Command entry point: ``mrsequential APP INPUTFILE...``."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        print(USAGE, file=sys.stderr)
        return 1
    try:
        app = load_app(args[0])
    except LookupError:
        print(f"cannot load plugin {args[0]}", file=sys.stderr)
        return 1
    try:
        run_sequential(app, args[1:])
    except OSError as exc:
        print(f"cannot open {exc.filename}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())