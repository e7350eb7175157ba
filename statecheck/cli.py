"""statecheck CLI: inspect and clean the counterexample file.

Usage::

    statecheck inspect [FILE]
    statecheck clean [FILE]

``FILE`` defaults to ``$STATECHECK_COUNTER_EXAMPLES`` or
``statecheck.ctex`` in the current directory.  Inspecting reads the file
without opening a store, so it never truncates it.
"""

from __future__ import annotations

import sys

from statecheck.common import Command, InitCommand, ParallelTestcase
from statecheck.reporter import format_counterexample
from statecheck.store import PATH_ENV_VAR, StoreError, clean_file, default_path, read_file


def _usage() -> None:
    print("Usage: statecheck <inspect|clean> [FILE]", file=sys.stderr)
    print()
    print("Manage the file where failing inputs are kept between test runs.")
    print()
    print("Commands:")
    print("  inspect [FILE]   List the stored counterexamples")
    print("  clean [FILE]     Delete the file")
    print()
    print("Environment variables:")
    print(f"  {PATH_ENV_VAR}  Default FILE (currently {default_path()})")


def _describe(value: object) -> str:
    if isinstance(value, ParallelTestcase):
        return format_counterexample(value)
    if isinstance(value, list) and value and all(isinstance(v, (Command, InitCommand)) for v in value):
        return format_counterexample(value)
    return repr(value)


def inspect(path: str) -> int:
    records = read_file(path)
    if not records:
        print(f"statecheck: no counterexamples in {path}", file=sys.stderr)
        return 0
    seen = set()
    for key, value in records:
        if key in seen:
            continue
        seen.add(key)
        module, name, arity = key
        print(f"{module}.{name}/{arity}:")
        for line in _describe(value).split("\n"):
            print(f"    {line}")
        print()
    return 0


def clean(path: str) -> int:
    if clean_file(path):
        print(f"statecheck: removed {path}", file=sys.stderr)
    else:
        print(f"statecheck: {path} does not exist", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``statecheck`` CLI command."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] not in ("inspect", "clean") or len(argv) > 2:
        _usage()
        return 1

    command = argv[0]
    path = argv[1] if len(argv) > 1 else default_path()
    try:
        if command == "inspect":
            return inspect(path)
        return clean(path)
    except StoreError as e:
        print(f"statecheck: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
