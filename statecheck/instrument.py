"""Yield-point instrumentation of the system under test.

Races in pure Python code are hard to hit: a thread usually runs a whole
command before the interpreter switches to another one.  Instrumenting a
module installs a line-level trace function in the parallel workers that
calls back into an :class:`Instrumenter` at every line executed in that
module's source file.  :class:`YieldInstrumenter` uses the callback to give
up the GIL, so the other worker gets a chance to run between any two lines.

    >>> import my_counter
    >>> instrument_module(my_counter)
    >>> run_parallel_commands(machine, testcase)  # workers now interleave line by line

Only the threads that enter :func:`instrumented` are traced; the sequential
prefix and the interleaving check run at full speed.
"""

from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from types import ModuleType
from typing import Any

_lock = threading.Lock()
_registry: dict[str, Instrumenter] = {}


class Instrumenter:
    """Receives a callback for every traced line of an instrumented module."""

    def on_line(self, frame: Any) -> None:
        pass


class YieldInstrumenter(Instrumenter):
    """Forces a thread switch at every traced line.

    Args:
        delay: Seconds to sleep at each yield point.  Zero releases the GIL
            without waiting; a small positive value makes lost updates all
            but certain at the cost of speed.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    def on_line(self, frame: Any) -> None:
        time.sleep(self.delay)


def _module_file(module: ModuleType) -> str:
    filename = getattr(module, "__file__", None)
    if not filename:
        raise ValueError(f"Module {module.__name__!r} has no source file to instrument")
    return os.path.abspath(filename)


def instrument_module(module: ModuleType, instrumenter: Instrumenter | None = None) -> None:
    """Register ``module`` so parallel workers trace it with ``instrumenter``.

    Defaults to a :class:`YieldInstrumenter`.  Instrumenting an already
    instrumented module replaces its instrumenter.
    """
    with _lock:
        _registry[_module_file(module)] = instrumenter or YieldInstrumenter()


def uninstrument_module(module: ModuleType) -> None:
    with _lock:
        _registry.pop(_module_file(module), None)


def is_instrumented(module: ModuleType) -> bool:
    filename = getattr(module, "__file__", None)
    if not filename:
        return False
    with _lock:
        return os.path.abspath(filename) in _registry


def _make_trace(instrumenters: dict[str, Instrumenter]):
    """Create a sys.settrace function dispatching to ``instrumenters`` by file."""
    by_code_file: dict[str, Instrumenter | None] = {}

    def lookup(filename: str) -> Instrumenter | None:
        try:
            return by_code_file[filename]
        except KeyError:
            found = instrumenters.get(os.path.abspath(filename))
            by_code_file[filename] = found
            return found

    def trace(frame: Any, event: str, arg: Any) -> Any:
        if event == "call":
            instrumenter = lookup(frame.f_code.co_filename)
            if instrumenter is None:
                return None

            def local_trace(frame: Any, event: str, arg: Any) -> Any:
                if event == "line":
                    instrumenter.on_line(frame)
                return local_trace

            return local_trace
        return trace

    return trace


@contextmanager
def instrumented() -> Iterator[None]:
    """Trace the current thread through every instrumented module.

    A no-op when no module is instrumented.  The previous trace function
    (a debugger or coverage tool) is restored on exit.
    """
    with _lock:
        snapshot = dict(_registry)
    if not snapshot:
        yield
        return

    previous = sys.gettrace()
    sys.settrace(_make_trace(snapshot))
    try:
        yield
    finally:
        sys.settrace(previous)
