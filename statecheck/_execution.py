"""Running a single command implementation, optionally under a timeout.

A stuck system-under-test call must not block the whole suite, so a
command run with a timeout executes in its own daemon thread.  When the
deadline passes, the thread is killed by asynchronously raising
:class:`~statecheck.common.CommandTimeout` inside it and the caller sees
the same exception.

Python has no way to interrupt a thread blocked inside C code; the async
exception lands at the next bytecode boundary, so a call stuck in a
single long C call is abandoned (it is a daemon thread) rather than killed.
"""

from __future__ import annotations

import ctypes
import sys
import threading
from collections.abc import Callable
from typing import Any

from statecheck.common import CommandTimeout

# How long to wait for a killed thread to unwind before abandoning it
KILL_GRACE = 1.0


def kill_thread(thread: threading.Thread, exc_type: type[BaseException] = CommandTimeout) -> bool:
    """Raise ``exc_type`` inside ``thread``.  Returns True if it was delivered."""
    ident = thread.ident
    if ident is None or not thread.is_alive():
        return False
    modified = ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(ident), ctypes.py_object(exc_type))
    if modified > 1:
        # More than one thread state touched: revert and report failure
        ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(ident), None)
        return False
    return modified == 1


def call_with_timeout(func: Callable[..., Any], args: tuple[Any, ...], timeout: float | None) -> Any:
    """Call ``func(*args)``, giving up after ``timeout`` seconds.

    Raises:
        CommandTimeout: if the call did not return in time.
        Any exception raised by ``func``.
    """
    if timeout is None:
        return func(*args)

    box: dict[str, Any] = {}
    # Keep the caller's trace function (see statecheck.instrument)
    trace = sys.gettrace()

    def target() -> None:
        if trace is not None:
            sys.settrace(trace)
        try:
            box["value"] = func(*args)
        except BaseException as e:  # forwarded to the caller below
            box["error"] = e

    thread = threading.Thread(target=target, name="statecheck-command", daemon=True)
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        kill_thread(thread)
        thread.join(KILL_GRACE)
        # The command may have finished before the kill landed
        if "value" in box:
            return box["value"]
        if "error" not in box or isinstance(box["error"], CommandTimeout):
            raise CommandTimeout(f"command did not finish within {timeout}s")
    if "error" in box:
        raise box["error"]
    return box["value"]
