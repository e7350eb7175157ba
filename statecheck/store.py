"""
Durable storage of counterexamples between test runs.

A :class:`CounterExampleStore` remembers, per property, the failing input
found most recently, so the next run can replay it before searching for
new ones.  Keys are ``(module, qualname, arity)`` triples (see
:func:`property_key`); values are anything :mod:`pickle` can serialize,
usually a command list or a :class:`~statecheck.common.ParallelTestcase`.

    store = CounterExampleStore("statecheck.ctex")
    store.lookup(key)          # Lookup.NONE: nothing has ever failed
    store.record(key, cmds)    # Record.OK
    store.lookup(key)          # Found(cmds)
    store.lookup(other_key)    # Lookup.OTHERS
    store.close()

Storage model:

* The file is an append-only sequence of pickled ``(key, value)`` records.
  Every accepted :meth:`~CounterExampleStore.record` is appended and
  synced to disk (``os.fsync``) before it returns.
* On start the whole file is read into memory (the first record per key
  wins, a torn record at the end is ignored) and the file is truncated.
  From then on the in-memory map is authoritative, and the file holds only
  what was recorded since the store was opened.
* First write wins within a process: once a key has been recorded, further
  records for it are refused with :attr:`Record.ALREADY_EXISTS`.  A value
  loaded from disk may be replaced once, by the first new failure.
* All calls are served by one owner thread, one at a time, so callers on
  any thread see a consistent map and records are totally ordered.
"""

from __future__ import annotations

import enum
import os
import pickle
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from statecheck.common import StatecheckError

DEFAULT_PATH = "statecheck.ctex"
PATH_ENV_VAR = "STATECHECK_COUNTER_EXAMPLES"

# Attempts and first delay (seconds) when appending a record fails
WRITE_ATTEMPTS = 3
WRITE_BACKOFF = 0.05

Key = tuple[str, str, int]


class StoreError(StatecheckError):
    """The counterexample file could not be read or written."""


class Lookup(enum.Enum):
    NONE = "none"
    OTHERS = "others"


class Record(enum.Enum):
    OK = "ok"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class Found:
    """Lookup result carrying the stored counterexample."""

    value: Any


def property_key(func: Callable[..., Any]) -> Key:
    """Store key of a property function: ``(module, qualname, arity)``."""
    code = getattr(func, "__code__", None)
    arity = code.co_argcount if code is not None else 0
    return (func.__module__, func.__qualname__, arity)


def default_path() -> str:
    return os.environ.get(PATH_ENV_VAR) or DEFAULT_PATH


_default_provider: Callable[[], CounterExampleStore | None] | None = None


def set_default_store(
    provider: Callable[[], CounterExampleStore | None] | None,
) -> Callable[[], CounterExampleStore | None] | None:
    """Install the provider of the store used by properties that were given none.

    ``provider`` is called each time a property runs, so it can open the
    store lazily.  The pytest plugin installs one for the whole session.
    Returns the previous provider.
    """
    global _default_provider
    previous = _default_provider
    _default_provider = provider
    return previous


def default_store() -> CounterExampleStore | None:
    provider = _default_provider
    if provider is None:
        return None
    return provider()


def read_file(path: str) -> list[tuple[Key, Any]]:
    """Read all complete records of a counterexample file, in file order.

    A missing file reads as empty.  A record cut short by a crash ends the
    read; everything before it is returned.

    Raises:
        StoreError: if the file exists but cannot be opened.
    """
    records: list[tuple[Key, Any]] = []
    try:
        f = open(path, "rb")
    except FileNotFoundError:
        return records
    except OSError as e:
        raise StoreError(f"Cannot read counterexample file {path}: {e}") from e
    with f:
        while True:
            try:
                key, value = pickle.load(f)
            except EOFError:
                break
            except (pickle.UnpicklingError, ValueError, TypeError, AttributeError, ImportError):
                # Torn tail or a record whose classes no longer exist
                break
            records.append((key, value))
    return records


def clean_file(path: str) -> bool:
    """Delete a counterexample file.  Returns False if there was none."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StoreError(f"Cannot remove counterexample file {path}: {e}") from e
    return True


class CounterExampleStore:
    """Actor owning one counterexample file.

    Args:
        path: File to load from and append to.  Defaults to
            ``$STATECHECK_COUNTER_EXAMPLES`` or ``statecheck.ctex``.
        debug: Print every request the owner thread serves.

    Raises:
        StoreError: if the file cannot be loaded or truncated.
    """

    def __init__(self, path: str | None = None, *, debug: bool = False):
        self.path = path or default_path()
        self.debug = debug
        self._values: dict[Key, Any] = {}
        self._recorded: set[Key] = set()
        self._requests: queue.Queue[tuple[str, tuple[Any, ...], queue.Queue[Any]] | None] = queue.Queue()
        self._closed = False
        # Guards _closed: no request is queued after the stop sentinel
        self._lock = threading.Lock()
        self._file = self._load()
        self._thread = threading.Thread(target=self._serve, name="statecheck-store", daemon=True)
        self._thread.start()

    def __repr__(self):
        return f"CounterExampleStore({self.path!r})"

    def __enter__(self) -> CounterExampleStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --- Startup (runs before the owner thread exists) ---

    def _load(self):
        for key, value in read_file(self.path):
            self._values.setdefault(key, value)
        try:
            f = open(self.path, "wb")
            f.flush()
            os.fsync(f.fileno())
        except OSError as e:
            raise StoreError(f"Cannot open counterexample file {self.path}: {e}") from e
        if self.debug:
            print(f"Loaded {len(self._values)} counterexample(s) from {self.path}", flush=True)
        return f

    # --- Owner thread ---

    def _serve(self) -> None:
        while True:
            request = self._requests.get()
            if request is None:
                break
            op, args, reply = request
            if self.debug:
                print(f"Store {op}{args!r}", flush=True)
            try:
                reply.put((True, getattr(self, f"_do_{op}")(*args)))
            except Exception as e:
                reply.put((False, e))
        self._file.close()

    def _call(self, op: str, *args: Any) -> Any:
        reply: queue.Queue[Any] = queue.Queue(maxsize=1)
        with self._lock:
            if self._closed:
                raise StoreError(f"{self!r} is closed")
            self._requests.put((op, args, reply))
        ok, value = reply.get()
        if not ok:
            raise value
        return value

    def _do_lookup(self, key: Key) -> Lookup | Found:
        if not self._values:
            return Lookup.NONE
        if key not in self._values:
            return Lookup.OTHERS
        return Found(self._values[key])

    def _do_record(self, key: Key, value: Any) -> Record:
        if key in self._recorded:
            return Record.ALREADY_EXISTS
        self._append(key, value)
        self._values[key] = value
        self._recorded.add(key)
        return Record.OK

    def _do_items(self) -> list[tuple[Key, Any]]:
        return list(self._values.items())

    def _append(self, key: Key, value: Any) -> None:
        data = pickle.dumps((key, value))
        delay = WRITE_BACKOFF
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            start = self._file.tell()
            try:
                self._file.write(data)
                self._file.flush()
                os.fsync(self._file.fileno())
                return
            except OSError as e:
                if self.debug:
                    print(f"Writing {self.path} failed (attempt {attempt}): {e}", flush=True)
                error = e
            try:
                # Drop whatever part of the record made it to the file
                self._file.seek(start)
                self._file.truncate()
            except OSError:
                pass
            if attempt < WRITE_ATTEMPTS:
                time.sleep(delay)
                delay *= 2
        raise StoreError(f"Cannot write counterexample to {self.path}: {error}") from error

    # --- Public API ---

    def lookup(self, key: Key) -> Lookup | Found:
        """``Lookup.NONE`` if nothing is stored, ``Lookup.OTHERS`` if only other keys are, else ``Found``."""
        return self._call("lookup", tuple(key))

    def record(self, key: Key, value: Any) -> Record:
        """Store ``value`` for ``key`` durably, unless ``key`` was already recorded by this store."""
        return self._call("record", tuple(key), value)

    def items(self) -> list[tuple[Key, Any]]:
        """Snapshot of every stored ``(key, value)`` pair."""
        return self._call("items")

    def close(self) -> None:
        """Stop the owner thread and close the file.  Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._requests.put(None)
        self._thread.join()
