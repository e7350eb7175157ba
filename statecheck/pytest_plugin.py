"""Pytest plugin providing a session-wide counterexample store.

Registered via the ``pytest11`` entry point.  Properties built with
:func:`~statecheck.properties.forall` or
:func:`~statecheck.properties.stateful_property` without an explicit
``store`` replay and record through the session store automatically.
Tests calling :func:`~statecheck.properties.check_property` directly ask
for it as a fixture:

    def test_counter(counter_example_store):
        result = check_property(prop, commands(machine), store=counter_example_store)
        assert result, result.counterexample

The file is opened (and truncated) the first time a property needs it, so
sessions that check no properties leave it alone.

Usage::

    pytest --statecheck-counter-examples=.statecheck.ctex   # choose the file
    pytest --statecheck-no-store                            # replay and record nothing
    pytest --statecheck-verbose                             # same as STATECHECK_VERBOSE=1
"""

from __future__ import annotations

import os
import threading

import pytest

from statecheck.properties import VERBOSE_ENV_VAR
from statecheck.store import CounterExampleStore, default_path, set_default_store

_SAVED_VERBOSE = "_statecheck_saved_verbose"
_SESSION_STORE = "_statecheck_session_store"
_SAVED_PROVIDER = "_statecheck_saved_provider"


class SessionStore:
    """Opens the session's counterexample store on first use."""

    def __init__(self, path: str | None, enabled: bool = True):
        self.path = path
        self.enabled = enabled
        self._store: CounterExampleStore | None = None
        self._lock = threading.Lock()

    def __call__(self) -> CounterExampleStore | None:
        if not self.enabled:
            return None
        with self._lock:
            if self._store is None:
                self._store = CounterExampleStore(self.path or default_path())
            return self._store

    def close(self) -> None:
        with self._lock:
            if self._store is not None:
                self._store.close()
                self._store = None


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("statecheck", "statecheck stateful property testing")
    group.addoption(
        "--statecheck-counter-examples",
        default=None,
        metavar="PATH",
        help="File where failing inputs are kept between runs. "
        "Defaults to $STATECHECK_COUNTER_EXAMPLES or statecheck.ctex.",
    )
    group.addoption(
        "--statecheck-no-store",
        action="store_true",
        default=False,
        help="Do not replay or record counterexamples; the counter_example_store fixture is None.",
    )
    group.addoption(
        "--statecheck-verbose",
        action="store_true",
        default=False,
        help="Print progress and reports for every checked property.",
    )


def pytest_configure(config: pytest.Config) -> None:
    session_store = SessionStore(
        config.getoption("--statecheck-counter-examples", default=None),
        enabled=not config.getoption("--statecheck-no-store", default=False),
    )
    setattr(config, _SESSION_STORE, session_store)
    setattr(config, _SAVED_PROVIDER, set_default_store(session_store))

    if not config.getoption("--statecheck-verbose", default=False):
        return
    setattr(config, _SAVED_VERBOSE, os.environ.get(VERBOSE_ENV_VAR))
    os.environ[VERBOSE_ENV_VAR] = "1"


def pytest_unconfigure(config: pytest.Config) -> None:
    session_store = getattr(config, _SESSION_STORE, None)
    if session_store is not None:
        set_default_store(getattr(config, _SAVED_PROVIDER))
        session_store.close()

    if not hasattr(config, _SAVED_VERBOSE):
        return
    saved = getattr(config, _SAVED_VERBOSE)
    if saved is None:
        os.environ.pop(VERBOSE_ENV_VAR, None)
    else:
        os.environ[VERBOSE_ENV_VAR] = saved


@pytest.fixture(scope="session")
def counter_example_store(request: pytest.FixtureRequest) -> CounterExampleStore | None:
    """The counterexample store shared by the whole test session."""
    return getattr(request.config, _SESSION_STORE)()
