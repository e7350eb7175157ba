"""
Shared pytest configuration for the statecheck test suite.

Every test must join the threads it starts: parallel runs, command
timeouts and counterexample stores all spawn threads, and a leaked one
usually means a runner forgot to wait for a worker or a store was never
closed.
"""

import threading

import pytest

from statecheck import instrument, store


def pytest_configure(config):
    """Registers markers for statecheck tests."""
    config.addinivalue_line("markers", "slow: mark test as slow (timeouts, forced races)")
    config.addinivalue_line(
        "markers",
        "intentionally_leaves_dangling_threads: mark test as intentionally leaving threads alive",
    )


@pytest.fixture(autouse=True)
def _reset_instrumentation():
    """Instrumented modules are process-wide; start and end every test with none."""
    with instrument._lock:
        instrument._registry.clear()
    yield
    with instrument._lock:
        instrument._registry.clear()


@pytest.fixture(autouse=True)
def _no_default_store():
    """Decorated properties in this suite only use the stores they are given."""
    previous = store.set_default_store(None)
    yield
    store.set_default_store(previous)


@pytest.fixture(autouse=True)
def _check_thread_cleanup(request):
    """Auto-used fixture that verifies all threads started by a test are gone after it.

    Session-scoped fixtures (the counterexample store of the pytest plugin)
    are started before the first test that uses them, so their threads are
    only reported for that test; they are skipped by name.
    """
    initial_threads = set(threading.enumerate())

    yield

    final_threads = set(threading.enumerate())
    new_threads = final_threads - initial_threads

    main_thread = threading.main_thread()
    alive_threads = [
        t for t in new_threads if t != main_thread and t.is_alive() and t.name != "statecheck-store"
    ]

    if alive_threads:
        print(f"\n[THREAD CLEANUP] Test: {request.node.nodeid}")
        for t in alive_threads:
            status = "daemon" if t.daemon else "NON-DAEMON"
            print(f"  - {t.name} (ident={t.ident}, {status}, alive={t.is_alive()})")

    if alive_threads and not request.node.get_closest_marker("intentionally_leaves_dangling_threads"):
        thread_info = ", ".join(
            f"{t.name} ({'daemon' if t.daemon else 'NON-DAEMON'}, ident={t.ident})" for t in alive_threads
        )
        pytest.fail(
            f"Test {request.node.nodeid} left {len(alive_threads)} thread(s) running: {thread_info}. "
            f"All threads must be joined before test completion."
        )
