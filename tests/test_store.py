"""Tests for the counterexample store."""

import os
import pickle
import threading
import time

import pytest

from statecheck import store as store_module
from statecheck.common import Call, Command, ParallelTestcase, Var
from statecheck.store import (
    CounterExampleStore,
    Found,
    Lookup,
    Record,
    StoreError,
    clean_file,
    default_path,
    property_key,
    read_file,
)

KEY = ("tests.module", "prop_reverse", 1)
OTHER_KEY = ("tests.module", "prop_sort", 1)


@pytest.fixture
def path(tmp_path):
    return str(tmp_path / "counterexamples.ctex")


def test_three_state_lookup(path):
    with CounterExampleStore(path) as store:
        assert store.lookup(KEY) is Lookup.NONE
        assert store.record(KEY, [1, 2, 3]) is Record.OK
        assert store.lookup(KEY) == Found([1, 2, 3])
        assert store.lookup(OTHER_KEY) is Lookup.OTHERS


def test_first_write_wins(path):
    with CounterExampleStore(path) as store:
        assert store.record(KEY, [1, 2, 3]) is Record.OK
        assert store.record(KEY, [9, 9, 9]) is Record.ALREADY_EXISTS
        assert store.lookup(KEY) == Found([1, 2, 3])


def test_durability_round_trip(path):
    with CounterExampleStore(path) as store:
        store.record(KEY, [1, 2, 3])
    with CounterExampleStore(path) as store:
        assert store.lookup(KEY) == Found([1, 2, 3])
        assert store.lookup(OTHER_KEY) is Lookup.OTHERS


def test_record_is_on_disk_before_close(path):
    store = CounterExampleStore(path)
    try:
        store.record(KEY, "value")
        assert read_file(path) == [(KEY, "value")]
    finally:
        store.close()


def test_startup_truncates_file(path):
    with CounterExampleStore(path) as store:
        store.record(KEY, [1])
    with CounterExampleStore(path) as store:
        assert os.path.getsize(path) == 0
        assert store.items() == [(KEY, [1])]


def test_loaded_value_can_be_replaced_once(path):
    with CounterExampleStore(path) as store:
        store.record(KEY, [1, 2, 3])
    with CounterExampleStore(path) as store:
        assert store.record(KEY, [4]) is Record.OK
        assert store.lookup(KEY) == Found([4])
        assert store.record(KEY, [5]) is Record.ALREADY_EXISTS
    with CounterExampleStore(path) as store:
        assert store.lookup(KEY) == Found([4])


def test_first_value_per_key_wins_on_load(path):
    with open(path, "wb") as f:
        pickle.dump((KEY, "first"), f)
        pickle.dump((KEY, "second"), f)
    with CounterExampleStore(path) as store:
        assert store.lookup(KEY) == Found("first")


def test_torn_tail_is_ignored(path):
    with open(path, "wb") as f:
        pickle.dump((KEY, [1, 2]), f)
        f.write(pickle.dumps((OTHER_KEY, list(range(100))))[:20])
    assert read_file(path) == [(KEY, [1, 2])]
    with CounterExampleStore(path) as store:
        assert store.items() == [(KEY, [1, 2])]


def test_command_lists_survive_pickling(path):
    testcase = ParallelTestcase([Command(Var(1), Call("inc"))], [[Command(Var(2), Call("get"))], []])
    with CounterExampleStore(path) as store:
        store.record(KEY, testcase)
    with CounterExampleStore(path) as store:
        assert store.lookup(KEY) == Found(testcase)


def test_unreadable_location_fails_at_startup(tmp_path):
    missing_dir = tmp_path / "does" / "not" / "exist"
    with pytest.raises(StoreError, match="Cannot open"):
        CounterExampleStore(str(missing_dir / "file.ctex"))


def test_calls_after_close_fail(path):
    store = CounterExampleStore(path)
    store.close()
    store.close()
    with pytest.raises(StoreError, match="closed"):
        store.lookup(KEY)


def test_serves_concurrent_callers(path):
    keys = [("tests.module", f"prop_{i}", 0) for i in range(20)]
    results = {}

    with CounterExampleStore(path) as store:

        def worker(key):
            results[key] = [store.record(key, key[1]) for _ in range(3)]

        threads = [threading.Thread(target=worker, args=(key,)) for key in keys]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for key in keys:
            assert results[key] == [Record.OK, Record.ALREADY_EXISTS, Record.ALREADY_EXISTS]
            assert store.lookup(key) == Found(key[1])

    assert sorted(read_file(path)) == sorted((key, key[1]) for key in keys)


def test_write_failure_is_retried(path, monkeypatch):
    calls = []
    real_fsync = os.fsync

    def flaky_fsync(fd):
        calls.append(fd)
        if len(calls) == 1:
            raise OSError("disk hiccup")
        return real_fsync(fd)

    monkeypatch.setattr(store_module, "WRITE_BACKOFF", 0.001)
    with CounterExampleStore(path) as store:
        monkeypatch.setattr(store_module.os, "fsync", flaky_fsync)
        assert store.record(KEY, "value") is Record.OK
        monkeypatch.setattr(store_module.os, "fsync", real_fsync)
    assert len(calls) == 2
    assert read_file(path) == [(KEY, "value")]


def test_write_failure_surfaces_after_retries(path, monkeypatch):
    def broken_fsync(fd):
        raise OSError("disk gone")

    monkeypatch.setattr(store_module, "WRITE_BACKOFF", 0.001)
    with CounterExampleStore(path) as store:
        monkeypatch.setattr(store_module.os, "fsync", broken_fsync)
        with pytest.raises(StoreError, match="disk gone"):
            store.record(KEY, "value")
        monkeypatch.undo()
        # Nothing was accepted, so a later record still goes through
        assert store.lookup(KEY) is Lookup.NONE
        assert store.record(KEY, "value") is Record.OK


def test_property_key():
    def prop_example(a, b):
        return a == b

    assert property_key(prop_example) == (__name__, "test_property_key.<locals>.prop_example", 2)


def test_default_path(monkeypatch):
    monkeypatch.delenv("STATECHECK_COUNTER_EXAMPLES", raising=False)
    assert default_path() == "statecheck.ctex"
    monkeypatch.setenv("STATECHECK_COUNTER_EXAMPLES", "/tmp/other.ctex")
    assert default_path() == "/tmp/other.ctex"


def test_clean_file(path):
    assert clean_file(path) is False
    with CounterExampleStore(path) as store:
        store.record(KEY, 1)
    assert clean_file(path) is True
    assert not os.path.exists(path)
    assert read_file(path) == []


def test_close_waits_for_a_request_being_queued(path):
    """A call already past the closed check is served before the store stops."""
    store = CounterExampleStore(path)
    real_put = store._requests.put
    queuing = threading.Event()

    def slow_put(item, *args, **kwargs):
        if item is not None:
            queuing.set()
            time.sleep(0.05)
        real_put(item, *args, **kwargs)

    store._requests.put = slow_put
    answers = []

    def caller():
        try:
            answers.append(store.lookup(KEY))
        except StoreError as e:
            answers.append(e)

    t = threading.Thread(target=caller, daemon=True)
    t.start()
    assert queuing.wait(1.0)
    store.close()
    t.join(2.0)
    assert not t.is_alive(), "lookup blocked after close()"
    assert answers == [Lookup.NONE]
