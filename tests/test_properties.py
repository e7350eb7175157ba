"""Tests for properties backed by the counterexample store."""

import pytest
from hypothesis import strategies as st
from support.counter import Counter, LockedCounter, counter_machine

from statecheck.common import Command
from statecheck.generate import commands
from statecheck.model import CommandSpec, StateMachine
from statecheck.properties import (
    CannotGenerate,
    PropertyFailed,
    check_property,
    forall,
    stateful_property,
    verbose_from_env,
)
from statecheck.store import CounterExampleStore, Found, Lookup, property_key, set_default_store


@pytest.fixture
def store(tmp_path):
    with CounterExampleStore(str(tmp_path / "props.ctex")) as s:
        yield s


def prop_small_sum(xs):
    return sum(xs) < 10


def prop_reverse_twice(xs):
    return list(reversed(list(reversed(xs)))) == xs


def test_passing_property(store):
    result = check_property(prop_reverse_twice, st.lists(st.integers()), store=store, numtests=50)
    assert result
    assert result.counterexample is None
    assert result.key == property_key(prop_reverse_twice)
    assert store.lookup(result.key) is Lookup.NONE


def test_failing_property_is_recorded(store):
    result = check_property(prop_small_sum, st.lists(st.integers()), store=store)
    assert not result
    assert sum(result.counterexample) >= 10
    assert result.stored
    assert not result.replayed
    assert store.lookup(property_key(prop_small_sum)) == Found(result.counterexample)


def test_stored_counterexample_is_replayed_first(store):
    key = property_key(prop_small_sum)
    first = check_property(prop_small_sum, st.lists(st.integers()), store=store)
    again = check_property(prop_small_sum, st.lists(st.integers()), store=store)
    assert again.replayed
    assert again.counterexample == first.counterexample
    assert store.lookup(key) == Found(first.counterexample)


def test_replay_survives_restart(tmp_path):
    path = str(tmp_path / "restart.ctex")
    with CounterExampleStore(path) as store:
        first = check_property(prop_small_sum, st.lists(st.integers()), store=store)
    with CounterExampleStore(path) as store:
        replayed = check_property(prop_small_sum, st.lists(st.integers()), store=store)
        assert replayed.replayed
        assert replayed.stored
    # replaying re-recorded it, so it survives another restart
    with CounterExampleStore(path) as store:
        assert store.lookup(property_key(prop_small_sum)) == Found(first.counterexample)


def test_fixed_property_searches_again(store):
    key = ("tests", "fixed", 1)
    store.record(key, [100])
    result = check_property(prop_reverse_twice, st.lists(st.integers()), key=key, store=store, numtests=20)
    assert result
    assert not result.replayed


def test_store_counter_example_disabled(store):
    result = check_property(prop_small_sum, st.lists(st.integers()), store=store, store_counter_example=False)
    assert not result
    assert not result.stored
    assert store.lookup(property_key(prop_small_sum)) is Lookup.NONE


def test_exceptions_falsify_properties():
    def prop_no_zero(n):
        assert n != 0

    result = check_property(prop_no_zero, st.integers())
    assert not result
    assert result.counterexample == 0


def test_unsatisfiable_strategy_cannot_generate(store):
    with pytest.raises(CannotGenerate):
        check_property(prop_reverse_twice, st.lists(st.integers()).filter(lambda xs: False), store=store)
    assert store.lookup(property_key(prop_reverse_twice)) is Lookup.NONE


def test_generation_error_cannot_generate(store):
    machine = StateMachine(initial_state=lambda: 0, name="stuck")
    machine.add_command(CommandSpec("never", lambda: None, pre=lambda state, args: False))
    with pytest.raises(CannotGenerate, match="stuck"):
        check_property(lambda cmds: True, commands(machine, min_size=1, max_tries=3), key=("t", "stuck", 1), store=store)
    assert store.lookup(("t", "stuck", 1)) is Lookup.NONE


def test_zero_weights_cannot_generate(store):
    machine = StateMachine(
        initial_state=lambda: 0,
        weight=lambda state: {"inc": 1} if state == 0 else {},
        name="dead_end",
    )
    machine.add_command(CommandSpec("inc", lambda: None, next=lambda state, args, result: state + 1))
    key = ("t", "dead_end", 1)
    with pytest.raises(CannotGenerate, match="positive weight"):
        check_property(lambda cmds: True, commands(machine, min_size=2, max_size=2), key=key, store=store)
    assert store.lookup(key) is Lookup.NONE


def test_forall_passing():
    @forall(st.integers(), numtests=20)
    def test_square_is_positive(n):
        return n * n >= 0

    assert test_square_is_positive.__name__ == "test_square_is_positive"
    test_square_is_positive()


def test_forall_failing(store):
    @forall(st.integers(), store=store)
    def test_small(n):
        return n < 100

    with pytest.raises(PropertyFailed) as excinfo:
        test_small()
    assert excinfo.value.counterexample == 100
    assert isinstance(excinfo.value, AssertionError)
    assert store.lookup(excinfo.value.key) == Found(100)


def test_forall_uses_default_store(store):
    set_default_store(lambda: store)

    @forall(st.integers())
    def test_small(n):
        return n < 100

    with pytest.raises(PropertyFailed) as first:
        test_small()
    assert not first.value.replayed
    assert store.lookup(first.value.key) == Found(100)

    with pytest.raises(PropertyFailed) as second:
        test_small()
    assert second.value.replayed
    assert second.value.counterexample == 100


def test_stateful_property_uses_default_store(store):
    set_default_store(lambda: store)
    counter = Counter(buggy=True)

    @stateful_property(counter_machine(counter), setup=counter.clear)
    def test_counter(result):
        return result

    with pytest.raises(PropertyFailed) as excinfo:
        test_counter()
    assert store.lookup(excinfo.value.key) == Found(excinfo.value.counterexample)


def test_explicit_store_wins_over_default(store, tmp_path):
    with CounterExampleStore(str(tmp_path / "other.ctex")) as other:
        set_default_store(lambda: other)

        @forall(st.integers(), store=store)
        def test_small(n):
            return n < 100

        with pytest.raises(PropertyFailed) as excinfo:
            test_small()
        assert store.lookup(excinfo.value.key) == Found(100)
        assert other.lookup(excinfo.value.key) is Lookup.NONE


def test_stateful_property_passing():
    counter = Counter()

    @stateful_property(counter_machine(counter), setup=counter.clear, numtests=30)
    def test_counter(result):
        return result

    test_counter()


def test_stateful_property_failing(store):
    counter = Counter(buggy=True)
    cleaned = []

    @stateful_property(counter_machine(counter), setup=counter.clear, cleanup=lambda: cleaned.append(1), store=store)
    def test_counter(result):
        return result

    with pytest.raises(PropertyFailed) as excinfo:
        test_counter()
    counterexample = excinfo.value.counterexample
    names = [c.name for c in counterexample if isinstance(c, Command)]
    assert names[-1] == "get"
    assert "inc" in names
    message = str(excinfo.value)
    assert "Postcondition failed." in message
    assert "#! " in message
    assert cleaned
    assert store.lookup(excinfo.value.key) == Found(counterexample)


def test_stateful_property_custom_check():
    counter = Counter()
    lengths = []

    @stateful_property(counter_machine(counter), setup=counter.clear, numtests=20, max_size=5)
    def test_lengths(result):
        lengths.append(len(result.history))

    test_lengths()
    assert lengths
    assert max(lengths) <= 5


def test_parallel_stateful_property():
    counter = LockedCounter()

    @stateful_property(counter_machine(counter), parallel=True, setup=counter.clear, numtests=10, max_size=3)
    def test_locked_counter(result):
        return result

    test_locked_counter()


@pytest.mark.parametrize(
    "value,default,expected",
    [("1", False, True), ("true", False, True), ("0", True, False), ("", True, True), ("maybe", False, False)],
)
def test_verbose_from_env(monkeypatch, value, default, expected):
    monkeypatch.setenv("STATECHECK_VERBOSE", value)
    assert verbose_from_env(default) is expected


def test_verbose_output(monkeypatch, capsys):
    monkeypatch.setenv("STATECHECK_VERBOSE", "1")
    check_property(prop_reverse_twice, st.lists(st.integers()), numtests=10)
    assert "OK: passed 10 tests" in capsys.readouterr().out
