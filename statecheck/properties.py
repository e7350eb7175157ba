"""
Properties backed by the counterexample store.

:func:`check_property` is the single entry point that ties generation,
execution and persistence together:

1. If the store holds a counterexample for the property, replay it first.
   A failure that still reproduces is reported without searching.
2. Otherwise let Hypothesis search for (and shrink) a failing input.
3. Record a new failing input in the store, so the next run starts with it.

Generation problems (no command satisfies its precondition, Hypothesis
gives up on an unsatisfiable strategy) are raised as :class:`CannotGenerate`
and never stored; they say nothing reproducible about the system.

Two decorators build pytest-collectable test functions on top of it:

    >>> @forall(st.lists(st.integers()))
    ... def test_reverse_twice(xs):
    ...     return list(reversed(list(reversed(xs)))) == xs

    >>> @stateful_property(machine, setup=reset_counter)
    ... def test_counter(result):
    ...     return result

Set ``STATECHECK_VERBOSE=1`` to print progress and reports for every
property, or ``STATECHECK_VERBOSE=0`` to silence them.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from hypothesis import strategies as st
from hypothesis.errors import FailedHealthCheck, Unsatisfiable

from statecheck.common import GenerationError, ParallelRunResult, RunResult, StatecheckError
from statecheck.generate import DEFAULT_MAX_SIZE, commands, find_counterexample, parallel_commands
from statecheck.model import StateMachine
from statecheck.parallel import run_parallel_commands
from statecheck.reporter import ReportOptions, format_counterexample, render
from statecheck.sequential import run_commands
from statecheck.store import CounterExampleStore, Found, Key, Record, default_store, property_key

VERBOSE_ENV_VAR = "STATECHECK_VERBOSE"


class CannotGenerate(StatecheckError):
    """The strategy could not produce test inputs.  Not a property failure."""


class PropertyFailed(AssertionError):
    """A property was falsified.

    Attributes:
        key: Store key of the property.
        counterexample: The (shrunk) failing input.
        replayed: True if the failure came from a stored counterexample.
    """

    def __init__(self, message: str, key: Key, counterexample: Any, replayed: bool = False):
        super().__init__(message)
        self.key = key
        self.counterexample = counterexample
        self.replayed = replayed


@dataclass
class CheckResult:
    """Outcome of :func:`check_property`.  Truthy when the property held."""

    key: Key
    passed: bool
    counterexample: Any = None
    replayed: bool = False
    stored: bool = False

    def __bool__(self):
        return self.passed


def verbose_from_env(default: bool = False) -> bool:
    """Apply ``STATECHECK_VERBOSE``: ``1``/``true`` forces verbose, ``0``/``false`` forces quiet."""
    value = os.environ.get(VERBOSE_ENV_VAR, "").strip().lower()
    if value in ("1", "true", "yes"):
        return True
    if value in ("0", "false", "no"):
        return False
    return default


def _holds(prop: Callable[[Any], Any], value: Any) -> bool:
    try:
        outcome = prop(value)
    except (GenerationError, CannotGenerate):
        raise
    except Exception:
        return False
    return outcome is None or bool(outcome)


def check_property(
    prop: Callable[[Any], Any],
    strategy: st.SearchStrategy,
    *,
    key: Key | None = None,
    store: CounterExampleStore | None = None,
    numtests: int = 100,
    store_counter_example: bool = True,
    seed: int | None = None,
    verbose: bool | None = None,
) -> CheckResult:
    """Check that ``prop`` holds for values drawn from ``strategy``.

    ``prop`` fails when it returns a falsy value other than None or raises
    an exception.

    Args:
        prop: The property, called with one generated value.
        strategy: Hypothesis strategy producing the inputs.
        key: Store key; defaults to :func:`~statecheck.store.property_key` of ``prop``.
        store: Where counterexamples are looked up and recorded.  Without
            a store nothing is replayed or persisted.
        numtests: Number of examples Hypothesis generates.
        store_counter_example: Record new failures in ``store``.
        seed: Seed for reproducible searches.
        verbose: Print progress.  ``STATECHECK_VERBOSE`` overrides it.

    Raises:
        CannotGenerate: if no inputs could be generated.
    """
    key = tuple(key) if key is not None else property_key(prop)
    verbose = verbose_from_env(bool(verbose))

    if store is not None:
        stored = store.lookup(key)
        if isinstance(stored, Found):
            if verbose:
                print(f"Replaying stored counterexample for {key!r}", flush=True)
            if not _holds(prop, stored.value):
                # Re-record so the counterexample survives the next restart
                recorded = store_counter_example and store.record(key, stored.value) is Record.OK
                return CheckResult(key, False, stored.value, replayed=True, stored=recorded)
            if verbose:
                print("Stored counterexample passes now, searching for new ones", flush=True)

    try:
        counterexample = find_counterexample(
            strategy, lambda value: not _holds(prop, value), max_examples=numtests, seed=seed
        )
    except (GenerationError, Unsatisfiable, FailedHealthCheck) as e:
        raise CannotGenerate(f"Cannot generate inputs for {key!r}: {e}") from e

    if counterexample is None:
        if verbose:
            print(f"OK: passed {numtests} tests ({key!r})", flush=True)
        return CheckResult(key, True)

    recorded = False
    if store is not None and store_counter_example:
        recorded = store.record(key, counterexample) is Record.OK
    if verbose:
        print(f"Failed: {key!r} falsified by {counterexample!r}", flush=True)
    return CheckResult(key, False, counterexample, stored=recorded)


def _named_like(wrapper: Callable[..., Any], func: Callable[..., Any]) -> Callable[..., Any]:
    # No __wrapped__: pytest would read the property's arguments as fixtures
    wrapper.__name__ = func.__name__
    wrapper.__qualname__ = func.__qualname__
    wrapper.__module__ = func.__module__
    wrapper.__doc__ = func.__doc__
    return wrapper


def forall(
    strategy: st.SearchStrategy,
    *,
    store: CounterExampleStore | None = None,
    numtests: int = 100,
    store_counter_example: bool = True,
    verbose: bool | None = None,
) -> Callable[[Callable[[Any], Any]], Callable[[], None]]:
    """Turn a one-argument property into a zero-argument test function.

    The test raises :class:`PropertyFailed` with the counterexample when
    the property is falsified.  Without ``store`` it uses
    :func:`~statecheck.store.default_store`, the session store under pytest.
    """

    def decorator(prop: Callable[[Any], Any]) -> Callable[[], None]:
        def test() -> None:
            result = check_property(
                prop,
                strategy,
                key=property_key(prop),
                store=store if store is not None else default_store(),
                numtests=numtests,
                store_counter_example=store_counter_example,
                verbose=verbose,
            )
            if not result:
                raise PropertyFailed(
                    f"Property {prop.__qualname__} falsified by {result.counterexample!r}",
                    result.key,
                    result.counterexample,
                    result.replayed,
                )

        test.prop = prop
        return _named_like(test, prop)

    return decorator


def stateful_property(
    machine: StateMachine,
    *,
    parallel: bool = False,
    setup: Callable[[], Any] | None = None,
    cleanup: Callable[[], Any] | None = None,
    timeout: float | None = None,
    numtests: int = 100,
    max_size: int = DEFAULT_MAX_SIZE,
    store: CounterExampleStore | None = None,
    store_counter_example: bool = True,
    options: ReportOptions | None = None,
    verbose: bool | None = None,
) -> Callable[[Callable[[Any], Any]], Callable[[], None]]:
    """Test a state machine with generated command sequences.

    The decorated function receives each run's
    :class:`~statecheck.common.RunResult` (or
    :class:`~statecheck.common.ParallelRunResult` with ``parallel=True``)
    and returns whether the run passed; returning None means "the run
    passed if its outcome is ok".  ``setup`` and ``cleanup`` run around
    every execution to reset the system under test.  ``store`` defaults to
    :func:`~statecheck.store.default_store` as in :func:`forall`.

    On failure the shrunk counterexample is run once more and its report is
    the message of the raised :class:`PropertyFailed`.
    """
    strategy = parallel_commands(machine, max_size=max_size) if parallel else commands(machine, max_size=max_size)

    def execute(cmds: Any) -> RunResult | ParallelRunResult:
        if setup is not None:
            setup()
        try:
            if parallel:
                return run_parallel_commands(machine, cmds, timeout=timeout)
            return run_commands(machine, cmds, timeout=timeout)
        finally:
            if cleanup is not None:
                cleanup()

    def decorator(check: Callable[[Any], Any]) -> Callable[[], None]:
        def prop(cmds: Any) -> bool:
            result = execute(cmds)
            verdict = check(result)
            return bool(result) if verdict is None else bool(verdict)

        def test() -> None:
            result = check_property(
                prop,
                strategy,
                key=property_key(check),
                store=store if store is not None else default_store(),
                numtests=numtests,
                store_counter_example=store_counter_example,
                verbose=verbose,
            )
            if not result:
                report = render(execute(result.counterexample), result.counterexample, options)
                if verbose_from_env(bool(verbose)):
                    print(report, flush=True)
                message = f"{check.__qualname__} failed on:\n{format_counterexample(result.counterexample)}\n{report}"
                raise PropertyFailed(message, result.key, result.counterexample, result.replayed)

        test.machine = machine
        return _named_like(test, check)

    return decorator
