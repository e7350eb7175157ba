"""
Command sequence generation on top of Hypothesis.

Hypothesis is the random generation and shrinking engine; statecheck only
describes *what* to generate.  The strategies here build symbolic command
sequences that respect the preconditions of a
:class:`~statecheck.model.StateMachine`, so shrinking a failing sequence
yields another valid sequence.

For use with hypothesis @given in your own tests:

    >>> from hypothesis import given
    >>> from statecheck.generate import commands
    >>> from statecheck.sequential import run_commands
    >>>
    >>> @given(cmds=commands(machine))
    ... def test_counter(cmds):
    ...     assert run_commands(machine, cmds)

Parallel testcases keep their concurrent part short: the interleaving
search after execution is exhaustive, so the two branches together hold
at most ``parallel_limit`` commands (12 by default).
"""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from typing import Any

from hypothesis import HealthCheck, Phase, find, given, settings
from hypothesis import seed as hypothesis_seed
from hypothesis import strategies as st
from hypothesis.errors import Flaky, NoSuchExample

from statecheck._symbolic import referenced_vars
from statecheck.common import Call, Command, GenerationError, InitCommand, ParallelTestcase, Var
from statecheck.model import StateMachine

DEFAULT_MAX_SIZE = 30
DEFAULT_MAX_TRIES = 100
PARALLEL_LIMIT = 12

_NO_STATE = object()


# ---------------------------------------------------------------------------
# Generator adapter boundary
# ---------------------------------------------------------------------------


def generate(strategy: st.SearchStrategy, seed: int | None = None, samples: int = 10) -> Any:
    """Draw one value from ``strategy`` outside of a Hypothesis test.

    Runs a short generate-only Hypothesis session and picks one of the
    produced values.  ``seed`` makes the choice reproducible.
    """
    values: list[Any] = []

    @settings(
        max_examples=samples,
        phases=[Phase.generate],
        database=None,
        deadline=None,
        suppress_health_check=list(HealthCheck),
    )
    @given(strategy)
    def collect(value: Any) -> None:
        values.append(value)

    if seed is not None:
        collect = hypothesis_seed(seed)(collect)
    collect()
    return random.Random(seed).choice(values)


def find_counterexample(
    strategy: st.SearchStrategy,
    fails: Callable[[Any], bool],
    *,
    max_examples: int = 100,
    seed: int | None = None,
) -> Any | None:
    """Search for a value on which ``fails`` returns True, then shrink it.

    Generation and shrinking are entirely Hypothesis' job.  Returns the
    smallest failing value found, or None if every generated value passed.
    ``fails`` must not raise; wrap the property accordingly.

    A nondeterministic ``fails`` (a parallel run that only sometimes
    races) can stop failing on Hypothesis' final replay; the last value
    seen failing is returned then.
    """
    search_settings = settings(
        max_examples=max_examples,
        database=None,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow],
    )
    rng = random.Random(seed) if seed is not None else None
    seen: list[Any] = []

    def condition(value: Any) -> bool:
        if fails(value):
            seen[:] = [value]
            return True
        return False

    try:
        return find(strategy, condition, settings=search_settings, random=rng)
    except NoSuchExample:
        return None
    except Flaky:
        if not seen:
            raise
        return seen[0]


def frequency(weighted: Sequence[tuple[int, st.SearchStrategy]]) -> st.SearchStrategy:
    """Choose among strategies with probability proportional to their weight."""
    choices = [(w, s) for w, s in weighted if w > 0]
    if not choices:
        raise ValueError("frequency() needs at least one positive weight")
    total = sum(w for w, _ in choices)

    @st.composite
    def _frequency(draw: st.DrawFn) -> Any:
        pick = draw(st.integers(min_value=0, max_value=total - 1))
        for w, strategy in choices:
            if pick < w:
                return draw(strategy)
            pick -= w
        raise AssertionError("unreachable")

    return _frequency()


# ---------------------------------------------------------------------------
# Single commands
# ---------------------------------------------------------------------------


def command_strategy(machine: StateMachine, state: Any) -> st.SearchStrategy:
    """Strategy for the next ``(name, args)`` pair in ``state``."""
    if machine.command_gen is not None:
        return machine.command_gen(state)

    specs = machine.commands
    if not specs:
        raise GenerationError(f"{machine.name} has no commands")

    def call_of(name: str) -> st.SearchStrategy:
        args_fn = specs[name].args
        if args_fn is None:
            return st.just((name, ()))
        return args_fn(state).map(lambda args: (name, tuple(args)))

    if machine.weight is None:
        return st.one_of([call_of(name) for name in specs])

    weights = machine.weight(state)
    weighted = [(weights.get(name, 0), call_of(name)) for name in specs]
    if not any(w > 0 for w, _ in weighted):
        raise GenerationError(f"{machine.name} has no command with a positive weight in {state!r}")
    return frequency(weighted)


def _draw_call(draw: st.DrawFn, machine: StateMachine, state: Any, max_tries: int) -> Call:
    strategy = command_strategy(machine, state)
    for _ in range(max_tries):
        name, args = draw(strategy)
        args = tuple(args)
        if machine.precondition(state, name, args):
            return Call(name, args)
    raise GenerationError(f"No command of {machine.name} satisfied its precondition after {max_tries} tries")


def _draw_sequence(
    draw: st.DrawFn,
    machine: StateMachine,
    state: Any,
    first_index: int,
    length: int,
    max_tries: int,
) -> tuple[list[Command], Any]:
    cmds: list[Command] = []
    for index in range(first_index, first_index + length):
        call = _draw_call(draw, machine, state, max_tries)
        var = Var(index)
        cmds.append(Command(var, call))
        state = machine.next_state(state, call.name, call.args, var)
    return cmds, state


# ---------------------------------------------------------------------------
# Sequential command lists
# ---------------------------------------------------------------------------


def commands(
    machine: StateMachine,
    initial_state: Any = _NO_STATE,
    *,
    min_size: int = 0,
    max_size: int = DEFAULT_MAX_SIZE,
    max_tries: int = DEFAULT_MAX_TRIES,
) -> st.SearchStrategy:
    """Strategy for symbolic command lists valid under ``machine``.

    With ``initial_state``, generated lists start with an
    :class:`~statecheck.common.InitCommand` and ``machine.initial_state``
    is never called.

    Raises (when drawn):
        GenerationError: if some step found no command satisfying its
            precondition within ``max_tries`` draws.
    """

    @st.composite
    def _commands(draw: st.DrawFn) -> list[Command | InitCommand]:
        prefix: list[Command | InitCommand] = []
        if initial_state is _NO_STATE:
            state = machine.initial_state()
        else:
            state = initial_state
            prefix.append(InitCommand(initial_state))
        length = draw(st.integers(min_value=min_size, max_value=max_size))
        cmds, _ = _draw_sequence(draw, machine, state, 1, length, max_tries)
        return prefix + cmds

    return _commands()


def more_commands(factor: int, machine: StateMachine, **kwargs: Any) -> st.SearchStrategy:
    """Like :func:`commands` with the expected length scaled by ``factor``."""
    max_size = kwargs.pop("max_size", DEFAULT_MAX_SIZE)
    return commands(machine, max_size=max_size * factor, **kwargs)


# ---------------------------------------------------------------------------
# Parallel testcases
# ---------------------------------------------------------------------------


def _bound_in_prefix(var: Var, prefix_len: int) -> bool:
    return not isinstance(var.index, int) or var.index <= prefix_len


def _vars_resolvable(branch: list[Command], prefix_len: int) -> bool:
    produced: set[Var] = set()
    for cmd in branch:
        for var in referenced_vars(cmd.args):
            if var not in produced and not _bound_in_prefix(var, prefix_len):
                return False
        produced.add(cmd.var)
    return True


def _all_interleavings_valid(machine: StateMachine, state: Any, a: list[Command], b: list[Command]) -> bool:
    for head, rest_a, rest_b in ((a, a[1:], b), (b, a, b[1:])):
        if not head:
            continue
        cmd = head[0]
        if not machine.precondition(state, cmd.name, cmd.args):
            return False
        next_state = machine.next_state(state, cmd.name, cmd.args, cmd.var)
        if not _all_interleavings_valid(machine, next_state, rest_a, rest_b):
            return False
    return True


def is_parallelizable(machine: StateMachine, state: Any, branches: list[list[Command]], prefix_len: int) -> bool:
    """Check that ``branches`` can run concurrently after a prefix of ``prefix_len`` commands.

    Every symbolic variable a branch uses must be bound by the prefix or
    earlier in the same branch, and every precondition must hold under
    every interleaving of the two branches, starting from ``state``.
    """
    a, b = branches
    if not (_vars_resolvable(a, prefix_len) and _vars_resolvable(b, prefix_len)):
        return False
    return _all_interleavings_valid(machine, state, a, b)


def fix_parallel(
    machine: StateMachine, state: Any, branches: list[list[Command]], prefix_len: int
) -> list[list[Command]]:
    """Drop trailing commands until ``branches`` is parallelizable."""
    a, b = list(branches[0]), list(branches[1])
    while not is_parallelizable(machine, state, [a, b], prefix_len):
        longer = a if len(a) >= len(b) else b
        longer.pop()
    return [a, b]


def parallel_commands(
    machine: StateMachine,
    initial_state: Any = _NO_STATE,
    *,
    max_size: int = DEFAULT_MAX_SIZE,
    parallel_limit: int = PARALLEL_LIMIT,
    max_tries: int = DEFAULT_MAX_TRIES,
) -> st.SearchStrategy:
    """Strategy for :class:`~statecheck.common.ParallelTestcase` values.

    The sequential prefix puts the system in a random state; the two
    branches, at most ``parallel_limit`` commands in total, satisfy their
    preconditions under every interleaving.
    """

    @st.composite
    def _parallel(draw: st.DrawFn) -> ParallelTestcase:
        sequential: list[Command | InitCommand] = []
        if initial_state is _NO_STATE:
            state = machine.initial_state()
        else:
            state = initial_state
            sequential.append(InitCommand(initial_state))

        prefix_len = draw(st.integers(min_value=0, max_value=max_size))
        prefix, state = _draw_sequence(draw, machine, state, 1, prefix_len, max_tries)
        sequential.extend(prefix)

        suffix_len = draw(st.integers(min_value=0, max_value=parallel_limit))
        suffix, _ = _draw_sequence(draw, machine, state, prefix_len + 1, suffix_len, max_tries)
        sides = [draw(st.booleans()) for _ in suffix]
        branches = [
            [cmd for cmd, side in zip(suffix, sides) if not side],
            [cmd for cmd, side in zip(suffix, sides) if side],
        ]
        return ParallelTestcase(sequential, fix_parallel(machine, state, branches, prefix_len))

    return _parallel()
