"""
Parallel execution of command sequences and atomicity checking.

A :class:`~statecheck.common.ParallelTestcase` is run in three steps:

1. The sequential prefix runs exactly like :func:`~statecheck.sequential.run_commands`.
2. Each branch runs in its own thread.  Both threads are released together
   by a barrier and share nothing but the system under test; each records
   the ``(command, result)`` pairs it observed.
3. The observed results are checked against the model: some riffle of the
   two branch histories (each branch keeping its own order) must satisfy
   every precondition and postcondition when replayed through the model
   from the state the prefix left behind.  If none does, the system showed
   behaviour no serial execution can explain and the outcome is
   ``no_possible_interleaving``.

The search is exhaustive, with pruning at the first failing check, which is
only affordable because generated branches are short (see
:data:`~statecheck.generate.PARALLEL_LIMIT`).

For example, to detect a lost update on a non-atomic counter:

    >>> result = run_parallel_commands(machine, testcase)
    >>> if not result:
    ...     print_report(result, testcase)
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from typing import Any

from statecheck._execution import call_with_timeout
from statecheck._symbolic import resolve
from statecheck.common import (
    NO_POSSIBLE_INTERLEAVING,
    OUTCOME_OK,
    Command,
    CommandTimeout,
    ExceptionInfo,
    Outcome,
    ParallelRunResult,
    ParallelTestcase,
)
from statecheck.instrument import instrumented
from statecheck.model import StateMachine
from statecheck.sequential import run_commands

BranchHistory = list[tuple[Command, Any]]


class BranchRunner:
    """Runs the branches of a parallel testcase in concurrent worker threads.

    Each worker owns its history list and its own variable bindings; the
    only synchronization is the start barrier and the final join.  A
    command that raises (or times out) is recorded as an
    :class:`~statecheck.common.ExceptionInfo` and ends its branch without
    disturbing the other one.
    """

    def __init__(
        self,
        machine: StateMachine,
        env: Mapping[Any, Any],
        *,
        timeout: float | None = None,
        debug: bool = False,
    ):
        self.machine = machine
        self.env = dict(env)
        self.timeout = timeout
        self.debug = debug
        self.threads: list[threading.Thread] = []
        self.histories: list[BranchHistory] = []

    def _run_branch(self, branch_id: int, branch: list[Command], barrier: threading.Barrier) -> None:
        history = self.histories[branch_id]
        env = dict(self.env)
        with instrumented():
            barrier.wait()
            for command in branch:
                try:
                    args = resolve(command.args, env)
                    impl = self.machine.spec(command.name).impl
                    result = call_with_timeout(impl, args, self.timeout)
                except CommandTimeout as e:
                    history.append((command, ExceptionInfo.from_exception(e, kind="timeout")))
                    break
                except Exception as e:
                    history.append((command, ExceptionInfo.from_exception(e)))
                    break
                env[command.var.index] = result
                history.append((command, result))
                if self.debug:
                    print(f"Branch {branch_id}: {command!r} -> {result!r}", flush=True)

    def run(self, branches: list[list[Command]]) -> list[BranchHistory]:
        """Run all branches concurrently and return their histories."""
        barrier = threading.Barrier(len(branches))
        self.threads = []
        self.histories = [[] for _ in branches]
        for i, branch in enumerate(branches):
            t = threading.Thread(
                target=self._run_branch,
                args=(i, branch, barrier),
                name=f"statecheck-branch-{i}",
                daemon=True,
            )
            self.threads.append(t)

        for t in self.threads:
            t.start()
        for t in self.threads:
            t.join()
        return self.histories


def interleavings(a: list[Any], b: list[Any]) -> Iterator[list[Any]]:
    """Yield every riffle of ``a`` and ``b`` that keeps each list's own order."""
    if not a:
        yield list(b)
        return
    if not b:
        yield list(a)
        return
    for rest in interleavings(a[1:], b):
        yield [a[0], *rest]
    for rest in interleavings(a, b[1:]):
        yield [b[0], *rest]


def _consistent_step(machine: StateMachine, state: Any, command: Command, result: Any, env: Mapping[Any, Any]):
    """Replay one observed step through the model.  Returns the next state or None."""
    if isinstance(result, ExceptionInfo):
        return None
    try:
        args = resolve(command.args, env)
        if not machine.precondition(state, command.name, args):
            return None
        if not machine.postcondition(state, command.name, args, result):
            return None
        return (machine.next_state(state, command.name, args, result),)
    except Exception:
        # A crashing callback rules this serialization out, nothing more
        return None


def check_interleavings(
    machine: StateMachine,
    state: Any,
    env: Mapping[Any, Any],
    histories: list[BranchHistory],
) -> tuple[list[Command] | None, Any]:
    """Search for a serialization of two branch histories consistent with the model.

    Args:
        machine: The model.
        state: Model state after the sequential prefix.
        env: Variable bindings after the prefix.
        histories: The ``(command, result)`` pairs observed by each branch.

    Returns:
        ``(interleaving, final_state)`` for the first consistent
        serialization found, or ``(None, state)`` if there is none.
    """
    a, b = histories
    bindings = dict(env)
    for history in histories:
        for command, result in history:
            if not isinstance(result, ExceptionInfo):
                bindings[command.var.index] = result

    def search(current: Any, i: int, j: int) -> tuple[list[Command], Any] | None:
        if i == len(a) and j == len(b):
            return [], current
        if i < len(a):
            step = _consistent_step(machine, current, a[i][0], a[i][1], bindings)
            if step is not None:
                found = search(step[0], i + 1, j)
                if found is not None:
                    return [a[i][0], *found[0]], found[1]
        if j < len(b):
            step = _consistent_step(machine, current, b[j][0], b[j][1], bindings)
            if step is not None:
                found = search(step[0], i, j + 1)
                if found is not None:
                    return [b[j][0], *found[0]], found[1]
        return None

    found = search(state, 0, 0)
    if found is None:
        return None, state
    return found


def run_parallel_commands(
    machine: StateMachine,
    testcase: ParallelTestcase,
    env: Mapping[Any, Any] | None = None,
    *,
    timeout: float | None = None,
    debug: bool = False,
) -> ParallelRunResult:
    """Run a parallel testcase and check its results for atomicity violations.

    Args:
        machine: The model the testcase was generated from.
        testcase: Sequential prefix plus two branches.
        env: Extra bindings for named symbolic variables.
        timeout: Per-command timeout in seconds, in the prefix and in the branches.
        debug: Print progress.

    Returns:
        A :class:`ParallelRunResult`.  If the prefix fails, its outcome is
        returned and no branch runs.  Otherwise the outcome is ``ok`` with
        the serialization that explains the results in ``interleaving``,
        or ``no_possible_interleaving``.
    """
    sequential, branches = testcase
    prefix = run_commands(machine, sequential, env, timeout=timeout, debug=debug)
    if not prefix.outcome.is_ok:
        return ParallelRunResult(prefix.history, [[], []], prefix.outcome, state=prefix.state)

    runner = BranchRunner(machine, prefix.env, timeout=timeout, debug=debug)
    histories = runner.run(branches)

    interleaving, state = check_interleavings(machine, prefix.state, prefix.env, histories)
    if interleaving is None:
        if debug:
            print(f"No serialization explains {histories!r}", flush=True)
        outcome = Outcome(NO_POSSIBLE_INTERLEAVING)
    else:
        outcome = OUTCOME_OK
    return ParallelRunResult(prefix.history, histories, outcome, interleaving=interleaving, state=state)
