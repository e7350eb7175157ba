"""
Sequential execution of symbolic command lists.

:func:`run_commands` executes a list produced by
:func:`~statecheck.generate.commands` against the live system, one command
at a time, checking every precondition and postcondition against the model:

    >>> result = run_commands(machine, cmds)
    >>> history, state, outcome = result
    >>> assert result, outcome

Exceptions raised by user code are never propagated.  They end the run and
are recorded in the :class:`~statecheck.common.Outcome`.  The failing
command, if any, is always ``cmds[len(history)]`` (ignoring a leading
:class:`~statecheck.common.InitCommand`): the history only holds commands
whose postcondition held.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from statecheck._execution import call_with_timeout
from statecheck._symbolic import resolve
from statecheck.common import (
    EXCEPTION,
    INITIALIZATION_ERROR,
    OUTCOME_OK,
    POSTCONDITION_FAILURE,
    PRECONDITION_FAILURE,
    STAGE_COMMAND,
    STAGE_NEXT_STATE,
    STAGE_POSTCONDITION,
    STAGE_PRECONDITION,
    Command,
    CommandTimeout,
    ExceptionInfo,
    HistoryEntry,
    InitCommand,
    Outcome,
    ParallelTestcase,
    RunResult,
    UnboundVariable,
)
from statecheck.model import StateMachine


def split_init(machine: StateMachine, commands: Iterable[Command | InitCommand]) -> tuple[Any, list[Command]]:
    """Return the starting model state and the plain commands of a list.

    A leading :class:`InitCommand` provides the state; otherwise
    ``machine.initial_state()`` does.
    """
    cmds = list(commands)
    if cmds and isinstance(cmds[0], InitCommand):
        return cmds[0].state, cmds[1:]
    return machine.initial_state(), cmds


def execute_command(
    machine: StateMachine,
    state: Any,
    command: Command,
    env: dict[Any, Any],
    timeout: float | None = None,
) -> tuple[Outcome, Any, Any]:
    """Run one command against the system and check it against the model.

    Returns ``(outcome, result, next_state)``.  On success ``env`` gains the
    binding for ``command.var``.  ``result`` and ``next_state`` are None
    when the stage producing them was never reached.
    """
    try:
        args = resolve(command.args, env)
    except UnboundVariable as e:
        return Outcome(INITIALIZATION_ERROR, exception=ExceptionInfo.from_exception(e)), None, None

    try:
        allowed = machine.precondition(state, command.name, args)
    except Exception as e:
        return Outcome(EXCEPTION, stage=STAGE_PRECONDITION, exception=ExceptionInfo.from_exception(e)), None, None
    if not allowed:
        return Outcome(PRECONDITION_FAILURE), None, None

    impl = machine.spec(command.name).impl
    try:
        result = call_with_timeout(impl, args, timeout)
    except CommandTimeout as e:
        info = ExceptionInfo.from_exception(e, kind="timeout")
        return Outcome(EXCEPTION, stage=STAGE_COMMAND, exception=info), None, None
    except Exception as e:
        return Outcome(EXCEPTION, stage=STAGE_COMMAND, exception=ExceptionInfo.from_exception(e)), None, None

    try:
        holds = machine.postcondition(state, command.name, args, result)
    except Exception as e:
        info = ExceptionInfo.from_exception(e)
        return Outcome(EXCEPTION, stage=STAGE_POSTCONDITION, exception=info, result=result), result, None
    if not holds:
        return Outcome(POSTCONDITION_FAILURE, result=result), result, None

    try:
        new_state = machine.next_state(state, command.name, args, result)
    except Exception as e:
        info = ExceptionInfo.from_exception(e)
        return Outcome(EXCEPTION, stage=STAGE_NEXT_STATE, exception=info, result=result), result, None

    env[command.var.index] = result
    return OUTCOME_OK, result, new_state


def run_commands(
    machine: StateMachine,
    commands: Iterable[Command | InitCommand],
    env: Mapping[Any, Any] | None = None,
    *,
    timeout: float | None = None,
    debug: bool = False,
) -> RunResult:
    """Execute ``commands`` in order against the system under test.

    Args:
        machine: The model the commands were generated from.
        commands: A symbolic command list, optionally starting with an
            :class:`InitCommand`.
        env: Extra bindings for named symbolic variables (``Var("name")``).
        timeout: Per-command timeout in seconds.  A command that does not
            finish in time is killed and reported as a ``timeout`` exception.
        debug: Print each step as it runs.

    Returns:
        A :class:`RunResult` with the history of successful commands, the
        model state when execution stopped, and the outcome.  After a
        postcondition failure the state is the one *before* the failing
        command.
    """
    bindings: dict[Any, Any] = dict(env or {})
    history: list[HistoryEntry] = []
    try:
        state, cmds = split_init(machine, commands)
    except Exception as e:
        outcome = Outcome(INITIALIZATION_ERROR, exception=ExceptionInfo.from_exception(e))
        return RunResult(history, None, outcome, bindings)

    for command in cmds:
        if debug:
            print(f"Running {command!r} in state {state!r}", flush=True)
        outcome, result, new_state = execute_command(machine, state, command, bindings, timeout)
        if not outcome.is_ok:
            if debug:
                print(f"Stopped with {outcome!r}", flush=True)
            return RunResult(history, state, outcome, bindings)
        history.append(HistoryEntry(state, command, result))
        state = new_state

    return RunResult(history, state, OUTCOME_OK, bindings)


def state_after(machine: StateMachine, commands: Iterable[Command | InitCommand]) -> Any:
    """Symbolic model state after ``commands``, without executing anything."""
    state, cmds = split_init(machine, commands)
    for command in cmds:
        state = machine.next_state(state, command.name, command.args, command.var)
    return state


def command_names(
    commands: Iterable[Command | InitCommand] | ParallelTestcase, machine: StateMachine | None = None
) -> list[tuple[str, str, int]]:
    """Name every command as ``(machine name, command name, arity)``.

    Handy for collecting statistics on generated sequences, e.g. with
    ``hypothesis.event``.  Parallel testcases are flattened: prefix first,
    then each branch.
    """
    if isinstance(commands, ParallelTestcase):
        flat: list[Command | InitCommand] = list(commands.sequential)
        for branch in commands.branches:
            flat.extend(branch)
        commands = flat
    owner = machine.name if machine is not None else ""
    return [(owner, cmd.name, len(cmd.args)) for cmd in commands if isinstance(cmd, Command)]


def zip_history(commands: Iterable[Command | InitCommand], history: list[HistoryEntry]) -> list[tuple[Command, Any]]:
    """Pair each executed command with its result, stopping at the shorter list."""
    cmds = [cmd for cmd in commands if isinstance(cmd, Command)]
    return [(cmd, entry.result) for cmd, entry in zip(cmds, history)]
