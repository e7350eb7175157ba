"""Human-readable reports of sequential and parallel runs.

A report is a title describing the outcome followed by the executed
commands, each annotated with its return value and the model state after
it.  The command that failed is marked with ``#!``:

    ================================================================================
    Postcondition failed.

    Commands:
       var1 = inc()
            # -> 1
            # Post state: 1
    #! var2 = get()
            # -> 0

    Last state:
    1

Parallel runs show the sequential prefix and each branch separately.  No
state is shown for them: the model state depends on the serialization,
and a failed run has none.
"""

from __future__ import annotations

import pprint
import sys
from dataclasses import dataclass
from typing import Any, TextIO

from statecheck.common import (
    EXCEPTION,
    INITIALIZATION_ERROR,
    NO_POSSIBLE_INTERLEAVING,
    OK,
    POSTCONDITION_FAILURE,
    PRECONDITION_FAILURE,
    STAGE_COMMAND,
    STAGE_NEXT_STATE,
    STAGE_POSTCONDITION,
    STAGE_PRECONDITION,
    Command,
    ExceptionInfo,
    InitCommand,
    ParallelRunResult,
    ParallelTestcase,
    RunResult,
    Var,
)

HEADER = "=" * 80
CMD_INDENT = 3
COMMENT_INDENT = 10
FAIL_MARKER = "#! "

_NOTHING = object()


@dataclass(frozen=True)
class ReportOptions:
    """What to include in a report.

    Attributes:
        show_return_value: Print ``-> value`` below each command.
        show_pre_state: Print the model state before each command.
        show_post_state: Print the model state after each command.
        show_args_as_literals: Print argument values; otherwise print
            placeholders named ``arg<var>_<position>``.
        show_last_state: Print the model state when execution stopped.
        width: Line width handed to :func:`pprint.pformat`.
    """

    show_return_value: bool = True
    show_pre_state: bool = False
    show_post_state: bool = True
    show_args_as_literals: bool = True
    show_last_state: bool = True
    width: int = 80


# ---------------------------------------------------------------------------
# Values and single lines
# ---------------------------------------------------------------------------


def _pretty(value: Any, options: ReportOptions) -> str:
    if isinstance(value, ExceptionInfo):
        return f"{value.exc_type}: {value.exception}"
    return pprint.pformat(value, width=options.width)


def _indent(text: str, prefix: str) -> str:
    return "\n".join(prefix + line for line in text.split("\n"))


def _comment(title: str, value: Any, options: ReportOptions) -> str:
    return _indent(f"{title} {_pretty(value, options)}", " " * (COMMENT_INDENT - 2) + "# ")


def command_line(command: Command | InitCommand, options: ReportOptions | None = None) -> str:
    """Render one command as ``var3 = name(arg, ...)``."""
    options = options or ReportOptions()
    if isinstance(command, InitCommand):
        return f"init -> {_pretty(command.state, options)}"
    args = []
    for position, arg in enumerate(command.args, 1):
        if isinstance(arg, Var):
            args.append(repr(arg))
        elif options.show_args_as_literals:
            args.append(_pretty(arg, options))
        else:
            args.append(f"arg{command.var.index}_{position}")
    return f"{command.var!r} = {command.name}({', '.join(args)})"


def _command_block(
    command: Command,
    options: ReportOptions,
    *,
    failing: bool = False,
    result: Any = _NOTHING,
    pre_state: Any = _NOTHING,
    post_state: Any = _NOTHING,
) -> list[str]:
    lines = []
    if options.show_pre_state and pre_state is not _NOTHING:
        lines.append(_comment("Pre state:", pre_state, options))
    if failing:
        lines.append(_indent(command_line(command, options), FAIL_MARKER))
    else:
        lines.append(_indent(command_line(command, options), " " * CMD_INDENT))
    if options.show_return_value and result is not _NOTHING:
        lines.append(_comment("->", result, options))
    if options.show_post_state and post_state is not _NOTHING:
        lines.append(_comment("Post state:", post_state, options))
    return lines


# ---------------------------------------------------------------------------
# Titles
# ---------------------------------------------------------------------------


def _title(outcome: Any) -> str:
    kind = outcome.kind
    if kind == OK:
        return "All commands were successful and all postconditions were true."
    if kind == PRECONDITION_FAILURE:
        return "Precondition failed."
    if kind == POSTCONDITION_FAILURE:
        return "Postcondition failed."
    if kind == INITIALIZATION_ERROR:
        title = "Error while evaluating initial state."
        if outcome.exception is not None:
            title += "\n" + outcome.exception.formatted.rstrip()
        return title
    if kind == NO_POSSIBLE_INTERLEAVING:
        return "Concurrency failure, no state is shown."
    if kind == EXCEPTION:
        formatted = outcome.exception.formatted.rstrip() if outcome.exception else ""
        if outcome.stage == STAGE_PRECONDITION:
            return f"Precondition crashed:\n{formatted}"
        if outcome.stage == STAGE_POSTCONDITION:
            return f"Postcondition crashed:\n{formatted}"
        if outcome.stage == STAGE_NEXT_STATE:
            return f"Next state crashed:\n{formatted}"
        if outcome.exception is not None and outcome.exception.kind == "timeout":
            return "Command timed out."
        return "Command crashed."
    return f"Unknown outcome {kind!r}."


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def _sequential_section(result: RunResult, commands: list[Any], options: ReportOptions) -> list[str]:
    history, state, outcome = result
    cmds = [cmd for cmd in commands if isinstance(cmd, Command)]
    if outcome.kind == INITIALIZATION_ERROR and not history:
        return []

    lines = ["Commands:"]
    for i, entry in enumerate(history):
        post = history[i + 1].state if i + 1 < len(history) else state
        lines.extend(_command_block(entry.command, options, result=entry.result, pre_state=entry.state, post_state=post))

    if not outcome.is_ok and len(history) < len(cmds):
        failing = cmds[len(history)]
        if outcome.kind == EXCEPTION and outcome.stage == STAGE_COMMAND:
            shown = outcome.exception
        elif outcome.kind in (POSTCONDITION_FAILURE, EXCEPTION) and outcome.stage != STAGE_PRECONDITION:
            shown = outcome.result
        else:
            shown = _NOTHING
        lines.extend(_command_block(failing, options, failing=True, result=shown, pre_state=state))

    if options.show_last_state:
        lines.extend(["", "Last state:", _pretty(state, options)])
    return lines


def _parallel_section(result: ParallelRunResult, testcase: ParallelTestcase, options: ReportOptions) -> list[str]:
    sequential, branches = testcase
    lines = ["Sequential commands:"]
    cmds = [cmd for cmd in sequential if isinstance(cmd, Command)]
    for command, entry in zip(cmds, result.sequential_history):
        lines.extend(_command_block(command, options, result=entry.result))
    if len(result.sequential_history) < len(cmds):
        lines.extend(_command_block(cmds[len(result.sequential_history)], options, failing=True))

    for n, (branch, history) in enumerate(zip(branches, result.parallel_history), 1):
        lines.extend(["", f"Process {n}:"])
        for i, command in enumerate(branch):
            if i < len(history):
                observed = history[i][1]
                lines.extend(
                    _command_block(command, options, failing=isinstance(observed, ExceptionInfo), result=observed)
                )
            else:
                lines.extend(_command_block(command, options))
    return lines


def render(
    result: RunResult | ParallelRunResult,
    commands: list[Command | InitCommand] | ParallelTestcase,
    options: ReportOptions | None = None,
) -> str:
    """Render the report of a run as a string.

    Args:
        result: What :func:`~statecheck.sequential.run_commands` or
            :func:`~statecheck.parallel.run_parallel_commands` returned.
        commands: The command list or parallel testcase that was run.
        options: What to show; defaults to :class:`ReportOptions`.
    """
    options = options or ReportOptions()
    parts = ["", HEADER, _title(result.outcome), ""]
    if isinstance(result, ParallelRunResult):
        parts.extend(_parallel_section(result, commands, options))
    else:
        parts.extend(_sequential_section(result, list(commands), options))
    return "\n".join(parts) + "\n"


def print_report(
    result: RunResult | ParallelRunResult,
    commands: list[Command | InitCommand] | ParallelTestcase,
    options: ReportOptions | None = None,
    file: TextIO | None = None,
) -> None:
    print(render(result, commands, options), file=file or sys.stdout, flush=True)


def format_counterexample(commands: list[Command | InitCommand] | ParallelTestcase) -> str:
    """One line per command, for plain or parallel command lists."""
    if isinstance(commands, ParallelTestcase):
        sequential, (first, second) = commands
        parts = ["Sequential commands:"]
        parts.extend(command_line(cmd) for cmd in sequential)
        parts.extend(["", "Process 1:"])
        parts.extend(command_line(cmd) for cmd in first)
        parts.extend(["", "Process 2:"])
        parts.extend(command_line(cmd) for cmd in second)
        return "\n".join(parts)
    return "\n".join(command_line(cmd) for cmd in commands)
