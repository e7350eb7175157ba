"""Shared data structures for statecheck."""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from typing import Any

# Outcome kinds
OK = "ok"
PRECONDITION_FAILURE = "precondition_failure"
POSTCONDITION_FAILURE = "postcondition_failure"
EXCEPTION = "exception"
INITIALIZATION_ERROR = "initialization_error"
NO_POSSIBLE_INTERLEAVING = "no_possible_interleaving"

# Stages at which an exception can be caught
STAGE_PRECONDITION = "precondition"
STAGE_POSTCONDITION = "postcondition"
STAGE_COMMAND = "command"
STAGE_NEXT_STATE = "next_state"


class StatecheckError(Exception):
    """Base class for errors raised by statecheck itself."""


class GenerationError(StatecheckError):
    """No valid command could be generated under the current preconditions."""


class UnknownCommand(StatecheckError):
    """A call names a command that is not registered with the state machine."""


class UnboundVariable(StatecheckError):
    """A symbolic variable was referenced before any command bound it."""


class CommandTimeout(BaseException):
    """Raised asynchronously inside a command thread that exceeded its timeout.

    Derives from BaseException so that ``except Exception`` blocks in the
    system under test do not swallow it.
    """


@dataclass(frozen=True)
class Var:
    """Symbolic placeholder for the result of a command.

    Attributes:
        index: Position of the producing command (1-based) or a name bound
            in a caller-supplied environment.
    """

    index: int | str

    def __repr__(self):
        if isinstance(self.index, int):
            return f"var{self.index}"
        return f"var_{self.index}"


@dataclass(frozen=True)
class Call:
    """A symbolic call: a command name plus (possibly symbolic) arguments."""

    name: str
    args: tuple[Any, ...] = ()

    def __repr__(self):
        return f"Call({self.name!r}, {self.args!r})"


@dataclass(frozen=True)
class Command:
    """Binds the result of ``call`` to the symbolic variable ``var``."""

    var: Var
    call: Call

    @property
    def name(self) -> str:
        return self.call.name

    @property
    def args(self) -> tuple[Any, ...]:
        return self.call.args

    def __repr__(self):
        return f"Command({self.var!r}, {self.call!r})"


@dataclass(frozen=True)
class InitCommand:
    """First element of a command list generated from an explicit initial state."""

    state: Any


@dataclass(frozen=True)
class ExceptionInfo:
    """An exception caught while running user code.

    Attributes:
        exc_type: Qualified name of the exception class.
        exception: The exception object itself.
        formatted: Formatted traceback, ready for display.
        kind: ``"error"`` for ordinary exceptions, ``"timeout"`` when the
            command was killed after exceeding its timeout.
    """

    exc_type: str
    exception: BaseException
    formatted: str
    kind: str = "error"

    @classmethod
    def from_exception(cls, exc: BaseException, kind: str = "error") -> ExceptionInfo:
        return cls(
            exc_type=type(exc).__qualname__,
            exception=exc,
            formatted="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            kind=kind,
        )

    def __repr__(self):
        return f"ExceptionInfo({self.exc_type}: {self.exception}, kind={self.kind!r})"


@dataclass(frozen=True)
class Outcome:
    """Outcome of running a command sequence.

    Attributes:
        kind: One of the outcome kind constants (``OK``, ``PRECONDITION_FAILURE``, ...).
        stage: For ``EXCEPTION`` outcomes, where the exception was raised.
        exception: The caught exception, for ``EXCEPTION`` and ``INITIALIZATION_ERROR``.
        result: Value the failing command returned, when it returned one.
    """

    kind: str
    stage: str | None = None
    exception: ExceptionInfo | None = None
    result: Any = None

    @property
    def is_ok(self) -> bool:
        return self.kind == OK

    def __repr__(self):
        parts = [repr(self.kind)]
        if self.stage is not None:
            parts.append(f"stage={self.stage!r}")
        if self.exception is not None:
            parts.append(f"exception={self.exception!r}")
        return f"Outcome({', '.join(parts)})"


OUTCOME_OK = Outcome(OK)


@dataclass
class HistoryEntry:
    """State before a command, the command, and the value it returned."""

    state: Any
    command: Command
    result: Any


@dataclass
class RunResult:
    """Result of :func:`~statecheck.sequential.run_commands`.

    Unpacks as ``history, state, outcome`` and is truthy only when every
    command ran and every postcondition held.
    """

    history: list[HistoryEntry]
    state: Any
    outcome: Outcome
    env: dict[Any, Any] = field(default_factory=dict)

    def __iter__(self):
        return iter((self.history, self.state, self.outcome))

    def __bool__(self):
        return self.outcome.is_ok


@dataclass
class ParallelTestcase:
    """A sequential prefix followed by two branches run concurrently."""

    sequential: list[Command | InitCommand]
    branches: list[list[Command]]

    def __post_init__(self):
        if len(self.branches) != 2:
            raise ValueError("A parallel testcase must have exactly two branches")

    def __iter__(self):
        return iter((self.sequential, self.branches))


@dataclass
class ParallelRunResult:
    """Result of :func:`~statecheck.parallel.run_parallel_commands`.

    Attributes:
        sequential_history: History of the sequential prefix.
        parallel_history: Per branch, the ``(command, result)`` pairs observed
            by that worker. A result may be an :class:`ExceptionInfo`.
        outcome: ``ok``, ``no_possible_interleaving`` or the prefix outcome.
        interleaving: The serialization that explained the observed results,
            when one was found.
        state: Model state after the prefix, or after the interleaving.
    """

    sequential_history: list[HistoryEntry]
    parallel_history: list[list[tuple[Command, Any]]]
    outcome: Outcome
    interleaving: list[Command] | None = None
    state: Any = None

    def __iter__(self):
        return iter((self.sequential_history, self.parallel_history, self.outcome))

    def __bool__(self):
        return self.outcome.is_ok
