"""
State machine models for stateful property-based testing.

A :class:`StateMachine` is an explicit registry of commands.  Each command
bundles the implementation that drives the system under test (SUT) with
three pure callbacks that drive the abstract model:

* ``pre(state, args) -> bool``: may the command run in this model state?
* ``post(state, args, result) -> bool``: did the SUT answer as the model predicts?
* ``next(state, args, result) -> state``: the model state after the command.

Example: a counter whose ``inc`` returns the new value::

    >>> from statecheck.model import StateMachine
    >>>
    >>> counter = {"value": 0}
    >>> machine = StateMachine(initial_state=lambda: 0)
    >>>
    >>> @machine.command(
    ...     next=lambda state, args, result: state + 1,
    ...     post=lambda state, args, result: result == state + 1,
    ... )
    ... def inc():
    ...     counter["value"] += 1
    ...     return counter["value"]

The same callbacks run during generation, where ``state`` is symbolic and
results are :class:`~statecheck.common.Var` placeholders, and during
execution, where everything is concrete.  Callbacks must treat results as
opaque values and must not branch on which of the two phases they are in.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from statecheck.common import StatecheckError, UnknownCommand


def _always_true(state: Any, args: tuple[Any, ...], *result: Any) -> bool:
    return True


def _same_state(state: Any, args: tuple[Any, ...], result: Any) -> Any:
    return state


@dataclass(frozen=True)
class CommandSpec:
    """Everything the runners need to know about one command.

    Attributes:
        name: Command name used in symbolic calls.
        impl: Called with the resolved arguments; the only callback allowed
            to have side effects on the SUT.
        pre: Precondition ``(state, args) -> bool``.
        post: Postcondition ``(state, args, result) -> bool``.
        next: State transition ``(state, args, result) -> state``.
        args: Optional ``state -> strategy`` producing the argument sequence.
            Used when the machine has no ``command_gen``.
    """

    name: str
    impl: Callable[..., Any]
    pre: Callable[[Any, tuple[Any, ...]], bool] = _always_true
    post: Callable[[Any, tuple[Any, ...], Any], bool] = _always_true
    next: Callable[[Any, tuple[Any, ...], Any], Any] = _same_state
    args: Callable[[Any], Any] | None = None


class StateMachine:
    """An abstract state machine describing a system under test.

    Args:
        initial_state: Zero-argument callable returning the initial model
            state.  Called many times (generation, shrinking, replay), so it
            must be deterministic and free of I/O.
        command_gen: Optional ``state -> strategy`` generating
            ``(command_name, args)`` pairs.  When omitted, commands are
            chosen among the registered ones (see ``weight``) and their
            arguments come from each command's ``args`` strategy.
        weight: Optional ``state -> {command_name: positive int}``.  Biases
            the default command choice; commands missing from the mapping
            are not generated in that state.
        name: Display name used in reports and command names.
    """

    def __init__(
        self,
        initial_state: Callable[[], Any],
        command_gen: Callable[[Any], Any] | None = None,
        weight: Callable[[Any], Mapping[str, int]] | None = None,
        name: str | None = None,
    ):
        self.initial_state = initial_state
        self.command_gen = command_gen
        self.weight = weight
        self.name = name or getattr(initial_state, "__module__", None) or "StateMachine"
        self._commands: dict[str, CommandSpec] = {}

    def __repr__(self):
        return f"StateMachine({self.name!r}, commands={list(self._commands)!r})"

    # --- Registration ---

    def add_command(self, spec: CommandSpec) -> CommandSpec:
        """Register a command.  Each name may be registered only once."""
        if spec.name in self._commands:
            raise StatecheckError(f"Command {spec.name!r} is already registered")
        self._commands[spec.name] = spec
        return spec

    def command(
        self,
        name: str | None = None,
        *,
        pre: Callable[[Any, tuple[Any, ...]], bool] | None = None,
        post: Callable[[Any, tuple[Any, ...], Any], bool] | None = None,
        next: Callable[[Any, tuple[Any, ...], Any], Any] | None = None,
        args: Callable[[Any], Any] | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering the decorated function as a command implementation.

        The command is named after the function unless ``name`` is given.
        Omitted callbacks default to an always-true precondition, an
        always-true postcondition and an unchanged state.
        """

        def decorator(impl: Callable[..., Any]) -> Callable[..., Any]:
            self.add_command(
                CommandSpec(
                    name=name or impl.__name__,
                    impl=impl,
                    pre=pre or _always_true,
                    post=post or _always_true,
                    next=next or _same_state,
                    args=args,
                )
            )
            return impl

        return decorator

    # --- Lookup and dispatch ---

    @property
    def commands(self) -> dict[str, CommandSpec]:
        return dict(self._commands)

    def spec(self, name: str) -> CommandSpec:
        try:
            return self._commands[name]
        except KeyError:
            raise UnknownCommand(f"{self.name} has no command {name!r}") from None

    def precondition(self, state: Any, name: str, args: tuple[Any, ...]) -> bool:
        return bool(self.spec(name).pre(state, args))

    def postcondition(self, state: Any, name: str, args: tuple[Any, ...], result: Any) -> bool:
        return bool(self.spec(name).post(state, args, result))

    def next_state(self, state: Any, name: str, args: tuple[Any, ...], result: Any) -> Any:
        return self.spec(name).next(state, args, result)

    def call(self, name: str, args: tuple[Any, ...]) -> Any:
        return self.spec(name).impl(*args)
