"""
Statecheck: stateful property-based testing for Python.

Models and sequential runs::

    from statecheck.model import StateMachine
    from statecheck.generate import commands
    from statecheck.sequential import run_commands

Parallel runs and atomicity checking::

    from statecheck.generate import parallel_commands
    from statecheck.parallel import run_parallel_commands
    from statecheck.instrument import instrument_module

Reports::

    from statecheck.reporter import print_report

Properties with persistent counterexamples::

    from statecheck.properties import check_property, forall, stateful_property
    from statecheck.store import CounterExampleStore
"""

__version__ = "0.1.0"
