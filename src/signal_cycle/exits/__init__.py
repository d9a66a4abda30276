"""Exit condition package exports."""

from signal_cycle.exits.evaluator import ExitDecision, evaluate_exits, select_governing
from signal_cycle.exits.rules import ExitConfig, ExitContext

__all__ = [
    "ExitConfig",
    "ExitContext",
    "ExitDecision",
    "evaluate_exits",
    "select_governing",
]
