"""
Correlation rules for Nephyra.

Rules turn a SystemSnapshot into Findings. The built-in table lives in
builtin.py; extra rules can be registered on a RuleRegistry of their own.
"""

from .engine import (
    EvaluationResult,
    RuleContractError,
    RuleEngine,
    RuleRegistry,
    RuleSpec,
)
from .builtin import BUILTIN_RULES

__all__ = [
    "BUILTIN_RULES",
    "EvaluationResult",
    "RuleContractError",
    "RuleEngine",
    "RuleRegistry",
    "RuleSpec",
]
