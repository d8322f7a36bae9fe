# Ranking package for Nephyra
"""
Deterministic recommendation ranking.

Every recommendation carries a rationale built from its cited facts.
"""

from .ranker import Ranker, build_rationale, render_evidence
from .remediation import remediation_hint

__all__ = [
    "Ranker",
    "build_rationale",
    "render_evidence",
    "remediation_hint",
]
