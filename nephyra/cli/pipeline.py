"""
Pass Orchestrator for Nephyra.

Ties the components into a single correlation pass:
    1. Probe collection (Aggregator, concurrent, bounded)
    2. Aggregation into a SystemSnapshot
    3. Rule evaluation
    4. Ranking

The pass is read-only. Nothing is persisted between passes; each command
runs its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..aggregation import Aggregator
from ..config import EngineConfig
from ..domain import (
    EngineFailure,
    EngineFailureReason,
    Finding,
    Recommendation,
    RuleAbstention,
)
from ..facts import SystemSnapshot
from ..probes import Probe
from ..ranking import Ranker
from ..rules import RuleEngine

logger = logging.getLogger(__name__)


# =============================================================================
# PASS RESULT
# =============================================================================

@dataclass(frozen=True)
class PassResult:
    """
    Everything one correlation pass produced.

    Exposes:
    - The snapshot (facts, failures, missing keys)
    - Findings in rule order and their ranked recommendations
    - Abstaining rules (for explain)
    """
    snapshot: SystemSnapshot
    findings: tuple[Finding, ...]
    recommendations: tuple[Recommendation, ...]
    abstentions: tuple[RuleAbstention, ...]

    def get_recommendation(self, ref: str) -> Optional[Recommendation]:
        """
        Find a recommendation by id, rank number or rule id.

        A rule id that produced several findings resolves to the
        highest-ranked one.
        """
        for rec in self.recommendations:
            if rec.recommendation_id == ref:
                return rec
        if ref.isdigit():
            for rec in self.recommendations:
                if rec.rank == int(ref):
                    return rec
        for rec in self.recommendations:
            if rec.rule_id == ref:
                return rec
        return None

    def abstention_for(self, rule_id: str) -> Optional[RuleAbstention]:
        for abstention in self.abstentions:
            if abstention.rule_id == rule_id:
                return abstention
        return None


# =============================================================================
# PASS EXECUTION
# =============================================================================

def evaluate_snapshot(
    snapshot: SystemSnapshot,
    config: EngineConfig,
    engine: Optional[RuleEngine] = None,
) -> PassResult:
    """
    Run rules and ranking over an existing snapshot.

    Raises:
        EngineFailure: If the snapshot holds no facts at all
    """
    if not snapshot.facts:
        failed = ", ".join(f"{f.probe_id} ({f.kind.value})" for f in snapshot.failures)
        raise EngineFailure(
            EngineFailureReason.NO_FACTS_AVAILABLE,
            f"no facts gathered; failed probes: {failed or 'none ran'}",
        )

    engine = engine or RuleEngine()
    evaluation = engine.run(snapshot)
    ranker = Ranker(config, rule_order=engine.rule_order)
    recommendations = ranker.rank(evaluation.findings, snapshot)

    return PassResult(
        snapshot=snapshot,
        findings=evaluation.findings,
        recommendations=tuple(recommendations),
        abstentions=evaluation.abstentions,
    )


def run_pass(
    probes: Sequence[Probe],
    config: EngineConfig,
    engine: Optional[RuleEngine] = None,
    aggregator: Optional[Aggregator] = None,
) -> PassResult:
    """
    Execute one full correlation pass.

    Args:
        probes: Probes to run
        config: Engine configuration
        engine: Rule engine (built-in rules if None)
        aggregator: Aggregator (constructed from config if None)

    Returns:
        PassResult with the snapshot and ranked recommendations

    Raises:
        EngineFailure: If no probe produced any fact
    """
    aggregator = aggregator or Aggregator(config)
    snapshot = aggregator.run(probes)
    result = evaluate_snapshot(snapshot, config, engine)

    logger.info(
        "Pass complete: %d recommendation(s), %d rule(s) abstained",
        len(result.recommendations), len(result.abstentions),
    )
    return result
