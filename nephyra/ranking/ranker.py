"""
Recommendation Ranker for Nephyra.

Core principle:
    Every recommendation explains itself. The rationale is the finding's
    message followed by each cited fact with its value, source and
    confidence. Nothing is summarized away.

Order (total and stable):
    1. Severity: Critical > Warning > Info
    2. Subsystem priority (configurable; default boot > driver >
       package hygiene > informational)
    3. Rule registration order
    4. Order in which the rule emitted the finding
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from ..config import EngineConfig
from ..domain import Finding, Recommendation
from ..facts import SystemSnapshot
from .remediation import remediation_hint

logger = logging.getLogger(__name__)


# =============================================================================
# RATIONALE
# =============================================================================

def render_evidence(key: str, snapshot: Optional[SystemSnapshot]) -> str:
    """
    One evidence line: "key = value [source, confidence]".

    Without a snapshot only the key is shown.
    """
    if snapshot is None:
        return key
    fact = snapshot.get(key)
    if fact is None:
        return f"{key} (not in snapshot)"
    return f"{key} = {fact.value.display()} [{fact.source}, {fact.confidence.value}]"


def build_rationale(finding: Finding, snapshot: Optional[SystemSnapshot] = None) -> str:
    """Human-readable rationale. Pure formatting; makes no decisions."""
    evidence = "; ".join(render_evidence(key, snapshot) for key in finding.evidence)
    return f"{finding.message}. Evidence: {evidence}"


# =============================================================================
# RANKER
# =============================================================================

class Ranker:
    """
    Orders findings into Recommendations.

    rule_order is the rule registration order; rules not listed sort after
    all listed ones, by id.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        rule_order: Sequence[str] = (),
    ):
        self.config = config or EngineConfig()
        self._rule_index = {rule_id: i for i, rule_id in enumerate(rule_order)}

    def sort_key(self, finding: Finding, emission_index: int) -> tuple:
        return (
            -finding.severity.rank,
            self.config.subsystem_rank(finding.affected_subsystem),
            self._rule_index.get(finding.rule_id, len(self._rule_index)),
            finding.rule_id,
            emission_index,
        )

    def rank(
        self,
        findings: Iterable[Finding],
        snapshot: Optional[SystemSnapshot] = None,
    ) -> list[Recommendation]:
        """
        Rank findings and attach rationale and remediation hints.

        Args:
            findings: Findings in emission order
            snapshot: Snapshot the findings came from; when given, evidence
                      is rendered with values and hints use its facts

        Returns:
            Recommendations with rank 1..n
        """
        indexed = list(enumerate(findings))
        indexed.sort(key=lambda pair: self.sort_key(pair[1], pair[0]))

        recommendations = [
            Recommendation(
                finding=finding,
                rank=position,
                rationale_text=build_rationale(finding, snapshot),
                remediation_hint=remediation_hint(finding, snapshot),
            )
            for position, (_, finding) in enumerate(indexed, start=1)
        ]
        logger.debug("Ranked %d recommendation(s)", len(recommendations))
        return recommendations
