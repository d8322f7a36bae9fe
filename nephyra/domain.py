"""
Core Domain Objects for Nephyra.

Domain Objects:
    Finding         — A detected inconsistency or opportunity, citing facts by key
    Recommendation  — A ranked, explained, advisory action wrapping one Finding
    RuleAbstention  — A rule's deliberate no-op when its facts are missing
    EngineFailure   — The only fatal condition of a correlation pass
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


# =============================================================================
# ENGINE FAILURE
# =============================================================================

class EngineFailureReason(Enum):
    """Why a correlation pass could not produce a report at all."""
    NO_FACTS_AVAILABLE = "no_facts_available"


class EngineFailure(Exception):
    """
    Raised when a pass has no facts to reason over.

    Individual probe failures never raise this; they degrade the
    snapshot instead. Only total data unavailability is fatal.
    """

    def __init__(self, reason: EngineFailureReason, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(f"[{reason.value}] {detail}")


# =============================================================================
# SEVERITY AND SUBSYSTEM
# =============================================================================

class Severity(Enum):
    """Finding severity, ordered Critical > Warning > Info."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"info": 0, "warning": 1, "critical": 2}[self.value]


class Subsystem(Enum):
    """
    What part of the host a finding affects.

    Default ranking priority (see config.DEFAULT_SUBSYSTEM_PRIORITY):
    boot-affecting > driver-affecting > package hygiene > informational
    """
    BOOT = "boot"
    DRIVER = "driver"
    PACKAGE_HYGIENE = "package_hygiene"
    INFORMATIONAL = "informational"


# =============================================================================
# FINDING
# =============================================================================

@dataclass(frozen=True)
class Finding:
    """
    A detected inconsistency or improvement opportunity.

    evidence holds fact KEYS, never copies of facts, so every finding
    can be traced back through the snapshot that produced it.
    params fill message_template; they are normalized to a sorted tuple
    of string pairs so two equal findings always compare equal.
    """
    rule_id: str
    severity: Severity
    evidence: tuple[str, ...]
    message_template: str
    affected_subsystem: Subsystem
    params: Any = ()

    def __post_init__(self):
        if not self.rule_id:
            raise ValueError("rule_id is required")
        if not isinstance(self.severity, Severity):
            raise ValueError(f"severity must be Severity, got {type(self.severity)}")
        if not isinstance(self.affected_subsystem, Subsystem):
            raise ValueError(
                f"affected_subsystem must be Subsystem, got {type(self.affected_subsystem)}"
            )

        object.__setattr__(self, "evidence", tuple(self.evidence))
        params = self.params
        if isinstance(params, Mapping):
            params = params.items()
        object.__setattr__(
            self, "params", tuple(sorted((str(k), str(v)) for k, v in params))
        )

    @property
    def parameters(self) -> dict[str, str]:
        return dict(self.params)

    @property
    def message(self) -> str:
        """The message template filled in with this finding's parameters."""
        return self.message_template.format(**self.parameters)


# =============================================================================
# RULE ABSTENTION
# =============================================================================

@dataclass(frozen=True)
class RuleAbstention:
    """
    Record of a rule that did not run because required facts were missing.

    Not an error. Surfaced only by `explain` and diagnostic logging.
    """
    rule_id: str
    missing_keys: tuple[str, ...]


# =============================================================================
# RECOMMENDATION
# =============================================================================

@dataclass(frozen=True)
class Recommendation:
    """
    A ranked, explained, advisory action derived from exactly one Finding.

    remediation_hint is text for a human. Nephyra never executes it.
    """
    finding: Finding
    rank: int
    rationale_text: str
    remediation_hint: Optional[str] = None

    @property
    def severity(self) -> Severity:
        return self.finding.severity

    @property
    def rule_id(self) -> str:
        return self.finding.rule_id

    @property
    def recommendation_id(self) -> str:
        """Stable short id: same rule and parameters give the same id across runs."""
        content = f"{self.finding.rule_id}:{self.finding.params}"
        return hashlib.md5(content.encode()).hexdigest()[:8]

    def to_dict(self) -> dict[str, Any]:
        """Renderer-facing projection with stable field names."""
        return {
            "id": self.recommendation_id,
            "rank": self.rank,
            "rule_id": self.finding.rule_id,
            "severity": self.finding.severity.value,
            "subsystem": self.finding.affected_subsystem.value,
            "message": self.finding.message,
            "evidence": list(self.finding.evidence),
            "rationale": self.rationale_text,
            "remediation_hint": self.remediation_hint,
        }
