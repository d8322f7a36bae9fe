"""
Rule Engine for Nephyra.

Core principle:
    A rule is a pure function of the snapshot. Same snapshot in, same
    findings out, in the same order. No wall clock, no randomness, no
    I/O.

Rules are rows in a registration table (rule_id -> RuleSpec), not a
class hierarchy. Each declares the fact keys it needs; when any is
missing the rule abstains instead of guessing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

from ..domain import Finding, RuleAbstention, Subsystem
from ..facts import SystemSnapshot

logger = logging.getLogger(__name__)


RuleFunc = Callable[[SystemSnapshot], Iterable[Finding]]


class RuleContractError(Exception):
    """
    Raised when a rule emits a finding that breaks the evidence contract.

    This is a programming error in the rule, not a runtime condition.
    """
    pass


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass(frozen=True)
class RuleSpec:
    """One row of the rule table."""
    rule_id: str
    required_keys: frozenset[str]
    evaluate: RuleFunc = field(compare=False)
    subsystem: Subsystem
    description: str = ""


class RuleRegistry:
    """
    Ordered table of rules. Registration order is evaluation order and
    the final ranking tie-breaker.
    """

    def __init__(self, specs: Iterable[RuleSpec] = ()):
        self._rules: dict[str, RuleSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: RuleSpec) -> RuleSpec:
        if spec.rule_id in self._rules:
            raise ValueError(f"Rule already registered: {spec.rule_id}")
        self._rules[spec.rule_id] = spec
        return spec

    def rule(
        self,
        rule_id: str,
        requires: Iterable[str],
        subsystem: Subsystem,
    ) -> Callable[[RuleFunc], RuleFunc]:
        """
        Decorator form of register():

            @registry.rule("power.governor-mismatch", requires=[...], subsystem=...)
            def governor_mismatch(snapshot): ...
        """
        def decorator(func: RuleFunc) -> RuleFunc:
            self.register(RuleSpec(
                rule_id=rule_id,
                required_keys=frozenset(requires),
                evaluate=func,
                subsystem=subsystem,
                description=(func.__doc__ or "").strip().split("\n")[0],
            ))
            return func
        return decorator

    def get(self, rule_id: str) -> Optional[RuleSpec]:
        return self._rules.get(rule_id)

    @property
    def order(self) -> tuple[str, ...]:
        return tuple(self._rules)

    def __iter__(self) -> Iterator[RuleSpec]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules


# =============================================================================
# EVALUATION
# =============================================================================

@dataclass(frozen=True)
class EvaluationResult:
    """Findings in rule order, plus the rules that abstained."""
    findings: tuple[Finding, ...]
    abstentions: tuple[RuleAbstention, ...]


def _check_contract(spec: RuleSpec, finding: Finding, snapshot: SystemSnapshot) -> None:
    if finding.rule_id != spec.rule_id:
        raise RuleContractError(
            f"Rule {spec.rule_id} emitted a finding for {finding.rule_id}"
        )
    if not finding.evidence:
        raise RuleContractError(f"Rule {spec.rule_id} emitted a finding without evidence")
    unknown = [key for key in finding.evidence if not snapshot.has(key)]
    if unknown:
        raise RuleContractError(
            f"Rule {spec.rule_id} cites evidence not in the snapshot: {unknown}"
        )


class RuleEngine:
    """Evaluates every registered rule against a snapshot."""

    def __init__(self, registry: Optional[RuleRegistry] = None):
        if registry is None:
            from .builtin import BUILTIN_RULES
            registry = BUILTIN_RULES
        self.registry = registry

    @property
    def rule_order(self) -> tuple[str, ...]:
        return self.registry.order

    def run(self, snapshot: SystemSnapshot) -> EvaluationResult:
        findings: list[Finding] = []
        abstentions: list[RuleAbstention] = []

        for spec in self.registry:
            missing = snapshot.missing_for(spec.required_keys)
            if missing:
                logger.debug(
                    "Rule %s abstains, missing: %s", spec.rule_id, ", ".join(sorted(missing))
                )
                abstentions.append(RuleAbstention(spec.rule_id, tuple(sorted(missing))))
                continue

            emitted = list(spec.evaluate(snapshot))
            for finding in emitted:
                _check_contract(spec, finding, snapshot)
            findings.extend(emitted)

        return EvaluationResult(findings=tuple(findings), abstentions=tuple(abstentions))

    def evaluate(self, snapshot: SystemSnapshot) -> tuple[Finding, ...]:
        """Findings only, in rule registration order."""
        return self.run(snapshot).findings
