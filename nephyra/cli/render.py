"""
Output formatting for the Nephyra CLI.

Renderers only read recommendations and snapshots; they decide nothing.
Text output is for terminals, JSON output uses the stable field names of
Recommendation.to_dict().
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from ..domain import Recommendation, Severity, Subsystem
from ..export import SnapshotDiff, fact_to_dict
from ..facts import Fact, SystemSnapshot
from .pipeline import PassResult

SEVERITY_BADGES = {
    Severity.CRITICAL: "[CRITICAL]",
    Severity.WARNING: "[WARNING]",
    Severity.INFO: "[INFO]",
}

# fact key prefix -> report section
FACT_GROUPS = (
    ("kernel.", "Kernel"),
    ("boot.", "Bootloader"),
    ("power.", "Power"),
    ("pkg.", "Packages"),
    ("hw.", "Hardware"),
    ("driver.", "Drivers"),
)


# =============================================================================
# TEXT
# =============================================================================

def format_fact(fact: Fact) -> str:
    return f"{fact.key} = {fact.value.display()} [{fact.source}, {fact.confidence.value}]"


def format_recommendation_row(rec: Recommendation) -> str:
    badge = SEVERITY_BADGES.get(rec.severity, "[?]")
    return f"{rec.rank:>2}. {badge:<10} {rec.finding.message} | ID: {rec.recommendation_id}"


def format_snapshot_status(snapshot: SystemSnapshot) -> list[str]:
    lines = [
        f"Snapshot: {snapshot.snapshot_id} ({len(snapshot.facts)} facts from "
        f"{len(snapshot.probe_ids)} probes)"
    ]
    if snapshot.partial:
        lines.append("PARTIAL: some observations are unavailable")
        for failure in snapshot.failures:
            lines.append(f"  • probe {failure.probe_id} failed ({failure.kind.value}): {failure.reason}")
        if snapshot.missing:
            lines.append(f"  • missing facts: {', '.join(sorted(snapshot.missing))}")
    return lines


def format_recommendations(recommendations: Iterable[Recommendation]) -> list[str]:
    recommendations = list(recommendations)
    if not recommendations:
        return ["No recommendations. Everything checked looks consistent."]

    lines = []
    for rec in recommendations:
        lines.append(format_recommendation_row(rec))
        if rec.remediation_hint:
            lines.append(f"      hint: {rec.remediation_hint}")
    return lines


def format_check(result: PassResult) -> str:
    lines = ["Nephyra — System Check", "=" * 50]
    lines.extend(format_snapshot_status(result.snapshot))
    lines.append("")
    lines.extend(format_recommendations(result.recommendations))
    if result.recommendations:
        lines.append("")
        lines.append("Use 'nephyra explain <id>' for the full rationale.")
    return "\n".join(lines)


def format_explanation(rec: Recommendation, result: PassResult) -> str:
    """Rationale, evidence lineage and the rules that could not run."""
    snapshot = result.snapshot
    finding = rec.finding

    lines = [
        f"Recommendation {rec.recommendation_id} (rank {rec.rank})",
        "=" * 50,
        f"Rule:      {finding.rule_id}",
        f"Severity:  {finding.severity.value}",
        f"Subsystem: {finding.affected_subsystem.value}",
        "",
        "RATIONALE:",
        f"  {rec.rationale_text}",
        "",
        "EVIDENCE LINEAGE:",
    ]

    for key in finding.evidence:
        fact = snapshot.get(key)
        if fact is None:
            lines.append(f"  • {key}: not in snapshot")
            continue
        lines.append(f"  • {key} = {fact.value.display()}")
        lines.append(f"    Source: {fact.source}")
        lines.append(f"    Confidence: {fact.confidence.value}")
        lines.append(f"    Observed: {fact.timestamp.isoformat()}")
        for loser in snapshot.superseded.get(key, ()):
            lines.append(
                f"    Superseded: {loser.value.display()} from {loser.source} "
                f"({loser.confidence.value})"
            )

    if rec.remediation_hint:
        lines.append("")
        lines.append("SUGGESTED ACTION (not executed):")
        lines.append(f"  {rec.remediation_hint}")

    if result.abstentions:
        lines.append("")
        lines.append("RULES THAT ABSTAINED:")
        for abstention in result.abstentions:
            lines.append(f"  • {abstention.rule_id}: missing {', '.join(abstention.missing_keys)}")

    return "\n".join(lines)


def group_facts(snapshot: SystemSnapshot) -> list[tuple[str, list[Fact]]]:
    groups: dict[str, list[Fact]] = {title: [] for _, title in FACT_GROUPS}
    groups["Other"] = []
    for key in sorted(snapshot.facts):
        title = next(
            (title for prefix, title in FACT_GROUPS if key.startswith(prefix)),
            "Other",
        )
        groups[title].append(snapshot.facts[key])
    return [(title, facts) for title, facts in groups.items() if facts]


def format_report(result: PassResult) -> str:
    lines = ["Nephyra — System Report", "=" * 50]
    lines.extend(format_snapshot_status(result.snapshot))

    for title, facts in group_facts(result.snapshot):
        lines.append("")
        lines.append(f"{title.upper()}:")
        for fact in facts:
            lines.append(f"  {format_fact(fact)}")

    lines.append("")
    lines.append("RECOMMENDATIONS:")
    lines.extend(format_recommendations(result.recommendations))
    return "\n".join(lines)


def package_recommendations(result: PassResult) -> list[Recommendation]:
    return [
        rec for rec in result.recommendations
        if rec.finding.affected_subsystem == Subsystem.PACKAGE_HYGIENE
    ]


def format_packages(result: PassResult) -> str:
    snapshot = result.snapshot
    lines = ["Nephyra — Package Hygiene", "=" * 50]
    lines.extend(format_snapshot_status(snapshot))
    lines.append("")
    for key in sorted(snapshot.facts):
        if key.startswith(("pkg.", "kernel.")):
            lines.append(f"  {format_fact(snapshot.facts[key])}")
    lines.append("")
    lines.extend(format_recommendations(package_recommendations(result)))
    return "\n".join(lines)


def format_diff(diff: SnapshotDiff, old: SystemSnapshot, new: SystemSnapshot) -> str:
    lines = [f"Nephyra — Snapshot Diff ({old.snapshot_id} -> {new.snapshot_id})", "=" * 50]
    if diff.is_empty:
        lines.append("No fact values changed.")
        return "\n".join(lines)

    for fact in diff.added:
        lines.append(f"+ {format_fact(fact)}")
    for fact in diff.removed:
        lines.append(f"- {format_fact(fact)}")
    for change in diff.changed:
        lines.append(
            f"~ {change.key}: {change.old.value.display()} -> {change.new.value.display()}"
        )
    return "\n".join(lines)


# =============================================================================
# JSON
# =============================================================================

def snapshot_summary(snapshot: SystemSnapshot) -> dict[str, Any]:
    return {
        "snapshot_id": snapshot.snapshot_id,
        "created_at": snapshot.created_at.isoformat(),
        "partial": snapshot.partial,
        "missing": sorted(snapshot.missing),
        "failures": [
            {"probe_id": f.probe_id, "kind": f.kind.value, "reason": f.reason}
            for f in snapshot.failures
        ],
    }


def result_to_dict(
    result: PassResult,
    include_facts: bool = False,
    recommendations: Optional[Iterable[Recommendation]] = None,
) -> dict[str, Any]:
    if recommendations is None:
        recommendations = result.recommendations
    payload: dict[str, Any] = {
        "snapshot": snapshot_summary(result.snapshot),
        "recommendations": [rec.to_dict() for rec in recommendations],
        "abstentions": [
            {"rule_id": a.rule_id, "missing_keys": list(a.missing_keys)}
            for a in result.abstentions
        ],
    }
    if include_facts:
        payload["facts"] = {
            key: fact_to_dict(result.snapshot.facts[key])
            for key in sorted(result.snapshot.facts)
        }
    return payload


def to_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=False)
