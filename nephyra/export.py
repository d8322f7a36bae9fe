"""
Snapshot export and comparison.

A snapshot can be written to JSON, read back, and compared with another
one. Nephyra keeps no state between runs; exports exist only so a user can
compare two points in time themselves (e.g. before and after an upgrade).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from .facts import (
    Confidence,
    Fact,
    FactValidationError,
    FactValue,
    ProbeFailure,
    ProbeFailureKind,
    SystemSnapshot,
)

logger = logging.getLogger(__name__)

EXPORT_FORMAT = "nephyra-snapshot"
EXPORT_VERSION = 1


class SnapshotFormatError(ValueError):
    """Raised when a snapshot export cannot be read or written."""
    pass


# =============================================================================
# SERIALIZATION
# =============================================================================

def fact_to_dict(fact: Fact) -> dict[str, Any]:
    return {
        "kind": fact.value.kind.value,
        "value": fact.value.to_json(),
        "source": fact.source,
        "confidence": fact.confidence.value,
        "timestamp": fact.timestamp.isoformat(),
    }


def fact_from_dict(key: str, payload: Mapping[str, Any]) -> Fact:
    try:
        return Fact(
            key=key,
            value=FactValue.from_json(payload["kind"], payload["value"]),
            source=payload["source"],
            confidence=Confidence(payload["confidence"]),
            timestamp=datetime.fromisoformat(payload["timestamp"]),
        )
    except (KeyError, TypeError, ValueError, FactValidationError) as e:
        raise SnapshotFormatError(f"Invalid fact {key!r}: {e}")


def snapshot_to_dict(snapshot: SystemSnapshot) -> dict[str, Any]:
    return {
        "format": EXPORT_FORMAT,
        "version": EXPORT_VERSION,
        "snapshot_id": snapshot.snapshot_id,
        "created_at": snapshot.created_at.isoformat(),
        "partial": snapshot.partial,
        "missing": sorted(snapshot.missing),
        "probe_ids": list(snapshot.probe_ids),
        "failures": [
            {"probe_id": f.probe_id, "kind": f.kind.value, "reason": f.reason}
            for f in snapshot.failures
        ],
        "facts": {key: fact_to_dict(snapshot.facts[key]) for key in sorted(snapshot.facts)},
        "superseded": {
            key: [fact_to_dict(f) for f in snapshot.superseded[key]]
            for key in sorted(snapshot.superseded)
        },
    }


def snapshot_from_dict(payload: Mapping[str, Any]) -> SystemSnapshot:
    """
    Rebuild a snapshot from snapshot_to_dict() output.

    Raises:
        SnapshotFormatError: If the payload is not a Nephyra export
    """
    if not isinstance(payload, Mapping) or payload.get("format") != EXPORT_FORMAT:
        raise SnapshotFormatError("Not a Nephyra snapshot export")
    if payload.get("version") != EXPORT_VERSION:
        raise SnapshotFormatError(f"Unsupported export version: {payload.get('version')!r}")

    try:
        facts = {key: fact_from_dict(key, data) for key, data in payload["facts"].items()}
        superseded = {
            key: tuple(fact_from_dict(key, data) for data in items)
            for key, items in payload.get("superseded", {}).items()
        }
        failures = tuple(
            ProbeFailure(
                probe_id=item["probe_id"],
                kind=ProbeFailureKind(item["kind"]),
                reason=item["reason"],
            )
            for item in payload.get("failures", [])
        )
        snapshot = SystemSnapshot(
            facts=facts,
            partial=bool(payload["partial"]),
            missing=frozenset(payload.get("missing", [])),
            failures=failures,
            superseded=superseded,
            probe_ids=tuple(payload.get("probe_ids", [])),
            created_at=datetime.fromisoformat(payload["created_at"]),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        if isinstance(e, SnapshotFormatError):
            raise
        raise SnapshotFormatError(f"Malformed snapshot export: {e}")

    recorded = payload.get("snapshot_id")
    if recorded and recorded != snapshot.snapshot_id:
        logger.warning(
            "Snapshot id mismatch: file says %s, contents hash to %s",
            recorded, snapshot.snapshot_id,
        )
    return snapshot


def write_snapshot(snapshot: SystemSnapshot, path: str | Path) -> Path:
    """
    Raises:
        SnapshotFormatError: If the file cannot be written
    """
    target = Path(path)
    try:
        with target.open("w", encoding="utf-8") as handle:
            json.dump(snapshot_to_dict(snapshot), handle, indent=2)
            handle.write("\n")
    except OSError as e:
        raise SnapshotFormatError(f"Cannot write snapshot to {target}: {e.strerror or e}")
    logger.info("Exported snapshot %s to %s", snapshot.snapshot_id, target)
    return target


def read_snapshot(path: str | Path) -> SystemSnapshot:
    """
    Raises:
        SnapshotFormatError: If the file is missing or unreadable, not JSON,
                             or not an export
    """
    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        raise SnapshotFormatError(f"Snapshot file not found: {source}")
    except OSError as e:
        raise SnapshotFormatError(f"Cannot read snapshot {source}: {e.strerror or e}")
    except UnicodeDecodeError as e:
        raise SnapshotFormatError(f"Snapshot {source} is not UTF-8 text: {e.reason}")
    except json.JSONDecodeError as e:
        raise SnapshotFormatError(f"Invalid JSON in {source}: {e}")
    return snapshot_from_dict(payload)


# =============================================================================
# DIFF
# =============================================================================

@dataclass(frozen=True)
class FactChange:
    key: str
    old: Fact
    new: Fact


@dataclass(frozen=True)
class SnapshotDiff:
    """Fact-level differences between two snapshots, each sorted by key."""
    added: tuple[Fact, ...]
    removed: tuple[Fact, ...]
    changed: tuple[FactChange, ...]

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


def diff_snapshots(old: SystemSnapshot, new: SystemSnapshot) -> SnapshotDiff:
    """
    Compare fact values between two snapshots.

    Only values count as changes; a fact re-observed with a newer
    timestamp or different confidence is considered unchanged.
    """
    old_keys, new_keys = old.keys(), new.keys()

    added = tuple(new.facts[k] for k in sorted(new_keys - old_keys))
    removed = tuple(old.facts[k] for k in sorted(old_keys - new_keys))
    changed = tuple(
        FactChange(key=k, old=old.facts[k], new=new.facts[k])
        for k in sorted(old_keys & new_keys)
        if old.facts[k].value != new.facts[k].value
    )
    return SnapshotDiff(added=added, removed=removed, changed=changed)
