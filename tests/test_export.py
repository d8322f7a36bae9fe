"""
Tests for snapshot export and diff.

These tests verify:
1. An exported snapshot reads back equal, with the same snapshot id
2. Unreadable exports raise SnapshotFormatError
3. diff_snapshots reports added, removed and changed values only
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from nephyra import keys
from nephyra.export import (
    SnapshotFormatError,
    diff_snapshots,
    read_snapshot,
    snapshot_from_dict,
    snapshot_to_dict,
    write_snapshot,
)
from nephyra.facts import (
    Confidence,
    Fact,
    FactValue,
    ProbeFailure,
    ProbeFailureKind,
    SystemSnapshot,
)


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_fact(key, value, source="test", timestamp=T0, confidence=Confidence.CERTAIN) -> Fact:
    """Helper to create a Fact for testing."""
    return Fact(key=key, value=value, source=source, confidence=confidence, timestamp=timestamp)


def make_snapshot(*facts, superseded=None, failures=(), missing=()) -> SystemSnapshot:
    return SystemSnapshot(
        facts={f.key: f for f in facts},
        partial=bool(failures or missing),
        missing=frozenset(missing),
        failures=tuple(failures),
        superseded=superseded or {},
        probe_ids=("governor", "kernel", "packages"),
        created_at=T0,
    )


def sample_snapshot() -> SystemSnapshot:
    active = make_fact(keys.KERNEL_ACTIVE_VERSION, FactValue.version("6.6.1-lts"), "kernel")
    loser = make_fact(keys.KERNEL_ACTIVE_VERSION, FactValue.version("6.8.0-zen"), "packages")
    return make_snapshot(
        active,
        make_fact(keys.KERNEL_INSTALLED_VERSIONS, FactValue.version_set(["6.6.1-lts", "6.8.0-zen"]), "kernel"),
        make_fact(keys.PKG_ORPHANED, FactValue.string_set(["python-foo"]), "packages"),
        make_fact(keys.PKG_UPDATES_COUNT, FactValue.numeric(4), "packages"),
        make_fact(keys.KERNEL_HEADERS_INSTALLED, FactValue.boolean(True), "kernel"),
        make_fact(keys.POWER_PROFILE_RECOMMENDED, FactValue.enum("powersave"), "power",
                  confidence=Confidence.INFERRED),
        superseded={keys.KERNEL_ACTIVE_VERSION: (loser,)},
        failures=[ProbeFailure("governor", ProbeFailureKind.TIMEOUT, "too slow")],
        missing=[keys.POWER_GOVERNOR_CURRENT],
    )


# =============================================================================
# EXPORT TESTS
# =============================================================================

class TestExport:
    """Test writing and reading snapshots."""

    def test_file_round_trip(self, tmp_path):
        snapshot = sample_snapshot()
        path = write_snapshot(snapshot, tmp_path / "snap.json")

        restored = read_snapshot(path)

        assert restored == snapshot
        assert restored.snapshot_id == snapshot.snapshot_id
        assert restored.failures[0].kind == ProbeFailureKind.TIMEOUT

    def test_export_is_plain_json(self):
        payload = snapshot_to_dict(sample_snapshot())

        assert payload["format"] == "nephyra-snapshot"
        assert payload["facts"][keys.KERNEL_ACTIVE_VERSION]["value"] == "6.6.1-lts"
        assert payload["facts"][keys.KERNEL_INSTALLED_VERSIONS]["kind"] == "version_set"
        assert payload["missing"] == [keys.POWER_GOVERNOR_CURRENT]
        json.dumps(payload)

    def test_missing_file(self, tmp_path):
        with pytest.raises(SnapshotFormatError, match="not found"):
            read_snapshot(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(SnapshotFormatError, match="Invalid JSON"):
            read_snapshot(path)

    def test_non_utf8_file(self, tmp_path):
        path = tmp_path / "binary.json"
        path.write_bytes(b"\xff\xfe{}")

        with pytest.raises(SnapshotFormatError, match="not UTF-8"):
            read_snapshot(path)

    def test_directory_instead_of_file(self, tmp_path):
        with pytest.raises(SnapshotFormatError, match="Cannot read snapshot"):
            read_snapshot(tmp_path)

    def test_write_into_missing_directory(self, tmp_path):
        with pytest.raises(SnapshotFormatError, match="Cannot write snapshot"):
            write_snapshot(sample_snapshot(), tmp_path / "absent" / "snap.json")

    def test_foreign_document(self):
        with pytest.raises(SnapshotFormatError):
            snapshot_from_dict({"hello": "world"})

    def test_unsupported_version(self):
        payload = snapshot_to_dict(sample_snapshot())
        payload["version"] = 99

        with pytest.raises(SnapshotFormatError, match="version"):
            snapshot_from_dict(payload)

    def test_bad_fact(self):
        payload = snapshot_to_dict(sample_snapshot())
        payload["facts"][keys.PKG_UPDATES_COUNT]["confidence"] = "certainish"

        with pytest.raises(SnapshotFormatError, match=keys.PKG_UPDATES_COUNT):
            snapshot_from_dict(payload)

    def test_missing_field(self):
        payload = snapshot_to_dict(sample_snapshot())
        del payload["created_at"]

        with pytest.raises(SnapshotFormatError):
            snapshot_from_dict(payload)


# =============================================================================
# DIFF TESTS
# =============================================================================

class TestDiff:
    """Test fact-level comparison."""

    def test_identical_snapshots(self):
        assert diff_snapshots(sample_snapshot(), sample_snapshot()).is_empty

    def test_added_removed_changed(self):
        old = make_snapshot(
            make_fact(keys.KERNEL_ACTIVE_VERSION, FactValue.version("6.6.1-lts")),
            make_fact(keys.PKG_UPDATES_COUNT, FactValue.numeric(4)),
        )
        new = make_snapshot(
            make_fact(keys.KERNEL_ACTIVE_VERSION, FactValue.version("6.8.0-zen")),
            make_fact(keys.PKG_MANAGER, FactValue.enum("pacman")),
        )

        diff = diff_snapshots(old, new)

        assert [f.key for f in diff.added] == [keys.PKG_MANAGER]
        assert [f.key for f in diff.removed] == [keys.PKG_UPDATES_COUNT]
        assert [c.key for c in diff.changed] == [keys.KERNEL_ACTIVE_VERSION]
        assert diff.changed[0].new.value.data.raw == "6.8.0-zen"

    def test_reobserved_fact_is_unchanged(self):
        old = make_snapshot(make_fact(keys.PKG_MANAGER, FactValue.enum("apt")))
        new = make_snapshot(make_fact(
            keys.PKG_MANAGER, FactValue.enum("apt"), timestamp=T0 + timedelta(days=1),
            confidence=Confidence.STALE,
        ))

        assert diff_snapshots(old, new).is_empty
