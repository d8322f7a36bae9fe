"""
Fact Model — The canonical data contract for Nephyra.

SYSTEM INVARIANT:
    Every observation about the host is a Fact with a key, a typed value,
    a source probe, a confidence level and a timestamp. Findings cite
    Facts by key only, so every conclusion traces back to an observation.

Confidence levels:
    CERTAIN  — Read directly from the system (/proc, /sys, a CLI)
    INFERRED — Derived from other observations via a documented rule
    STALE    — Older than the configured freshness window
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import total_ordering
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional


class FactValidationError(Exception):
    """Raised when a fact or fact value fails validation checks."""
    pass


# =============================================================================
# CONFIDENCE
# =============================================================================

class Confidence(Enum):
    """How much a fact can be trusted, ordered Certain > Inferred > Stale."""
    CERTAIN = "certain"
    INFERRED = "inferred"
    STALE = "stale"

    @property
    def rank(self) -> int:
        return {"stale": 0, "inferred": 1, "certain": 2}[self.value]


# =============================================================================
# KERNEL VERSION
# =============================================================================

_RELEASE_RE = re.compile(r"^(\d+(?:\.\d+)*)(.*)$")


@total_ordering
@dataclass(frozen=True)
class KernelVersion:
    """
    A parsed kernel release string, e.g. "6.15.2-2-cachyos-eevdf-lto".

    Ordering compares the leading dotted release numbers, then the numbers
    found in the suffix (package release, patch level), then the alphabetic
    flavor. Equality is by raw text.
    """
    raw: str
    release: tuple[int, ...] = field(compare=False)
    extra: tuple[int, ...] = field(compare=False)
    flavor: str = field(compare=False)

    @classmethod
    def parse(cls, text: str) -> KernelVersion:
        raw = text.strip()
        match = _RELEASE_RE.match(raw)
        if not raw or match is None:
            raise FactValidationError(f"Not a kernel version: {text!r}")

        release = tuple(int(part) for part in match.group(1).split("."))
        suffix = match.group(2)
        extra = tuple(int(n) for n in re.findall(r"\d+", suffix))
        flavor = "-".join(
            token for token in re.split(r"[-_.+]", suffix)
            if token and token.isalpha()
        )
        return cls(raw=raw, release=release, extra=extra, flavor=flavor)

    @property
    def sort_key(self) -> tuple:
        return (self.release, self.extra, self.flavor, self.raw)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, KernelVersion):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __str__(self) -> str:
        return self.raw


# =============================================================================
# FACT VALUES (Tagged Union)
# =============================================================================

class ValueKind(Enum):
    """The closed set of value shapes a fact may carry."""
    STRING = "string"
    VERSION = "version"
    ENUM = "enum"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    VERSION_SET = "version_set"
    STRING_SET = "string_set"


@dataclass(frozen=True)
class FactValue:
    """
    A tagged value. Use the classmethod constructors rather than building
    one by hand; they normalize the payload (sets become sorted tuples).
    """
    kind: ValueKind
    data: Any

    def __post_init__(self):
        self._validate()

    def _validate(self) -> None:
        kind, data = self.kind, self.data
        if not isinstance(kind, ValueKind):
            raise FactValidationError(f"kind must be ValueKind, got {type(kind)}")

        if kind in (ValueKind.STRING, ValueKind.ENUM):
            ok = isinstance(data, str)
        elif kind == ValueKind.VERSION:
            ok = isinstance(data, KernelVersion)
        elif kind == ValueKind.NUMERIC:
            ok = isinstance(data, (int, float)) and not isinstance(data, bool)
        elif kind == ValueKind.BOOLEAN:
            ok = isinstance(data, bool)
        elif kind == ValueKind.VERSION_SET:
            ok = isinstance(data, tuple) and all(isinstance(v, KernelVersion) for v in data)
        else:
            ok = isinstance(data, tuple) and all(isinstance(v, str) for v in data)

        if not ok:
            raise FactValidationError(
                f"{kind.value} value has wrong payload type: {type(data).__name__}"
            )

    @classmethod
    def string(cls, value: str) -> FactValue:
        return cls(ValueKind.STRING, value)

    @classmethod
    def enum(cls, value: str) -> FactValue:
        return cls(ValueKind.ENUM, value.strip().lower())

    @classmethod
    def version(cls, value: KernelVersion | str) -> FactValue:
        if isinstance(value, str):
            value = KernelVersion.parse(value)
        return cls(ValueKind.VERSION, value)

    @classmethod
    def numeric(cls, value: float) -> FactValue:
        return cls(ValueKind.NUMERIC, value)

    @classmethod
    def boolean(cls, value: bool) -> FactValue:
        return cls(ValueKind.BOOLEAN, value)

    @classmethod
    def version_set(cls, values: Iterable[KernelVersion | str]) -> FactValue:
        parsed = {
            KernelVersion.parse(v) if isinstance(v, str) else v
            for v in values
        }
        return cls(ValueKind.VERSION_SET, tuple(sorted(parsed)))

    @classmethod
    def string_set(cls, values: Iterable[str]) -> FactValue:
        return cls(ValueKind.STRING_SET, tuple(sorted(set(values))))

    def display(self) -> str:
        """Human-readable rendering used in rationales and reports."""
        if self.kind == ValueKind.BOOLEAN:
            return "yes" if self.data else "no"
        if self.kind in (ValueKind.VERSION_SET, ValueKind.STRING_SET):
            return ", ".join(str(v) for v in self.data) or "(none)"
        return str(self.data)

    def to_json(self) -> Any:
        """JSON-compatible payload (kind is serialized separately)."""
        if self.kind == ValueKind.VERSION:
            return self.data.raw
        if self.kind == ValueKind.VERSION_SET:
            return [v.raw for v in self.data]
        if self.kind == ValueKind.STRING_SET:
            return list(self.data)
        return self.data

    @classmethod
    def from_json(cls, kind: str, payload: Any) -> FactValue:
        try:
            value_kind = ValueKind(kind)
        except ValueError:
            raise FactValidationError(f"Unknown value kind: {kind!r}")

        if value_kind == ValueKind.VERSION:
            return cls.version(payload)
        if value_kind == ValueKind.VERSION_SET:
            return cls.version_set(payload)
        if value_kind == ValueKind.STRING_SET:
            return cls.string_set(payload)
        return cls(value_kind, payload)

    def canonical(self) -> str:
        """Stable text form used for hashing and last-resort tie-breaks."""
        return f"{self.kind.value}:{self.display()}"


# =============================================================================
# FACT
# =============================================================================

_KEY_RE = re.compile(r"^[a-z0-9_]+(\.[a-z0-9_-]+)+$")


@dataclass(frozen=True)
class Fact:
    """
    One normalized, keyed observation.

    Invariants enforced:
    1. key is a dotted lower-case identifier
    2. value is a FactValue
    3. source names the probe that produced it
    4. timestamp is timezone-aware
    """
    key: str
    value: FactValue
    source: str
    confidence: Confidence
    timestamp: datetime

    def __post_init__(self):
        if not self.key or not _KEY_RE.match(self.key):
            raise FactValidationError(f"Invalid fact key: {self.key!r}")
        if not isinstance(self.value, FactValue):
            raise FactValidationError(
                f"value must be FactValue, got {type(self.value).__name__}"
            )
        if not self.source:
            raise FactValidationError(f"source is required for fact {self.key}")
        if not isinstance(self.confidence, Confidence):
            raise FactValidationError(
                f"confidence must be Confidence, got {type(self.confidence)}"
            )
        if self.timestamp is None or self.timestamp.tzinfo is None:
            raise FactValidationError(f"timestamp for {self.key} must be timezone-aware")

    def downgraded(self) -> Fact:
        """Return a copy of this fact marked STALE."""
        return Fact(
            key=self.key,
            value=self.value,
            source=self.source,
            confidence=Confidence.STALE,
            timestamp=self.timestamp,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_fact(
    key: str,
    value: FactValue,
    source: str,
    timestamp: Optional[datetime] = None,
) -> Fact:
    """
    Factory for a CERTAIN fact, read directly from the system.
    """
    return Fact(
        key=key,
        value=value,
        source=source,
        confidence=Confidence.CERTAIN,
        timestamp=timestamp or utcnow(),
    )


def create_inferred_fact(
    key: str,
    value: FactValue,
    source: str,
    timestamp: Optional[datetime] = None,
) -> Fact:
    """
    Factory for an INFERRED fact, derived from other observations.
    """
    return Fact(
        key=key,
        value=value,
        source=source,
        confidence=Confidence.INFERRED,
        timestamp=timestamp or utcnow(),
    )


# =============================================================================
# PROBE RESULTS
# =============================================================================

class ProbeFailureKind(Enum):
    """Why a probe did not complete."""
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    IO_ERROR = "io_error"
    PARSE_ERROR = "parse_error"


class ProbeError(Exception):
    """Raised inside a probe to report a typed failure."""

    def __init__(self, kind: ProbeFailureKind, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"[{kind.value}] {reason}")


@dataclass(frozen=True)
class ProbeFailure:
    """Audit record of one failed probe."""
    probe_id: str
    kind: ProbeFailureKind
    reason: str


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome of one probe run: either Ok(facts) or Failed(reason, partial facts).

    expected_keys lists the keys the probe normally supplies; the Aggregator
    uses it to compute which keys a partial pass is missing.
    """
    probe_id: str
    facts: tuple[Fact, ...] = ()
    expected_keys: frozenset[str] = frozenset()
    failure: Optional[ProbeFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(
        cls,
        probe_id: str,
        facts: Iterable[Fact],
        expected_keys: Iterable[str] = (),
    ) -> ProbeResult:
        return cls(
            probe_id=probe_id,
            facts=tuple(facts),
            expected_keys=frozenset(expected_keys),
        )

    @classmethod
    def failed(
        cls,
        probe_id: str,
        kind: ProbeFailureKind,
        reason: str,
        partial: Iterable[Fact] = (),
        expected_keys: Iterable[str] = (),
    ) -> ProbeResult:
        return cls(
            probe_id=probe_id,
            facts=tuple(partial),
            expected_keys=frozenset(expected_keys),
            failure=ProbeFailure(probe_id=probe_id, kind=kind, reason=reason),
        )


# =============================================================================
# SYSTEM SNAPSHOT
# =============================================================================

@dataclass(frozen=True, eq=False)
class SystemSnapshot:
    """
    The immutable aggregate of all facts from one correlation pass.

    A new pass produces a new snapshot. snapshot_id is derived from the
    fact contents, so two passes that observed the same facts share an id.
    """
    facts: Mapping[str, Fact]
    partial: bool
    missing: frozenset[str]
    failures: tuple[ProbeFailure, ...]
    superseded: Mapping[str, tuple[Fact, ...]]
    probe_ids: tuple[str, ...]
    created_at: datetime

    def __post_init__(self):
        object.__setattr__(self, "facts", MappingProxyType(dict(self.facts)))
        object.__setattr__(self, "superseded", MappingProxyType(dict(self.superseded)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SystemSnapshot):
            return NotImplemented
        return (
            dict(self.facts) == dict(other.facts)
            and self.partial == other.partial
            and self.missing == other.missing
            and self.failures == other.failures
            and dict(self.superseded) == dict(other.superseded)
            and self.probe_ids == other.probe_ids
            and self.created_at == other.created_at
        )

    __hash__ = None

    @property
    def snapshot_id(self) -> str:
        digest = hashlib.sha256()
        for key in sorted(self.facts):
            fact = self.facts[key]
            digest.update(
                f"{key}={fact.value.canonical()}|{fact.source}|{fact.confidence.value}\n".encode()
            )
        return f"snap_{digest.hexdigest()[:12]}"

    def has(self, key: str) -> bool:
        return key in self.facts

    def get(self, key: str) -> Optional[Fact]:
        return self.facts.get(key)

    def value(self, key: str, default: Any = None) -> Any:
        """Return the raw payload of a fact, or default if absent."""
        fact = self.facts.get(key)
        return fact.value.data if fact is not None else default

    def keys(self) -> frozenset[str]:
        return frozenset(self.facts)

    def missing_for(self, required: Iterable[str]) -> frozenset[str]:
        """Which of the required keys this snapshot cannot supply."""
        return frozenset(k for k in required if k not in self.facts)
