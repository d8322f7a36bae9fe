"""
Aggregator for Nephyra.

Merges ProbeResults into one immutable SystemSnapshot.

Core principle (non-negotiable):
    Aggregation never fails. A failed probe removes only its own facts;
    everything else that arrived still reaches the snapshot, which is
    flagged partial and lists the keys it is missing.

Merge policy for facts sharing a key:
    1. Highest confidence (Certain > Inferred > Stale)
    2. Most recent timestamp
    3. Configured probe priority (earlier in the list wins)
    4. Canonical value text (last resort, never iteration order)
Losing candidates are kept in snapshot.superseded for audit.

Collection:
    Each probe runs on its own daemon thread. The pass awaits each one up
    to the earlier of its own deadline and the pass deadline. A probe that
    misses it is abandoned; its thread cannot hold up interpreter exit.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from ..config import EngineConfig
from ..facts import (
    Fact,
    ProbeError,
    ProbeFailureKind,
    ProbeResult,
    SystemSnapshot,
    utcnow,
)
from ..probes.base import Probe

logger = logging.getLogger(__name__)


# =============================================================================
# MERGE
# =============================================================================

def _preference_key(fact: Fact, config: EngineConfig) -> tuple:
    """
    Sort key where SMALLER means more preferred.

    Negated confidence and timestamp put the strongest, newest fact first.
    """
    return (
        -fact.confidence.rank,
        -fact.timestamp.timestamp(),
        config.probe_rank(fact.source),
        fact.source,
        fact.value.canonical(),
    )


def _apply_staleness(
    fact: Fact,
    reference_time: datetime,
    stale_after: Optional[float],
) -> Fact:
    if stale_after is None:
        return fact
    if reference_time - fact.timestamp > timedelta(seconds=stale_after):
        return fact.downgraded()
    return fact


def merge_facts(
    facts: Iterable[Fact],
    config: EngineConfig,
    reference_time: datetime,
) -> tuple[dict[str, Fact], dict[str, tuple[Fact, ...]]]:
    """
    Reconcile candidate facts per key.

    Returns:
        (winners by key, superseded candidates by key)
    """
    candidates: dict[str, list[Fact]] = {}
    for fact in facts:
        fact = _apply_staleness(fact, reference_time, config.stale_after)
        candidates.setdefault(fact.key, []).append(fact)

    winners: dict[str, Fact] = {}
    superseded: dict[str, tuple[Fact, ...]] = {}

    for key in sorted(candidates):
        ordered = sorted(candidates[key], key=lambda f: _preference_key(f, config))
        winners[key] = ordered[0]
        if len(ordered) > 1:
            superseded[key] = tuple(ordered[1:])
            logger.debug(
                "Reconciled %s: kept %s from %s over %d candidate(s)",
                key, ordered[0].value.display(), ordered[0].source, len(ordered) - 1,
            )

    return winners, superseded


def aggregate(
    results: Sequence[ProbeResult],
    config: EngineConfig,
    reference_time: Optional[datetime] = None,
) -> SystemSnapshot:
    """
    Merge probe results into a SystemSnapshot.

    The result does not depend on the order of `results`.

    Args:
        results: One ProbeResult per probe, successful or failed
        config: Engine configuration (probe priority, staleness window)
        reference_time: "Now" for staleness checks (defaults to current time)

    Returns:
        SystemSnapshot, with partial=True when any probe failed or any
        expected key is absent
    """
    if reference_time is None:
        reference_time = utcnow()

    all_facts: list[Fact] = []
    expected: set[str] = set()
    failures = []

    for result in results:
        all_facts.extend(result.facts)
        expected.update(result.expected_keys)
        if result.failure is not None:
            failures.append(result.failure)

    winners, superseded = merge_facts(all_facts, config, reference_time)
    missing = frozenset(k for k in expected if k not in winners)

    return SystemSnapshot(
        facts=winners,
        partial=bool(failures) or bool(missing),
        missing=missing,
        failures=tuple(sorted(failures, key=lambda f: f.probe_id)),
        superseded=superseded,
        probe_ids=tuple(sorted({r.probe_id for r in results})),
        created_at=reference_time,
    )


# =============================================================================
# COLLECTION
# =============================================================================

def _run_probe(probe: Probe, timeout: float) -> ProbeResult:
    """
    Invoke a probe, turning the exceptions probes are allowed to raise
    into typed failures. Anything else is a bug and propagates.
    """
    expected = probe.provides
    try:
        return probe.run(timeout)
    except ProbeError as e:
        return ProbeResult.failed(probe.probe_id, e.kind, e.reason, expected_keys=expected)
    except (OSError, subprocess.SubprocessError) as e:
        return ProbeResult.failed(
            probe.probe_id, ProbeFailureKind.IO_ERROR, str(e), expected_keys=expected
        )
    except ValueError as e:
        return ProbeResult.failed(
            probe.probe_id, ProbeFailureKind.PARSE_ERROR, str(e), expected_keys=expected
        )


def _start_probe(probe: Probe, timeout: float) -> Future:
    """Run a probe on a daemon thread; the returned Future carries its result."""
    future: Future = Future()
    future.set_running_or_notify_cancel()

    def target() -> None:
        try:
            future.set_result(_run_probe(probe, timeout))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(
        target=target, name=f"nephyra-probe-{probe.probe_id}", daemon=True
    ).start()
    return future


class Aggregator:
    """
    Starts the probes for a pass and merges what comes back.

    clock is injectable so tests can drive deadlines deterministically.
    """

    def __init__(
        self,
        config: EngineConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.clock = clock

    def collect(self, probes: Sequence[Probe]) -> list[ProbeResult]:
        """
        Run probes concurrently and wait for each within its deadline.

        A probe that misses its own deadline is Failed(Timeout). A probe
        still running when the pass deadline passes is Failed(Cancelled).
        Results come back in probe order.
        """
        if not probes:
            return []

        start = self.clock()
        pass_deadline = start + self.config.pass_timeout

        futures = [
            _start_probe(probe, self.config.timeout_for(probe.probe_id))
            for probe in probes
        ]

        return [
            self._await(probe, future, start, pass_deadline)
            for probe, future in zip(probes, futures)
        ]

    def _await(
        self,
        probe: Probe,
        future: Future,
        start: float,
        pass_deadline: float,
    ) -> ProbeResult:
        probe_deadline = start + self.config.timeout_for(probe.probe_id)
        deadline = min(probe_deadline, pass_deadline)

        try:
            result = future.result(timeout=max(0.0, deadline - self.clock()))
        except FuturesTimeoutError:
            if pass_deadline < probe_deadline:
                kind = ProbeFailureKind.CANCELLED
                reason = f"pass timeout ({self.config.pass_timeout:g}s) reached"
            else:
                kind = ProbeFailureKind.TIMEOUT
                reason = f"no result within {self.config.timeout_for(probe.probe_id):g}s"
            result = ProbeResult.failed(
                probe.probe_id, kind, reason, expected_keys=probe.provides
            )

        if result.failure is not None:
            logger.warning(
                "Probe %s failed (%s): %s",
                probe.probe_id, result.failure.kind.value, result.failure.reason,
            )
        else:
            logger.debug("Probe %s returned %d fact(s)", probe.probe_id, len(result.facts))

        return result

    def aggregate(
        self,
        results: Sequence[ProbeResult],
        reference_time: Optional[datetime] = None,
    ) -> SystemSnapshot:
        return aggregate(results, self.config, reference_time)

    def run(self, probes: Sequence[Probe]) -> SystemSnapshot:
        """Collect from all probes and build the snapshot for this pass."""
        reference_time = utcnow()
        results = self.collect(probes)
        snapshot = self.aggregate(results, reference_time)
        logger.info(
            "Snapshot %s: %d fact(s) from %d probe(s), %d failed%s",
            snapshot.snapshot_id,
            len(snapshot.facts),
            len(results),
            len(snapshot.failures),
            " (partial)" if snapshot.partial else "",
        )
        return snapshot
