"""
Probe interface and shared helpers for Nephyra.

A probe is an independent data-gathering unit for one subsystem. The
engine only relies on this contract:

    probe_id  — stable string id, used for priority tie-breaking
    provides  — keys the probe normally supplies (for `missing` tracking)
    run(timeout) -> ProbeResult

Probes read from a configurable sysroot and run commands through an
injectable runner so they can be exercised against fake trees in tests.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, runtime_checkable

from ..facts import Fact, ProbeError, ProbeFailureKind, ProbeResult

logger = logging.getLogger(__name__)


@runtime_checkable
class Probe(Protocol):
    """The single capability every probe implements."""
    probe_id: str
    provides: frozenset[str]

    def run(self, timeout: float) -> ProbeResult:
        ...


# =============================================================================
# COMMAND EXECUTION
# =============================================================================

@dataclass(frozen=True)
class CommandOutput:
    """Captured result of one external command."""
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str = ""


CommandRunner = Callable[[list[str], float], CommandOutput]
WhichFunc = Callable[[str], Optional[str]]


def run_command(args: list[str], timeout: float) -> CommandOutput:
    """
    Run a command without a shell and capture its output.

    Raises:
        ProbeError: TIMEOUT if the command outlives `timeout`,
                    IO_ERROR if it cannot be started
    """
    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        raise ProbeError(ProbeFailureKind.TIMEOUT, f"{args[0]} did not finish in {timeout:g}s")
    except OSError as e:
        raise ProbeError(ProbeFailureKind.IO_ERROR, f"cannot run {args[0]}: {e}")

    return CommandOutput(
        args=tuple(args),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


def which(name: str) -> Optional[str]:
    return shutil.which(name)


# =============================================================================
# FILESYSTEM HELPERS
# =============================================================================

class SysrootMixin:
    """Resolves absolute host paths under a configurable root."""

    sysroot: Path

    def path(self, absolute: str) -> Path:
        return self.sysroot / absolute.lstrip("/")

    def read_text(self, absolute: str) -> Optional[str]:
        """Read and strip a small text file; None if it does not exist."""
        target = self.path(absolute)
        try:
            return target.read_text(encoding="utf-8", errors="replace").strip()
        except (FileNotFoundError, NotADirectoryError):
            return None


class FactCollector:
    """
    Accumulates facts while a probe runs.

    On an unexpected parse or I/O problem the probe can still hand back
    what it gathered so far as a partial result.
    """

    def __init__(self, probe_id: str, expected_keys: frozenset[str]):
        self.probe_id = probe_id
        self.expected_keys = expected_keys
        self.facts: list[Fact] = []

    def add(self, fact: Fact) -> None:
        self.facts.append(fact)

    def success(self) -> ProbeResult:
        return ProbeResult.success(self.probe_id, self.facts, self.expected_keys)

    def failed(self, kind: ProbeFailureKind, reason: str) -> ProbeResult:
        logger.debug(
            "Probe %s failing with %d partial fact(s): %s",
            self.probe_id, len(self.facts), reason,
        )
        return ProbeResult.failed(
            self.probe_id, kind, reason, partial=self.facts, expected_keys=self.expected_keys
        )
