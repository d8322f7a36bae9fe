"""
CPU frequency governor probe.

Reads cpufreq state from sysfs. All online CPUs normally share one
governor; when they differ, the most common one is reported.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Optional

from .. import keys
from ..facts import FactValue, ProbeFailureKind, ProbeResult, create_fact
from .base import FactCollector, SysrootMixin

logger = logging.getLogger(__name__)

CPU_ROOT = "/sys/devices/system/cpu"


class GovernorProbe(SysrootMixin):
    """Active scaling governor, available governors and cpufreq driver."""

    probe_id = "governor"
    provides = frozenset({keys.POWER_GOVERNOR_CURRENT})

    def __init__(self, sysroot: str | Path = "/"):
        self.sysroot = Path(sysroot)

    def run(self, timeout: float) -> ProbeResult:
        collector = FactCollector(self.probe_id, self.provides)

        cpu_root = self.path(CPU_ROOT)
        policies = sorted(cpu_root.glob("cpu[0-9]*/cpufreq"))
        if not policies:
            return collector.failed(
                ProbeFailureKind.IO_ERROR, f"no cpufreq interface under {CPU_ROOT}"
            )

        governors: Counter[str] = Counter()
        available: set[str] = set()
        driver = None

        for policy in policies:
            governor = _read(policy / "scaling_governor")
            if governor:
                governors[governor] += 1
            choices = _read(policy / "scaling_available_governors")
            if choices:
                available.update(choices.split())
            if driver is None:
                driver = _read(policy / "scaling_driver")

        if not governors:
            return collector.failed(ProbeFailureKind.PARSE_ERROR, "scaling_governor unreadable")

        # Count ties resolve alphabetically
        current = sorted(governors.items(), key=lambda item: (-item[1], item[0]))[0][0]
        if len(governors) > 1:
            logger.debug("Mixed governors across CPUs: %s", dict(governors))

        collector.add(create_fact(
            keys.POWER_GOVERNOR_CURRENT, FactValue.enum(current), self.probe_id
        ))
        if available:
            collector.add(create_fact(
                keys.POWER_GOVERNOR_AVAILABLE, FactValue.string_set(available), self.probe_id
            ))
        if driver:
            collector.add(create_fact(
                keys.POWER_CPUFREQ_DRIVER, FactValue.string(driver), self.probe_id
            ))

        return collector.success()


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, NotADirectoryError, PermissionError):
        return None
