"""
Power-source probe.

Reports AC and battery state from /sys/class/power_supply and derives the
governor that suits the current power source and configured workload
class. The recommendation is an INFERRED fact; comparing it with the
active governor is left to the rule engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

from .. import keys
from ..facts import FactValue, ProbeResult, create_fact, create_inferred_fact
from .base import FactCollector, SysrootMixin

logger = logging.getLogger(__name__)

POWER_SUPPLY_ROOT = "/sys/class/power_supply"
CPU_ROOT = "/sys/devices/system/cpu"

# workload class -> governor preferred while on AC
WORKLOAD_GOVERNORS = {
    "performance": "performance",
    "balanced": "schedutil",
    "powersave": "powersave",
}

# used when the preferred governor is not offered by the cpufreq driver
GOVERNOR_FALLBACKS = {
    "schedutil": ("ondemand", "conservative", "powersave"),
    "ondemand": ("schedutil", "conservative", "powersave"),
    "powersave": ("conservative",),
    "performance": (),
}


def recommend_governor(
    ac_online: bool,
    workload_class: str,
    available: Iterable[str] = (),
) -> str:
    """
    Governor matching the power source and workload.

    On battery the answer is always powersave. On AC it follows the
    workload class. If the cpufreq driver offers a restricted set (as
    intel_pstate does), the first available fallback is chosen.
    """
    preferred = "powersave" if not ac_online else WORKLOAD_GOVERNORS.get(workload_class, "schedutil")

    offered = set(available)
    if not offered or preferred in offered:
        return preferred
    for fallback in GOVERNOR_FALLBACKS.get(preferred, ()):
        if fallback in offered:
            return fallback
    return preferred


class PowerProbe(SysrootMixin):
    """AC/battery state and the derived governor recommendation."""

    probe_id = "power"
    provides = frozenset({keys.POWER_AC_ONLINE, keys.POWER_PROFILE_RECOMMENDED})

    def __init__(self, sysroot: str | Path = "/", workload_class: str = "balanced"):
        self.sysroot = Path(sysroot)
        self.workload_class = workload_class

    def run(self, timeout: float) -> ProbeResult:
        collector = FactCollector(self.probe_id, self.provides)

        ac_online: Optional[bool] = None
        battery: Optional[Path] = None

        root = self.path(POWER_SUPPLY_ROOT)
        supplies = sorted(root.iterdir()) if root.is_dir() else []
        for supply in supplies:
            # Peripheral batteries (mice, headsets) say nothing about the host
            if _read(supply / "scope") == "Device":
                continue
            kind = _read(supply / "type")
            if kind in ("Mains", "USB", "USB_C") and _read(supply / "online") is not None:
                ac_online = bool(ac_online) or _read(supply / "online") == "1"
            elif kind == "Battery" and battery is None:
                battery = supply

        if ac_online is not None:
            collector.add(create_fact(
                keys.POWER_AC_ONLINE, FactValue.boolean(ac_online), self.probe_id
            ))
        else:
            # No mains adapter is reported. Without a battery this is a
            # desktop or server running from the wall.
            ac_online = battery is None or _read(battery / "status") != "Discharging"
            collector.add(create_inferred_fact(
                keys.POWER_AC_ONLINE, FactValue.boolean(ac_online), self.probe_id
            ))

        collector.add(create_fact(
            keys.POWER_BATTERY_PRESENT, FactValue.boolean(battery is not None), self.probe_id
        ))
        if battery is not None:
            self._observe_battery(collector, battery)

        recommended = recommend_governor(ac_online, self.workload_class, self._available_governors())
        collector.add(create_inferred_fact(
            keys.POWER_PROFILE_RECOMMENDED, FactValue.enum(recommended), self.probe_id
        ))

        return collector.success()

    def _observe_battery(self, collector: FactCollector, battery: Path) -> None:
        capacity = _read(battery / "capacity")
        if capacity is not None and capacity.isdigit():
            collector.add(create_fact(
                keys.POWER_BATTERY_CAPACITY, FactValue.numeric(int(capacity)), self.probe_id
            ))
        status = _read(battery / "status")
        if status:
            collector.add(create_fact(
                keys.POWER_BATTERY_STATUS, FactValue.enum(status), self.probe_id
            ))
        health = _read(battery / "health")
        if health:
            collector.add(create_fact(
                keys.POWER_BATTERY_HEALTH, FactValue.enum(health), self.probe_id
            ))

    def _available_governors(self) -> set[str]:
        available: set[str] = set()
        for policy in self.path(CPU_ROOT).glob("cpu[0-9]*/cpufreq"):
            choices = _read(policy / "scaling_available_governors")
            if choices:
                available.update(choices.split())
        return available


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, NotADirectoryError, PermissionError):
        return None
