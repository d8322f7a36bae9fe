"""
Probes for Nephyra.

Each probe observes one subsystem and returns a ProbeResult. PROBES maps
probe ids to their classes in default priority order.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..config import ConfigError, EngineConfig
from .base import CommandOutput, Probe, run_command, which
from .bootloader import BootloaderProbe
from .governor import GovernorProbe
from .hardware import HardwareProbe
from .kernel import KernelProbe
from .packages import PackagesProbe
from .power import PowerProbe

PROBES = {
    KernelProbe.probe_id: KernelProbe,
    PackagesProbe.probe_id: PackagesProbe,
    BootloaderProbe.probe_id: BootloaderProbe,
    GovernorProbe.probe_id: GovernorProbe,
    PowerProbe.probe_id: PowerProbe,
    HardwareProbe.probe_id: HardwareProbe,
}


def build_probes(
    config: EngineConfig,
    only: Optional[Iterable[str]] = None,
) -> list[Probe]:
    """
    Instantiate the built-in probes for a pass.

    Args:
        config: Supplies sysroot and workload class
        only: Restrict to these probe ids (default: all)

    Raises:
        ConfigError: If `only` names an unknown probe
    """
    selected = list(PROBES) if only is None else list(only)
    unknown = [probe_id for probe_id in selected if probe_id not in PROBES]
    if unknown:
        raise ConfigError(f"Unknown probe(s): {unknown}; available: {list(PROBES)}")

    probes: list[Probe] = []
    for probe_id in selected:
        if probe_id == PowerProbe.probe_id:
            probes.append(PowerProbe(config.sysroot, workload_class=config.workload_class))
        else:
            probes.append(PROBES[probe_id](config.sysroot))
    return probes


__all__ = [
    "PROBES",
    "build_probes",
    "Probe",
    "CommandOutput",
    "run_command",
    "which",
    "BootloaderProbe",
    "GovernorProbe",
    "HardwareProbe",
    "KernelProbe",
    "PackagesProbe",
    "PowerProbe",
]
