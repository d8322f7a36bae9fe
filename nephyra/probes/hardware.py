"""
Hardware and driver probe.

    - CPU model and memory from /proc/cpuinfo and /proc/meminfo
    - display controllers from /sys/bus/pci/devices (class 0x03xxxx)
    - NVIDIA driver state: loaded (/proc/modules) and configured
      (modprobe.d options or a DKMS source tree under /usr/src)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .. import keys
from ..facts import FactValue, ProbeFailureKind, ProbeResult, create_fact, create_inferred_fact
from .base import FactCollector, SysrootMixin

logger = logging.getLogger(__name__)

PCI_DISPLAY_CLASS_PREFIX = "0x03"

GPU_VENDORS = {
    "0x10de": "nvidia",
    "0x1002": "amd",
    "0x8086": "intel",
}

MODPROBE_DIRS = ("/etc/modprobe.d", "/usr/lib/modprobe.d")


def parse_cpu_model(cpuinfo: str) -> Optional[str]:
    for line in cpuinfo.splitlines():
        key, _, value = line.partition(":")
        if key.strip() in ("model name", "Model", "cpu model") and value.strip():
            return value.strip()
    return None


def parse_meminfo(meminfo: str) -> dict[str, int]:
    """meminfo fields in KiB, e.g. {"MemTotal": 16314396, ...}."""
    values = {}
    for line in meminfo.splitlines():
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[key.strip()] = int(parts[0])
    return values


def modprobe_mentions_nvidia(text: str) -> bool:
    """True if a modprobe.d file configures (rather than blacklists) nvidia."""
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        words = line.split()
        if words[0] in ("options", "install", "softdep", "alias") and any(
            "nvidia" in word for word in words[1:]
        ):
            return True
    return False


class HardwareProbe(SysrootMixin):
    """CPU, memory, GPUs and NVIDIA driver presence."""

    probe_id = "hardware"
    provides = frozenset({keys.HW_CPU_MODEL})

    def __init__(self, sysroot: str | Path = "/"):
        self.sysroot = Path(sysroot)

    def run(self, timeout: float) -> ProbeResult:
        collector = FactCollector(self.probe_id, self.provides)

        cpuinfo = self.read_text("/proc/cpuinfo")
        if cpuinfo is None:
            return collector.failed(ProbeFailureKind.IO_ERROR, "cannot read /proc/cpuinfo")

        model = parse_cpu_model(cpuinfo)
        if model is not None:
            collector.add(create_fact(keys.HW_CPU_MODEL, FactValue.string(model), self.probe_id))

        meminfo = parse_meminfo(self.read_text("/proc/meminfo") or "")
        if "MemTotal" in meminfo:
            collector.add(create_fact(
                keys.HW_MEMORY_TOTAL_KIB, FactValue.numeric(meminfo["MemTotal"]), self.probe_id
            ))
        if "MemAvailable" in meminfo:
            collector.add(create_fact(
                keys.HW_MEMORY_AVAILABLE_KIB, FactValue.numeric(meminfo["MemAvailable"]), self.probe_id
            ))

        vendors = self._gpu_vendors()
        if vendors is not None:
            collector.add(create_fact(
                keys.HW_GPU_VENDORS, FactValue.string_set(vendors), self.probe_id
            ))

        modules = self.read_text("/proc/modules")
        if modules is not None:
            loaded = any(line.split(" ", 1)[0] == "nvidia" for line in modules.splitlines())
            collector.add(create_fact(
                keys.DRIVER_NVIDIA_LOADED, FactValue.boolean(loaded), self.probe_id
            ))

        collector.add(create_inferred_fact(
            keys.DRIVER_NVIDIA_CONFIGURED,
            FactValue.boolean(self._nvidia_configured()),
            self.probe_id,
        ))

        if model is None:
            return collector.failed(ProbeFailureKind.PARSE_ERROR, "no CPU model in /proc/cpuinfo")
        return collector.success()

    def _gpu_vendors(self) -> Optional[set[str]]:
        devices = self.path("/sys/bus/pci/devices")
        if not devices.is_dir():
            return None

        vendors = set()
        for device in sorted(devices.iterdir()):
            try:
                pci_class = (device / "class").read_text().strip()
                vendor = (device / "vendor").read_text().strip()
            except (FileNotFoundError, NotADirectoryError):
                continue
            if pci_class.startswith(PCI_DISPLAY_CLASS_PREFIX):
                vendors.add(GPU_VENDORS.get(vendor.lower(), vendor.lower()))
        return vendors

    def _nvidia_configured(self) -> bool:
        for directory in MODPROBE_DIRS:
            root = self.path(directory)
            if not root.is_dir():
                continue
            for conf in sorted(root.glob("*.conf")):
                if modprobe_mentions_nvidia(conf.read_text(encoding="utf-8", errors="replace")):
                    return True

        src = self.path("/usr/src")
        return src.is_dir() and any(src.glob("nvidia-*"))
