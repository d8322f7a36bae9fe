"""
Kernel probe for Nephyra.

Observes:
    - the running kernel release (/proc/sys/kernel/osrelease)
    - installed kernels (one directory per release under /lib/modules)
    - whether headers for the running kernel are present (modules build dir)
    - whether an NVIDIA module was built for the running kernel

Only observation happens here. Whether any of this is a problem is
decided by the rule engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .. import keys
from ..facts import (
    FactValidationError,
    FactValue,
    KernelVersion,
    ProbeFailureKind,
    ProbeResult,
    create_fact,
    create_inferred_fact,
)
from .base import FactCollector, SysrootMixin, WhichFunc, which
from .packages import detect_package_manager

logger = logging.getLogger(__name__)

MODULE_DIRS = ("/lib/modules", "/usr/lib/modules")


def kernel_package_name(kernel_release: str) -> str:
    """
    Heuristic kernel package base name from a release string.

    The distro suffix is assumed to start at the first letter:
        "6.15.2-2-cachyos-eevdf-lto" -> "linux-cachyos-eevdf-lto"
        "6.6.1-lts"                  -> "linux-lts"
    """
    for i, char in enumerate(kernel_release):
        if char.isalpha():
            return f"linux-{kernel_release[i:]}"
    return f"linux-{kernel_release}"


def headers_package_name(kernel_release: str, manager: Optional[str] = None) -> str:
    """Name of the headers package for a kernel under a given package manager."""
    if manager == "apt":
        return f"linux-headers-{kernel_release}"
    if manager in ("dnf", "zypper"):
        return "kernel-devel"
    if manager == "apk":
        return "linux-headers"
    if manager == "emerge":
        return "sys-kernel/linux-headers"
    return f"{kernel_package_name(kernel_release)}-headers"


class KernelProbe(SysrootMixin):
    """Running and installed kernels, plus headers/module presence."""

    probe_id = "kernel"
    provides = frozenset({keys.KERNEL_ACTIVE_VERSION, keys.KERNEL_INSTALLED_VERSIONS})

    def __init__(self, sysroot: str | Path = "/", which: WhichFunc = which):
        self.sysroot = Path(sysroot)
        self.which = which

    def run(self, timeout: float) -> ProbeResult:
        collector = FactCollector(self.probe_id, self.provides)
        problems: list[str] = []

        active = self._read_active()
        if active is None:
            problems.append("cannot read /proc/sys/kernel/osrelease")
        else:
            collector.add(create_fact(
                keys.KERNEL_ACTIVE_VERSION, FactValue.version(active), self.probe_id
            ))

        modules_root = self._modules_root()
        if modules_root is None:
            problems.append("no kernel modules directory found")
        else:
            installed = self._installed_versions(modules_root)
            collector.add(create_fact(
                keys.KERNEL_INSTALLED_VERSIONS, FactValue.version_set(installed), self.probe_id
            ))

        if active is not None and modules_root is not None:
            self._observe_active_tree(collector, modules_root, active)

        if problems:
            return collector.failed(ProbeFailureKind.IO_ERROR, "; ".join(problems))
        return collector.success()

    def _read_active(self) -> Optional[KernelVersion]:
        text = self.read_text("/proc/sys/kernel/osrelease")
        if not text:
            return None
        try:
            return KernelVersion.parse(text)
        except FactValidationError:
            logger.debug("Unparseable kernel release: %r", text)
            return None

    def _modules_root(self) -> Optional[Path]:
        for candidate in MODULE_DIRS:
            path = self.path(candidate)
            if path.is_dir():
                return path
        return None

    def _installed_versions(self, modules_root: Path) -> list[KernelVersion]:
        versions = []
        for entry in sorted(modules_root.iterdir()):
            if not entry.is_dir():
                continue
            try:
                versions.append(KernelVersion.parse(entry.name))
            except FactValidationError:
                logger.debug("Skipping non-kernel directory %s", entry)
        return versions

    def _observe_active_tree(
        self,
        collector: FactCollector,
        modules_root: Path,
        active: KernelVersion,
    ) -> None:
        tree = modules_root / active.raw
        if not tree.is_dir():
            # Running kernel's modules were removed by an upgrade; nothing
            # below can be observed.
            return

        collector.add(create_fact(
            keys.KERNEL_HEADERS_INSTALLED,
            FactValue.boolean((tree / "build").exists()),
            self.probe_id,
        ))

        manager = detect_package_manager(self.which)
        collector.add(create_inferred_fact(
            keys.KERNEL_HEADERS_PACKAGE,
            FactValue.string(headers_package_name(active.raw, manager)),
            self.probe_id,
        ))

        has_nvidia = any(tree.rglob("nvidia*.ko*"))
        collector.add(create_fact(
            keys.KERNEL_MODULES_NVIDIA, FactValue.boolean(has_nvidia), self.probe_id
        ))
