"""
Built-in correlation rules.

Registration order below is evaluation order:
    1. kernel.active-not-newest
    2. kernel.headers-missing
    3. power.governor-mismatch
    4. boot.default-entry
    5. packages.orphaned
    6. packages.updates-pending

Each rule reads facts from the snapshot and cites the keys it used.
"""

from __future__ import annotations

import logging

from .. import keys
from ..domain import Finding, Severity, Subsystem
from ..facts import SystemSnapshot
from .engine import RuleRegistry

logger = logging.getLogger(__name__)

BUILTIN_RULES = RuleRegistry()

UNINSPECTABLE_LOADERS = ("unknown", "u-boot")

# Orphans matching these are tied to the kernel or a driver
KERNEL_PACKAGE_PREFIXES = ("linux", "kernel")
DRIVER_PACKAGE_MARKERS = ("nvidia", "dkms", "headers", "firmware")


def _cite(snapshot: SystemSnapshot, *candidates: str) -> tuple[str, ...]:
    """Evidence keys, keeping only those the snapshot actually holds."""
    return tuple(key for key in candidates if snapshot.has(key))


def is_kernel_or_driver_package(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith(KERNEL_PACKAGE_PREFIXES) or any(
        marker in lowered for marker in DRIVER_PACKAGE_MARKERS
    )


# =============================================================================
# KERNEL
# =============================================================================

@BUILTIN_RULES.rule(
    "kernel.active-not-newest",
    requires=[keys.KERNEL_ACTIVE_VERSION, keys.KERNEL_INSTALLED_VERSIONS],
    subsystem=Subsystem.BOOT,
)
def kernel_active_not_newest(snapshot: SystemSnapshot):
    """Running kernel is older than the newest installed one."""
    if snapshot.value(keys.KERNEL_PIN):
        logger.debug("Kernel pinned (%s), not flagging older active kernel",
                     snapshot.get(keys.KERNEL_PIN).value.display())
        return []

    active = snapshot.value(keys.KERNEL_ACTIVE_VERSION)
    installed = snapshot.value(keys.KERNEL_INSTALLED_VERSIONS)
    if not installed:
        return []

    newest = max(installed)
    evidence = (keys.KERNEL_ACTIVE_VERSION, keys.KERNEL_INSTALLED_VERSIONS)

    if active not in installed:
        return [Finding(
            rule_id="kernel.active-not-newest",
            severity=Severity.WARNING,
            evidence=evidence,
            message_template=(
                "active kernel {active} is no longer installed; "
                "a reboot is pending ({newest} available)"
            ),
            affected_subsystem=Subsystem.BOOT,
            params={"active": active, "newest": newest},
        )]

    if newest > active:
        return [Finding(
            rule_id="kernel.active-not-newest",
            severity=Severity.WARNING,
            evidence=evidence,
            message_template="active kernel is not the newest installed ({newest} available)",
            affected_subsystem=Subsystem.BOOT,
            params={"active": active, "newest": newest},
        )]

    return []


def _nvidia_param(configured) -> str:
    if configured is None:
        return "unknown"
    return "configured" if configured else "not configured"


@BUILTIN_RULES.rule(
    "kernel.headers-missing",
    requires=[keys.KERNEL_ACTIVE_VERSION, keys.KERNEL_HEADERS_INSTALLED],
    subsystem=Subsystem.DRIVER,
)
def kernel_headers_missing(snapshot: SystemSnapshot):
    """Headers or the NVIDIA module for the running kernel are absent."""
    active = snapshot.value(keys.KERNEL_ACTIVE_VERSION)
    # None when the hardware probe did not report; never read as "not configured"
    nvidia_state = snapshot.value(keys.DRIVER_NVIDIA_CONFIGURED)
    nvidia_configured = nvidia_state is True

    if not snapshot.value(keys.KERNEL_HEADERS_INSTALLED):
        message = "headers for active kernel {active} are not installed"
        if nvidia_configured:
            message += "; the configured NVIDIA driver cannot be built"
        elif nvidia_state is None:
            message += "; NVIDIA driver state unknown"
        return [Finding(
            rule_id="kernel.headers-missing",
            severity=Severity.CRITICAL if nvidia_configured else Severity.INFO,
            evidence=_cite(
                snapshot,
                keys.KERNEL_ACTIVE_VERSION,
                keys.KERNEL_HEADERS_INSTALLED,
                keys.KERNEL_HEADERS_PACKAGE,
                keys.DRIVER_NVIDIA_CONFIGURED,
            ),
            message_template=message,
            affected_subsystem=Subsystem.DRIVER,
            params={
                "active": active,
                "package": snapshot.value(keys.KERNEL_HEADERS_PACKAGE, ""),
                "problem": "headers",
                "nvidia": _nvidia_param(nvidia_state),
            },
        )]

    if nvidia_configured and snapshot.value(keys.DRIVER_NVIDIA_LOADED) is False:
        return [Finding(
            rule_id="kernel.headers-missing",
            severity=Severity.CRITICAL,
            evidence=_cite(
                snapshot,
                keys.KERNEL_ACTIVE_VERSION,
                keys.KERNEL_HEADERS_INSTALLED,
                keys.DRIVER_NVIDIA_CONFIGURED,
                keys.DRIVER_NVIDIA_LOADED,
                keys.KERNEL_MODULES_NVIDIA,
            ),
            message_template="NVIDIA driver is configured but not loaded for kernel {active}",
            affected_subsystem=Subsystem.DRIVER,
            params={
                "active": active,
                "built": "yes" if snapshot.value(keys.KERNEL_MODULES_NVIDIA) else "no",
                "problem": "module",
            },
        )]

    return []


# =============================================================================
# POWER
# =============================================================================

@BUILTIN_RULES.rule(
    "power.governor-mismatch",
    requires=[keys.POWER_GOVERNOR_CURRENT, keys.POWER_PROFILE_RECOMMENDED],
    subsystem=Subsystem.INFORMATIONAL,
)
def governor_mismatch(snapshot: SystemSnapshot):
    """Active CPU governor differs from the one suited to the power source."""
    current = snapshot.value(keys.POWER_GOVERNOR_CURRENT)
    recommended = snapshot.value(keys.POWER_PROFILE_RECOMMENDED)
    if current == recommended:
        return []

    return [Finding(
        rule_id="power.governor-mismatch",
        severity=Severity.WARNING,
        evidence=_cite(
            snapshot,
            keys.POWER_GOVERNOR_CURRENT,
            keys.POWER_PROFILE_RECOMMENDED,
            keys.POWER_AC_ONLINE,
        ),
        message_template="CPU governor is {current}; {recommended} is recommended",
        affected_subsystem=Subsystem.INFORMATIONAL,
        params={"current": current, "recommended": recommended},
    )]


# =============================================================================
# BOOT
# =============================================================================

@BUILTIN_RULES.rule(
    "boot.default-entry",
    requires=[keys.BOOT_LOADER_TYPE, keys.KERNEL_ACTIVE_VERSION],
    subsystem=Subsystem.BOOT,
)
def boot_default_entry(snapshot: SystemSnapshot):
    """Bootloader default entry is missing or boots an unexpected kernel."""
    loader = snapshot.value(keys.BOOT_LOADER_TYPE)
    inspectable = snapshot.value(
        keys.BOOT_LOADER_INSPECTABLE, loader not in UNINSPECTABLE_LOADERS
    )

    if not inspectable:
        return [Finding(
            rule_id="boot.default-entry",
            severity=Severity.INFO,
            evidence=_cite(snapshot, keys.BOOT_LOADER_TYPE, keys.BOOT_LOADER_INSPECTABLE),
            message_template="bootloader {loader} not inspected; default entry unchecked",
            affected_subsystem=Subsystem.BOOT,
            params={"loader": loader},
        )]

    if not snapshot.has(keys.BOOT_DEFAULT_ENTRY):
        return [Finding(
            rule_id="boot.default-entry",
            severity=Severity.CRITICAL,
            evidence=_cite(snapshot, keys.BOOT_LOADER_TYPE, keys.BOOT_LOADER_CONFIG),
            message_template="bootloader default entry missing/unreadable",
            affected_subsystem=Subsystem.BOOT,
            params={"loader": loader},
        )]

    if not snapshot.has(keys.BOOT_DEFAULT_KERNEL):
        # Entry exists but does not name a kernel release; nothing to compare
        return []

    default_kernel = snapshot.value(keys.BOOT_DEFAULT_KERNEL)
    installed = snapshot.value(keys.KERNEL_INSTALLED_VERSIONS, ())
    target = max(installed) if installed else snapshot.value(keys.KERNEL_ACTIVE_VERSION)
    if default_kernel == target:
        return []

    return [Finding(
        rule_id="boot.default-entry",
        severity=Severity.INFO,
        evidence=_cite(
            snapshot,
            keys.BOOT_LOADER_TYPE,
            keys.BOOT_DEFAULT_ENTRY,
            keys.BOOT_DEFAULT_KERNEL,
            keys.KERNEL_INSTALLED_VERSIONS,
            keys.KERNEL_ACTIVE_VERSION,
        ),
        message_template="default boot entry {entry} boots {default}, not {target}",
        affected_subsystem=Subsystem.BOOT,
        params={
            "loader": loader,
            "entry": snapshot.value(keys.BOOT_DEFAULT_ENTRY),
            "default": default_kernel,
            "target": target,
        },
    )]


# =============================================================================
# PACKAGE HYGIENE
# =============================================================================

@BUILTIN_RULES.rule(
    "packages.orphaned",
    requires=[keys.PKG_ORPHANED],
    subsystem=Subsystem.PACKAGE_HYGIENE,
)
def packages_orphaned(snapshot: SystemSnapshot):
    """Orphaned packages, split into kernel/driver-related and the rest."""
    orphans = snapshot.value(keys.PKG_ORPHANED)
    related = [name for name in orphans if is_kernel_or_driver_package(name)]
    others = [name for name in orphans if not is_kernel_or_driver_package(name)]
    evidence = _cite(snapshot, keys.PKG_ORPHANED, keys.PKG_MANAGER)

    findings = []
    if related:
        findings.append(Finding(
            rule_id="packages.orphaned",
            severity=Severity.WARNING,
            evidence=evidence,
            message_template="{count} orphaned kernel/driver package(s): {packages}",
            affected_subsystem=Subsystem.PACKAGE_HYGIENE,
            params={"count": len(related), "packages": " ".join(related), "scope": "kernel"},
        ))
    if others:
        findings.append(Finding(
            rule_id="packages.orphaned",
            severity=Severity.INFO,
            evidence=evidence,
            message_template="{count} orphaned package(s) can be removed: {packages}",
            affected_subsystem=Subsystem.PACKAGE_HYGIENE,
            params={"count": len(others), "packages": " ".join(others), "scope": "other"},
        ))
    return findings


@BUILTIN_RULES.rule(
    "packages.updates-pending",
    requires=[keys.PKG_UPDATES_COUNT],
    subsystem=Subsystem.PACKAGE_HYGIENE,
)
def packages_updates_pending(snapshot: SystemSnapshot):
    """Package updates are available."""
    count = int(snapshot.value(keys.PKG_UPDATES_COUNT))
    if count <= 0:
        return []
    return [Finding(
        rule_id="packages.updates-pending",
        severity=Severity.INFO,
        evidence=_cite(snapshot, keys.PKG_UPDATES_COUNT, keys.PKG_MANAGER),
        message_template="{count} package update(s) pending",
        affected_subsystem=Subsystem.PACKAGE_HYGIENE,
        params={"count": count},
    )]
