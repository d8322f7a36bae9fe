"""
Remediation hints.

Per-rule text telling a human what they could run. Commands are chosen for
the detected package manager and bootloader. Nephyra never executes any of
them.
"""

from __future__ import annotations

from typing import Callable, Optional

from .. import keys
from ..domain import Finding
from ..facts import SystemSnapshot
from ..probes.kernel import headers_package_name

INSTALL_COMMANDS = {
    "pacman": "sudo pacman -S {package}",
    "apt": "sudo apt install {package}",
    "dnf": "sudo dnf install {package}",
    "apk": "sudo apk add {package}",
    "zypper": "sudo zypper install {package}",
    "emerge": "sudo emerge --ask {package}",
}

ORPHAN_COMMANDS = {
    "pacman": "sudo pacman -Rns {packages}",
    "apt": "sudo apt autoremove",
    "dnf": "sudo dnf autoremove",
    "zypper": "sudo zypper remove --clean-deps {packages}",
    "emerge": "sudo emerge --ask --depclean",
}

UPGRADE_COMMANDS = {
    "pacman": "sudo pacman -Syu",
    "apt": "sudo apt update && sudo apt upgrade",
    "dnf": "sudo dnf upgrade",
    "apk": "sudo apk upgrade",
    "zypper": "sudo zypper update",
    "emerge": "sudo emerge --ask --update --deep --newuse @world",
}

BOOT_COMMANDS = {
    "grub": "sudo grub-mkconfig -o /boot/grub/grub.cfg",
    "systemd-boot": "bootctl list, then: sudo bootctl set-default <entry>.conf",
    "refind": "edit default_selection in refind.conf",
    "syslinux": "edit DEFAULT in syslinux.cfg",
    "lilo": "edit default= in /etc/lilo.conf, then: sudo lilo",
}


def _manager(snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    if snapshot is None:
        return None
    return snapshot.value(keys.PKG_MANAGER)


def _kernel_hint(finding: Finding, snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    return f"Reboot into {finding.parameters['newest']} when convenient."


def _headers_hint(finding: Finding, snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    params = finding.parameters
    manager = _manager(snapshot)

    if params.get("problem") == "module":
        if params.get("built") == "no":
            return "Rebuild the driver: sudo dkms autoinstall, then: sudo modprobe nvidia"
        return "Load the driver: sudo modprobe nvidia"

    package = params.get("package") or headers_package_name(params["active"], manager)
    template = INSTALL_COMMANDS.get(manager or "")
    if template is None:
        return f"Install the {package} package with your package manager."
    return template.format(package=package)


def _governor_hint(finding: Finding, snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    return f"sudo cpupower frequency-set -g {finding.parameters['recommended']}"


def _boot_hint(finding: Finding, snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    loader = finding.parameters.get("loader", "unknown")
    if loader == "grub" and _manager(snapshot) == "apt":
        return "sudo update-grub"
    return BOOT_COMMANDS.get(loader)


def _orphans_hint(finding: Finding, snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    template = ORPHAN_COMMANDS.get(_manager(snapshot) or "")
    if template is None:
        return None
    return template.format(packages=finding.parameters.get("packages", ""))


def _updates_hint(finding: Finding, snapshot: Optional[SystemSnapshot]) -> Optional[str]:
    return UPGRADE_COMMANDS.get(_manager(snapshot) or "")


HINTS: dict[str, Callable[[Finding, Optional[SystemSnapshot]], Optional[str]]] = {
    "kernel.active-not-newest": _kernel_hint,
    "kernel.headers-missing": _headers_hint,
    "power.governor-mismatch": _governor_hint,
    "boot.default-entry": _boot_hint,
    "packages.orphaned": _orphans_hint,
    "packages.updates-pending": _updates_hint,
}


def remediation_hint(finding: Finding, snapshot: Optional[SystemSnapshot] = None) -> Optional[str]:
    """Suggested action for a finding, or None when there is nothing to suggest."""
    hint = HINTS.get(finding.rule_id)
    if hint is None:
        return None
    return hint(finding, snapshot)
