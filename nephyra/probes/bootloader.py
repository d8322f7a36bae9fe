"""
Bootloader probe for Nephyra.

Detects the installed bootloader (checked in a fixed order: GRUB,
systemd-boot, rEFInd, Syslinux, LILO, U-Boot) and reads which entry it
boots by default, resolving that entry to a kernel release when the
configuration names one.

If the configuration exists but has no default entry, the probe still
succeeds and simply reports no boot.default.entry fact. The rule engine
decides what that means.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .. import keys
from ..facts import (
    FactValidationError,
    FactValue,
    KernelVersion,
    ProbeResult,
    create_fact,
    create_inferred_fact,
)
from .base import FactCollector, SysrootMixin

logger = logging.getLogger(__name__)


# (type, config path, whether default entry parsing is implemented)
BOOTLOADER_CANDIDATES: tuple[tuple[str, str, bool], ...] = (
    ("grub", "/boot/grub/grub.cfg", True),
    ("grub", "/boot/grub2/grub.cfg", True),
    ("systemd-boot", "/boot/loader/loader.conf", True),
    ("systemd-boot", "/efi/loader/loader.conf", True),
    ("refind", "/boot/efi/EFI/refind/refind.conf", True),
    ("syslinux", "/boot/syslinux/syslinux.cfg", True),
    ("lilo", "/etc/lilo.conf", True),
    ("u-boot", "/boot/boot.scr", False),
)

_VMLINUZ_RE = re.compile(r"vmlinuz-(\S+)")


def kernel_from_image(image: str) -> Optional[KernelVersion]:
    """
    Kernel release encoded in an image path, if any.

        "/boot/vmlinuz-6.8.0-zen"  -> 6.8.0-zen
        "/vmlinuz-linux-zen"       -> None (package name, not a release)
    """
    match = _VMLINUZ_RE.search(image)
    if not match:
        return None
    try:
        return KernelVersion.parse(match.group(1))
    except FactValidationError:
        return None


@dataclass(frozen=True)
class BootDefault:
    """The default entry as read from a bootloader config."""
    entry: str
    kernel: Optional[KernelVersion] = None
    inferred: bool = False


# =============================================================================
# GRUB
# =============================================================================

@dataclass(frozen=True)
class GrubMenuEntry:
    title: str
    entry_id: Optional[str]
    top_index: Optional[int]
    image: Optional[str]


_MENUENTRY_RE = re.compile(r"^\s*(menuentry|submenu)\s+['\"]([^'\"]+)['\"](.*)$")
_MENUENTRY_ID_RE = re.compile(r"\$menuentry_id_option\s+['\"]([^'\"]+)['\"]")
_SET_DEFAULT_RE = re.compile(r"^\s*set\s+default=['\"]?([^'\"\s]*)['\"]?")


def parse_grub_menu(grub_cfg: str) -> list[GrubMenuEntry]:
    """Menu entries in file order, with their top-level index when they have one."""
    entries: list[GrubMenuEntry] = []
    depth = 0
    top_index = 0
    current: Optional[dict] = None
    current_depth = 0

    for line in grub_cfg.splitlines():
        match = _MENUENTRY_RE.match(line)
        if match:
            kind, title, rest = match.groups()
            id_match = _MENUENTRY_ID_RE.search(rest)
            index = top_index if depth == 0 else None
            if depth == 0:
                top_index += 1
            if kind == "menuentry":
                current = {
                    "title": title,
                    "entry_id": id_match.group(1) if id_match else None,
                    "top_index": index,
                    "image": None,
                }
                current_depth = depth
        elif current is not None:
            stripped = line.strip()
            if stripped.startswith("linux") and current["image"] is None:
                parts = stripped.split()
                if len(parts) >= 2:
                    current["image"] = parts[1]

        depth += line.count("{") - line.count("}")
        if current is not None and depth <= current_depth:
            entries.append(GrubMenuEntry(**current))
            current = None

    return entries


def read_grub_default(grub_cfg: str, grubenv: Optional[str]) -> Optional[str]:
    """
    The entry GRUB boots by default, or None if the config names none.

    grub-mkconfig output opens with a one-shot `set default="${next_entry}"`
    branch; variable defaults other than saved_entry are skipped so the
    persistent default that follows is used.
    """
    default: Optional[str] = None
    for line in grub_cfg.splitlines():
        match = _SET_DEFAULT_RE.match(line)
        if not match:
            continue
        value = match.group(1)
        if value.startswith("$") and "saved_entry" not in value:
            continue
        default = value
        break

    if default is None:
        return None

    if "saved_entry" in default or default == "saved":
        if not grubenv:
            return None
        for line in grubenv.splitlines():
            if line.startswith("saved_entry="):
                value = line.split("=", 1)[1].strip()
                return value or None
        return None

    return default or None


def resolve_grub_default(default: str, entries: list[GrubMenuEntry]) -> Optional[KernelVersion]:
    """Find the kernel behind a GRUB default (index, id or title)."""
    for entry in entries:
        matched = (
            (default.isdigit() and entry.top_index == int(default))
            or entry.entry_id == default
            or entry.title == default
        )
        if not matched:
            continue
        if entry.image:
            kernel = kernel_from_image(entry.image)
            if kernel is not None:
                return kernel
        title_match = re.search(r"Linux\s+(\d+\.\d+\S*)", entry.title)
        if title_match:
            try:
                return KernelVersion.parse(title_match.group(1))
            except FactValidationError:
                return None
        return None
    return None


# =============================================================================
# SYSTEMD-BOOT
# =============================================================================

def parse_key_value_conf(text: str) -> dict[str, str]:
    """loader.conf / entry files: "key value" per line, first occurrence wins."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition(" ")
        values.setdefault(key.strip(), value.strip())
    return values


def entry_kernel(entry: dict[str, str]) -> Optional[KernelVersion]:
    if entry.get("version"):
        try:
            return KernelVersion.parse(entry["version"])
        except FactValidationError:
            pass
    return kernel_from_image(entry.get("linux", ""))


# =============================================================================
# PROBE
# =============================================================================

class BootloaderProbe(SysrootMixin):
    """Which bootloader is installed and what it boots by default."""

    probe_id = "bootloader"
    provides = frozenset({keys.BOOT_LOADER_TYPE})

    def __init__(self, sysroot: str | Path = "/"):
        self.sysroot = Path(sysroot)

    def detect(self) -> tuple[str, Optional[str], bool]:
        for loader, config_path, inspectable in BOOTLOADER_CANDIDATES:
            if self.path(config_path).exists():
                return loader, config_path, inspectable
        return "unknown", None, False

    def run(self, timeout: float) -> ProbeResult:
        collector = FactCollector(self.probe_id, self.provides)

        loader, config_path, inspectable = self.detect()
        collector.add(create_fact(keys.BOOT_LOADER_TYPE, FactValue.enum(loader), self.probe_id))
        collector.add(create_fact(
            keys.BOOT_LOADER_INSPECTABLE, FactValue.boolean(inspectable), self.probe_id
        ))
        if config_path is not None:
            collector.add(create_fact(
                keys.BOOT_LOADER_CONFIG, FactValue.string(config_path), self.probe_id
            ))

        if inspectable and config_path is not None:
            default = self._read_default(loader, config_path)
            if default is None:
                logger.debug("%s config %s names no default entry", loader, config_path)
            else:
                factory = create_inferred_fact if default.inferred else create_fact
                collector.add(factory(
                    keys.BOOT_DEFAULT_ENTRY, FactValue.string(default.entry), self.probe_id
                ))
                if default.kernel is not None:
                    collector.add(factory(
                        keys.BOOT_DEFAULT_KERNEL, FactValue.version(default.kernel), self.probe_id
                    ))

        return collector.success()

    def _read_default(self, loader: str, config_path: str) -> Optional[BootDefault]:
        config = self.read_text(config_path) or ""
        if loader == "grub":
            return self._grub_default(config, config_path)
        if loader == "systemd-boot":
            return self._systemd_boot_default(config, config_path)
        if loader == "refind":
            return self._simple_default(config, r"^\s*default_selection\s+\"?([^\"\s]+)\"?")
        if loader == "syslinux":
            return self._syslinux_default(config)
        if loader == "lilo":
            return self._simple_default(config, r"^\s*default\s*=\s*\"?([^\"\s]+)\"?")
        return None

    def _grub_default(self, config: str, config_path: str) -> Optional[BootDefault]:
        grubenv = self.read_text(str(Path(config_path).parent / "grubenv"))
        default = read_grub_default(config, grubenv)
        if default is None:
            return None
        return BootDefault(entry=default, kernel=resolve_grub_default(default, parse_grub_menu(config)))

    def _systemd_boot_default(self, config: str, config_path: str) -> Optional[BootDefault]:
        entries_dir = self.path(str(Path(config_path).parent / "entries"))
        entries: dict[str, dict[str, str]] = {}
        if entries_dir.is_dir():
            for entry_file in sorted(entries_dir.glob("*.conf")):
                entries[entry_file.name] = parse_key_value_conf(
                    entry_file.read_text(encoding="utf-8", errors="replace")
                )

        pattern = parse_key_value_conf(config).get("default")
        if pattern:
            if not pattern.endswith(".conf") and not any(c in pattern for c in "*?["):
                pattern = f"{pattern}.conf"
            for name in sorted(entries, reverse=True):
                if fnmatch.fnmatch(name, pattern):
                    return BootDefault(entry=name, kernel=entry_kernel(entries[name]))
            # Configured default matches no entry file; report it unresolved
            return BootDefault(entry=pattern)

        if not entries:
            return None

        # No explicit default: systemd-boot picks the entry that sorts last
        name = sorted(entries)[-1]
        return BootDefault(entry=name, kernel=entry_kernel(entries[name]), inferred=True)

    def _syslinux_default(self, config: str) -> Optional[BootDefault]:
        label: Optional[str] = None
        for line in config.splitlines():
            parts = line.split(None, 1)
            if len(parts) == 2 and parts[0].upper() == "DEFAULT":
                label = parts[1].strip()
                break
        if label is None:
            return None

        kernel = None
        in_block = False
        for line in config.splitlines():
            parts = line.split(None, 1)
            if len(parts) != 2:
                continue
            keyword, value = parts[0].upper(), parts[1].strip()
            if keyword == "LABEL":
                in_block = value == label
            elif in_block and keyword in ("LINUX", "KERNEL"):
                kernel = kernel_from_image(value)
                break
        return BootDefault(entry=label, kernel=kernel)

    def _simple_default(self, config: str, pattern: str) -> Optional[BootDefault]:
        regex = re.compile(pattern, re.IGNORECASE)
        for line in config.splitlines():
            match = regex.match(line)
            if match:
                value = match.group(1)
                return BootDefault(entry=value, kernel=kernel_from_image(value))
        return None
