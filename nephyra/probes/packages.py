"""
Package-manager probe for Nephyra.

Cross-distro view of package hygiene:
    - which package manager is in charge (pacman, apt, dnf, apk, zypper, emerge)
    - orphaned packages (installed as dependencies, no longer required)
    - number of pending updates
    - held / ignored packages, and whether any of them pins a kernel

Every query is read-only. Nothing here removes or installs packages.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Optional

from .. import keys
from ..facts import (
    FactValue,
    ProbeError,
    ProbeFailureKind,
    ProbeResult,
    create_fact,
    create_inferred_fact,
)
from .base import (
    CommandOutput,
    CommandRunner,
    FactCollector,
    SysrootMixin,
    WhichFunc,
    run_command,
    which,
)

logger = logging.getLogger(__name__)

PACKAGE_MANAGERS = ("pacman", "apt", "dnf", "apk", "zypper", "emerge")

KERNEL_PACKAGE_RE = re.compile(r"^(linux|kernel)(-[a-z0-9._-]+)?$")
NON_KERNEL_MARKERS = ("headers", "firmware", "docs", "api", "tools", "devel")


def detect_package_manager(which_func: WhichFunc = which) -> Optional[str]:
    """First supported package manager found on PATH, in a fixed order."""
    for manager in PACKAGE_MANAGERS:
        if which_func(manager):
            return manager
    return None


def is_kernel_package(name: str) -> bool:
    """True for kernel image packages ("linux-lts", "kernel"), not headers or firmware."""
    if not KERNEL_PACKAGE_RE.match(name):
        return False
    return not any(marker in name for marker in NON_KERNEL_MARKERS)


# =============================================================================
# OUTPUT PARSERS (pure functions)
# =============================================================================

def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_pacman_orphans(stdout: str) -> list[str]:
    """`pacman -Qdtq` prints one package name per line."""
    return _lines(stdout)


def parse_apt_autoremove(stdout: str) -> list[str]:
    """`apt-get --dry-run autoremove` prints "Remv <name> [<version>]" per package."""
    names = []
    for line in _lines(stdout):
        if line.startswith("Remv "):
            parts = line.split()
            if len(parts) >= 2:
                names.append(parts[1])
    return names


def parse_plain_names(stdout: str) -> list[str]:
    """Query output already formatted as one name per line (dnf --qf, apt-mark)."""
    return [line for line in _lines(stdout) if " " not in line]


def parse_zypper_table(stdout: str) -> list[str]:
    """
    Extract the Name column from a zypper table.

    Example:
        S  | Repository | Name      | Version | Arch
        ---+------------+-----------+---------+-------
        i  | @System    | libfoo1   | 1.0-1   | x86_64
    """
    names = []
    name_col: Optional[int] = None
    for line in _lines(stdout):
        if "|" not in line:
            continue
        cells = [cell.strip() for cell in line.split("|")]
        if name_col is None:
            if "Name" in cells:
                name_col = cells.index("Name")
            continue
        if set(line) <= set("-+| "):
            continue
        if name_col < len(cells) and cells[name_col]:
            names.append(cells[name_col])
    return names


def count_apt_upgradable(stdout: str) -> int:
    """`apt list --upgradable`: one "name/suite version arch [upgradable from: ...]" line each."""
    return sum(1 for line in _lines(stdout) if "/" in line and "upgradable" in line)


def count_dnf_updates(stdout: str) -> int:
    """`dnf check-update -q`: "name.arch version repo" rows until the obsoletes section."""
    count = 0
    for line in _lines(stdout):
        if line.startswith("Obsoleting Packages"):
            break
        if len(line.split()) == 3:
            count += 1
    return count


def count_apk_upgradable(stdout: str) -> int:
    """
    `apk version -l "<"` lists installed packages older than the index.

    Example:
        Installed:                                Available:
        busybox-1.36.1-r5                       < 1.36.1-r15
    """
    return sum(1 for line in _lines(stdout) if len(line.split()) >= 2 and line.split()[1] == "<")


_EMERGE_ATOM_RE = re.compile(r"^[A-Za-z0-9+_.-]+/[A-Za-z0-9+_.-]+$")
_EMERGE_MERGE_RE = re.compile(r"^\[(ebuild|binary)\s[^\]]*\]")


def parse_emerge_depclean(stdout: str) -> list[str]:
    """
    Package atoms from `emerge --depclean --pretend`.

    Each candidate is printed on its own line (" dev-python/foo") under the
    "would be unmerged" header, followed by its selected/protected slots.
    """
    if "Nothing to clean" in stdout:
        return []
    names = []
    in_section = False
    for line in _lines(stdout):
        if "would be unmerged" in line:
            in_section = True
            continue
        if not in_section:
            continue
        if line.startswith("All selected packages") or line.startswith(">>>"):
            break
        if _EMERGE_ATOM_RE.match(line):
            names.append(line)
    return names


def count_emerge_updates(stdout: str) -> int:
    """`emerge -uDN --pretend @world`: one "[ebuild  U  ] cat/pkg-ver" line per merge."""
    return sum(1 for line in _lines(stdout) if _EMERGE_MERGE_RE.match(line))


def parse_pacman_ignored(pacman_conf: str) -> list[str]:
    """Packages listed on IgnorePkg lines in pacman.conf."""
    names = []
    for line in pacman_conf.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line.startswith("IgnorePkg"):
            continue
        _, _, value = line.partition("=")
        names.extend(value.split())
    return names


def parse_dnf_versionlock(stdout: str) -> list[str]:
    """`dnf versionlock list` entries look like "kernel-0:6.5.6-300.fc39.*"."""
    names = []
    for line in _lines(stdout):
        match = re.match(r"^(.+?)-\d+:", line)
        if match:
            names.append(match.group(1))
    return names


# =============================================================================
# PROBE
# =============================================================================

# manager -> (command, parser)
ORPHAN_QUERIES: dict[str, tuple[list[str], Callable[[str], list[str]]]] = {
    "pacman": (["pacman", "-Qdtq"], parse_pacman_orphans),
    "apt": (["apt-get", "--dry-run", "autoremove"], parse_apt_autoremove),
    "dnf": (["dnf", "repoquery", "--unneeded", "--queryformat", "%{name}\n"], parse_plain_names),
    "zypper": (["zypper", "--quiet", "packages", "--orphaned"], parse_zypper_table),
    "emerge": (["emerge", "--depclean", "--pretend"], parse_emerge_depclean),
}

UPDATE_QUERIES: dict[str, tuple[list[str], Callable[[str], int]]] = {
    "pacman": (["checkupdates"], lambda out: len(_lines(out))),
    "apt": (["apt", "list", "--upgradable"], count_apt_upgradable),
    "dnf": (["dnf", "check-update", "--quiet"], count_dnf_updates),
    "zypper": (["zypper", "--quiet", "list-updates"], lambda out: len(parse_zypper_table(out))),
    "apk": (["apk", "version", "-l", "<"], count_apk_upgradable),
    "emerge": (["emerge", "-uDN", "--pretend", "@world"], count_emerge_updates),
}


class PackagesProbe(SysrootMixin):
    """Package-manager consistency: orphans, pending updates, holds."""

    probe_id = "packages"
    provides = frozenset({keys.PKG_MANAGER})

    def __init__(
        self,
        sysroot: str | Path = "/",
        runner: CommandRunner = run_command,
        which: WhichFunc = which,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sysroot = Path(sysroot)
        self.runner = runner
        self.which = which
        self.clock = clock

    def run(self, timeout: float) -> ProbeResult:
        collector = FactCollector(self.probe_id, self.provides)

        manager = detect_package_manager(self.which)
        if manager is None:
            return collector.failed(
                ProbeFailureKind.IO_ERROR, "no supported package manager found on PATH"
            )

        collector.add(create_fact(keys.PKG_MANAGER, FactValue.enum(manager), self.probe_id))

        # The queries share one budget; each gets whatever the earlier ones left
        deadline = self.clock() + timeout
        kind: Optional[ProbeFailureKind] = None
        problems: list[str] = []
        steps = (("orphans", self._orphans), ("updates", self._updates), ("holds", self._holds))
        for name, step in steps:
            remaining = deadline - self.clock()
            if remaining <= 0:
                kind = kind or ProbeFailureKind.TIMEOUT
                problems.append(f"time budget of {timeout:g}s used up before the {name} query")
                break
            try:
                step(collector, manager, remaining)
            except ProbeError as e:
                kind = kind or e.kind
                problems.append(e.reason)

        if problems:
            return collector.failed(kind or ProbeFailureKind.IO_ERROR, "; ".join(problems))
        return collector.success()

    def _query(self, args: list[str], timeout: float) -> Optional[CommandOutput]:
        if not self.which(args[0]):
            logger.debug("%s not available, skipping", args[0])
            return None
        return self.runner(args, timeout)

    def _orphans(self, collector: FactCollector, manager: str, timeout: float) -> None:
        query = ORPHAN_QUERIES.get(manager)
        if query is None:
            return
        args, parser = query
        output = self._query(args, timeout)
        # pacman -Qdtq exits 1 when there is nothing to report
        if output is None or output.returncode not in (0, 1):
            return
        collector.add(create_fact(
            keys.PKG_ORPHANED, FactValue.string_set(parser(output.stdout)), self.probe_id
        ))

    def _updates(self, collector: FactCollector, manager: str, timeout: float) -> None:
        query = UPDATE_QUERIES.get(manager)
        if query is None:
            return
        args, counter = query
        output = self._query(args, timeout)
        # checkupdates exits 2 when nothing is pending, dnf check-update 100 when something is
        if output is None or output.returncode not in (0, 2, 100):
            return
        collector.add(create_fact(
            keys.PKG_UPDATES_COUNT, FactValue.numeric(counter(output.stdout)), self.probe_id
        ))

    def _holds(self, collector: FactCollector, manager: str, timeout: float) -> None:
        held: Optional[list[str]] = None

        if manager == "pacman":
            conf = self.read_text("/etc/pacman.conf")
            if conf is not None:
                held = parse_pacman_ignored(conf)
        elif manager == "apt":
            output = self._query(["apt-mark", "showhold"], timeout)
            if output is not None and output.returncode == 0:
                held = parse_plain_names(output.stdout)
        elif manager == "dnf":
            output = self._query(["dnf", "versionlock", "list"], timeout)
            if output is not None and output.returncode == 0:
                held = parse_dnf_versionlock(output.stdout)

        if held is None:
            return

        collector.add(create_fact(keys.PKG_HELD, FactValue.string_set(held), self.probe_id))
        collector.add(create_inferred_fact(
            keys.KERNEL_PIN,
            FactValue.string_set(name for name in held if is_kernel_package(name)),
            self.probe_id,
        ))
