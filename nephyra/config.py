"""
Engine configuration for Nephyra.

All process-wide settings (probe priority, timeouts, subsystem ranking,
workload class) live in one immutable EngineConfig that is threaded
through probe construction, the Aggregator and the Ranker. Nothing reads
ambient global state during a pass.

Configuration file (TOML):

    [nephyra]
    probe_priority = ["kernel", "packages", "bootloader"]
    probe_timeout = 5.0
    pass_timeout = 20.0
    stale_after = 900
    workload_class = "balanced"
    subsystem_priority = ["boot", "driver", "package_hygiene", "informational"]

    [nephyra.probe_timeouts]
    packages = 15.0
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping as ABCMapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

try:  # Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11 fallback
    import tomli as tomllib  # type: ignore

from .domain import Subsystem

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when configuration values or files are invalid."""
    pass


# =============================================================================
# DEFAULTS
# =============================================================================

# Earlier probes win confidence/timestamp ties. Kernel facts read from /proc
# are preferred over package-manager reports of the same slot.
DEFAULT_PROBE_PRIORITY = (
    "kernel",
    "packages",
    "bootloader",
    "governor",
    "power",
    "hardware",
)

DEFAULT_SUBSYSTEM_PRIORITY = (
    Subsystem.BOOT,
    Subsystem.DRIVER,
    Subsystem.PACKAGE_HYGIENE,
    Subsystem.INFORMATIONAL,
)

WORKLOAD_CLASSES = ("performance", "balanced", "powersave")

DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_PASS_TIMEOUT = 20.0
DEFAULT_STALE_AFTER = 900.0

CONFIG_ENV_VAR = "NEPHYRA_CONFIG"


# =============================================================================
# ENGINE CONFIG
# =============================================================================

@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable configuration for one or more correlation passes.

    Use with_overrides() to derive a modified copy.
    """
    probe_priority: tuple[str, ...] = DEFAULT_PROBE_PRIORITY
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    probe_timeouts: Mapping[str, float] = field(default_factory=dict)
    pass_timeout: float = DEFAULT_PASS_TIMEOUT
    stale_after: Optional[float] = DEFAULT_STALE_AFTER
    subsystem_priority: tuple[Subsystem, ...] = DEFAULT_SUBSYSTEM_PRIORITY
    workload_class: str = "balanced"
    sysroot: str = "/"

    def __post_init__(self):
        object.__setattr__(self, "probe_priority", tuple(self.probe_priority))
        object.__setattr__(self, "subsystem_priority", tuple(self.subsystem_priority))
        object.__setattr__(
            self, "probe_timeouts", MappingProxyType(dict(self.probe_timeouts))
        )
        self._validate()

    def __hash__(self) -> int:
        return hash((
            self.probe_priority,
            self.probe_timeout,
            tuple(sorted(self.probe_timeouts.items())),
            self.pass_timeout,
            self.stale_after,
            self.subsystem_priority,
            self.workload_class,
            self.sysroot,
        ))

    def _validate(self) -> None:
        if len(set(self.probe_priority)) != len(self.probe_priority):
            raise ConfigError(f"probe_priority has duplicates: {list(self.probe_priority)}")

        if self.probe_timeout <= 0:
            raise ConfigError(f"probe_timeout must be positive, got {self.probe_timeout}")
        if self.pass_timeout <= 0:
            raise ConfigError(f"pass_timeout must be positive, got {self.pass_timeout}")
        for probe_id, timeout in self.probe_timeouts.items():
            if timeout <= 0:
                raise ConfigError(f"timeout for probe '{probe_id}' must be positive")

        if self.stale_after is not None and self.stale_after <= 0:
            raise ConfigError(f"stale_after must be positive or unset, got {self.stale_after}")

        if set(self.subsystem_priority) != set(Subsystem) or len(self.subsystem_priority) != len(Subsystem):
            raise ConfigError(
                "subsystem_priority must list every subsystem exactly once: "
                + ", ".join(s.value for s in Subsystem)
            )

        if self.workload_class not in WORKLOAD_CLASSES:
            raise ConfigError(
                f"workload_class '{self.workload_class}' is not one of {list(WORKLOAD_CLASSES)}"
            )

    def timeout_for(self, probe_id: str) -> float:
        """Individual timeout for a probe (override or default)."""
        return self.probe_timeouts.get(probe_id, self.probe_timeout)

    def probe_rank(self, probe_id: str) -> int:
        """Position in the priority list; unlisted probes rank after all listed ones."""
        try:
            return self.probe_priority.index(probe_id)
        except ValueError:
            return len(self.probe_priority)

    def subsystem_rank(self, subsystem: Subsystem) -> int:
        return self.subsystem_priority.index(subsystem)

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        return replace(self, **overrides)


# =============================================================================
# LOADING
# =============================================================================

def _parse_subsystems(values: Any) -> tuple[Subsystem, ...]:
    try:
        return tuple(Subsystem(str(v)) for v in values)
    except ValueError as e:
        raise ConfigError(f"Unknown subsystem in subsystem_priority: {e}")


def config_from_mapping(payload: Mapping[str, Any]) -> EngineConfig:
    """
    Build an EngineConfig from a parsed [nephyra] table.

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    known = {
        "probe_priority", "probe_timeout", "probe_timeouts", "pass_timeout",
        "stale_after", "subsystem_priority", "workload_class", "sysroot",
    }
    unknown = set(payload) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    try:
        if "probe_priority" in payload:
            priority = payload["probe_priority"]
            if not isinstance(priority, (list, tuple)):
                raise ConfigError("probe_priority must be a list of probe ids")
            kwargs["probe_priority"] = tuple(str(p) for p in priority)
            unknown_ids = [p for p in kwargs["probe_priority"] if p not in DEFAULT_PROBE_PRIORITY]
            if unknown_ids:
                logger.warning(
                    "probe_priority names unknown probe(s): %s", ", ".join(unknown_ids)
                )
        if "probe_timeout" in payload:
            kwargs["probe_timeout"] = float(payload["probe_timeout"])
        if "pass_timeout" in payload:
            kwargs["pass_timeout"] = float(payload["pass_timeout"])
        if "stale_after" in payload:
            stale = payload["stale_after"]
            # 0 in a file means "never downgrade"
            kwargs["stale_after"] = float(stale) if stale else None
        if "probe_timeouts" in payload:
            timeouts = payload["probe_timeouts"]
            if not isinstance(timeouts, ABCMapping):
                raise ConfigError("probe_timeouts must be a table")
            kwargs["probe_timeouts"] = {str(k): float(v) for k, v in timeouts.items()}
        if "workload_class" in payload:
            kwargs["workload_class"] = str(payload["workload_class"])
        if "sysroot" in payload:
            kwargs["sysroot"] = str(payload["sysroot"])
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"Invalid configuration value: {e}")

    if "subsystem_priority" in payload:
        kwargs["subsystem_priority"] = _parse_subsystems(payload["subsystem_priority"])

    return EngineConfig(**kwargs)


def load_config(path: Optional[str | Path] = None) -> EngineConfig:
    """
    Load configuration from a TOML file.

    Resolution order:
        1. explicit path argument
        2. NEPHYRA_CONFIG environment variable
        3. built-in defaults

    Raises:
        ConfigError: If the file is missing, unparseable or invalid
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        return EngineConfig()

    candidate = Path(path).expanduser()
    if not candidate.is_file():
        raise ConfigError(f"Configuration file not found: {candidate}")

    try:
        with candidate.open("rb") as buffer:
            payload = tomllib.load(buffer)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {candidate}: {e}")

    section = payload.get("nephyra", {})
    if not isinstance(section, ABCMapping):
        raise ConfigError(f"[nephyra] in {candidate} must be a table")

    return config_from_mapping(section)
