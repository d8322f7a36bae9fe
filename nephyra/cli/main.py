"""
Nephyra CLI — Read-Only System Diagnostics.

Commands:
    nephyra check              — Run all probes, show ranked recommendations
    nephyra explain <id>       — Rationale and evidence lineage for one recommendation
    nephyra report             — All facts grouped by subsystem, plus recommendations
    nephyra packages           — Package hygiene view
    nephyra diff <old> <new>   — Compare two exported snapshots

This CLI is READ-ONLY. It observes and advises; it never installs,
removes or reconfigures anything. Remediation hints are printed, not run.

Exit status is 0 whenever a pass completes, whatever it found, and 1 when
no facts could be gathered or the input (config, snapshot file) is unusable.
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from ..config import ConfigError, EngineConfig, load_config
from ..domain import EngineFailure
from ..export import (
    SnapshotFormatError,
    diff_snapshots,
    fact_to_dict,
    read_snapshot,
    write_snapshot,
)
from ..log import setup_logger
from ..probes import build_probes
from . import render
from .pipeline import PassResult, run_pass

PACKAGE_PROBES = ("packages", "kernel")


# =============================================================================
# HELPERS
# =============================================================================

def load_engine_config(args: argparse.Namespace) -> EngineConfig:
    """Config file (or NEPHYRA_CONFIG), then command-line overrides."""
    config = load_config(getattr(args, "config", None))
    overrides = {}
    if getattr(args, "timeout", None) is not None:
        overrides["probe_timeout"] = args.timeout
    if getattr(args, "sysroot", None) is not None:
        overrides["sysroot"] = args.sysroot
    if overrides:
        config = config.with_overrides(**overrides)
    return config


def execute_pass(args: argparse.Namespace, only: Optional[tuple[str, ...]] = None) -> PassResult:
    config = load_engine_config(args)
    return run_pass(build_probes(config, only=only), config)


# =============================================================================
# CLI COMMANDS
# =============================================================================

def cmd_check(args: argparse.Namespace) -> int:
    """Run a full pass and list recommendations."""
    result = execute_pass(args)

    if args.json:
        print(render.to_json(render.result_to_dict(result)))
    else:
        print(render.format_check(result))
    return 0


def cmd_explain(args: argparse.Namespace) -> int:
    """Explain one recommendation by id, rank or rule id."""
    result = execute_pass(args)

    rec = result.get_recommendation(args.recommendation_id)
    if rec is None:
        print(f"Recommendation not found: {args.recommendation_id}")
        abstention = result.abstention_for(args.recommendation_id)
        if abstention is not None:
            print(
                f"Rule {abstention.rule_id} abstained; missing facts: "
                f"{', '.join(abstention.missing_keys)}"
            )
        print()
        print("Available recommendations:")
        for available in result.recommendations:
            print(f"  {available.recommendation_id} — {available.rule_id}")
        return 1

    print(render.format_explanation(rec, result))
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    """Full fact report, optionally exporting the snapshot."""
    result = execute_pass(args)

    if args.export:
        write_snapshot(result.snapshot, args.export)

    if args.json:
        print(render.to_json(render.result_to_dict(result, include_facts=True)))
    else:
        print(render.format_report(result))
        if args.export:
            print()
            print(f"Snapshot exported to {args.export}")
    return 0


def cmd_packages(args: argparse.Namespace) -> int:
    """Package hygiene only."""
    result = execute_pass(args, only=PACKAGE_PROBES)

    if args.json:
        payload = render.result_to_dict(
            result,
            include_facts=True,
            recommendations=render.package_recommendations(result),
        )
        print(render.to_json(payload))
    else:
        print(render.format_packages(result))
    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    """Compare two exported snapshots."""
    old = read_snapshot(args.old)
    new = read_snapshot(args.new)
    diff = diff_snapshots(old, new)

    if args.json:
        print(render.to_json({
            "old": old.snapshot_id,
            "new": new.snapshot_id,
            "added": {f.key: fact_to_dict(f) for f in diff.added},
            "removed": {f.key: fact_to_dict(f) for f in diff.removed},
            "changed": {
                c.key: {"old": c.old.value.to_json(), "new": c.new.value.to_json()}
                for c in diff.changed
            },
        }))
    else:
        print(render.format_diff(diff, old, new))
    return 0


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="nephyra",
        description="Nephyra — Explainable Linux System Diagnostics",
    )
    parser.add_argument(
        "--config",
        help="TOML configuration file (default: $NEPHYRA_CONFIG or built-in defaults)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Per-probe timeout in seconds",
    )
    parser.add_argument(
        "--sysroot",
        help="Filesystem root to inspect (default: /)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostic log level (logs go to stderr)",
    )
    parser.add_argument(
        "--log-format",
        default="text",
        choices=["text", "json"],
        help="Diagnostic log format",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
    )

    # Check command
    check_parser = subparsers.add_parser(
        "check",
        help="Run all probes and show ranked recommendations",
    )
    check_parser.add_argument("--json", action="store_true", help="Emit JSON")
    check_parser.set_defaults(func=cmd_check)

    # Explain command
    explain_parser = subparsers.add_parser(
        "explain",
        help="Show rationale and evidence for a recommendation",
    )
    explain_parser.add_argument(
        "recommendation_id",
        help="Recommendation ID, rank number or rule ID",
    )
    explain_parser.set_defaults(func=cmd_explain)

    # Report command
    report_parser = subparsers.add_parser(
        "report",
        help="Show all facts and recommendations",
    )
    report_parser.add_argument("--json", action="store_true", help="Emit JSON")
    report_parser.add_argument(
        "--export",
        metavar="FILE",
        help="Also write the snapshot to FILE for later 'nephyra diff'",
    )
    report_parser.set_defaults(func=cmd_report)

    # Packages command
    packages_parser = subparsers.add_parser(
        "packages",
        help="Show package hygiene (orphans, updates, kernel packages)",
    )
    packages_parser.add_argument("--json", action="store_true", help="Emit JSON")
    packages_parser.set_defaults(func=cmd_packages)

    # Diff command
    diff_parser = subparsers.add_parser(
        "diff",
        help="Compare two exported snapshots",
    )
    diff_parser.add_argument("old", help="Earlier snapshot file")
    diff_parser.add_argument("new", help="Later snapshot file")
    diff_parser.add_argument("--json", action="store_true", help="Emit JSON")
    diff_parser.set_defaults(func=cmd_diff)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logger(level=args.log_level, format_type=args.log_format)

    try:
        return args.func(args)
    except EngineFailure as e:
        print("ERROR: Correlation pass failed", file=sys.stderr)
        print(f"Reason: {e.detail}", file=sys.stderr)
        return 1
    except (ConfigError, SnapshotFormatError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
