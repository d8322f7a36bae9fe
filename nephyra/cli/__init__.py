# CLI package for Nephyra
"""
Read-only CLI for running Nephyra locally.

Commands:
    nephyra check     — Ranked recommendations
    nephyra explain   — Rationale and evidence lineage
    nephyra report    — Facts by subsystem
    nephyra packages  — Package hygiene
    nephyra diff      — Compare exported snapshots
"""
