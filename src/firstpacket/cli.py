# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""First Packet CLI: build, validate, watch, report, clean commands.

Usage:
    firstpacket [--project-root DIR] [-v] [--json-logs] build [--dry-run] [--sequential] [--no-cache]
    firstpacket validate
    firstpacket watch
    firstpacket report [--format text|json]
    firstpacket clean

Every option not given on the command line falls back to ``FIRSTPACKET_*``
environment variables, then to built-in defaults.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import shutil
import sys
from pathlib import Path

from tabulate import tabulate

from . import BuildResults, __version__
from .config import OrchestratorConfig
from .errors import BuildError, FirstPacketError
from .logging_config import configure
from .orchestrator import Orchestrator
from .reports import BUNDLE_HEADERS, bundle_rows


def _load_config(args: argparse.Namespace, **overrides) -> OrchestratorConfig:
    return OrchestratorConfig.from_env(**overrides).under(args.project_root)


def _print_results(orch: Orchestrator) -> None:
    print(orch.build_summary())
    bundles = orch.bundles
    if bundles is not None and len(bundles):
        print(tabulate(bundle_rows(bundles, orch.config.cache_busting), headers=BUNDLE_HEADERS, tablefmt="simple"))
        print()
    hints = orch.preload_hints()
    if hints:
        print("Preload hints:")
        for hint in hints:
            print(f"  {hint}")


async def _run_build(config: OrchestratorConfig, *, dry_run: bool) -> tuple[Orchestrator, BuildResults]:
    async with Orchestrator(config, dry_run=dry_run) as orch:
        try:
            results = await orch.build_optimized()
        except BuildError as e:
            return orch, e.results
    return orch, results


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_build(args: argparse.Namespace) -> int:
    """Run the optimization pipeline once."""
    overrides = {}
    if args.sequential:
        overrides["parallel_stages"] = False
    if args.no_cache:
        overrides["enable_build_cache"] = False
    config = _load_config(args, **overrides)

    orch, results = asyncio.run(_run_build(config, dry_run=args.dry_run))
    _print_results(orch)
    if args.dry_run:
        print("Dry run: nothing was written.")
    else:
        print(f"Output: {config.output_dir}")
    return 0 if results.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Check first-packet compliance without writing anything.  Exit 1 on violations."""
    config = _load_config(args, validate_compliance=True)
    _, results = asyncio.run(_run_build(config, dry_run=True))
    if not results.success:
        for error in results.errors:
            print(f"ERROR: {error}", file=sys.stderr)
        return 1
    if results.compliance_violations:
        print(f"{len(results.compliance_violations)} compliance violation(s):")
        for violation in results.compliance_violations:
            print(f"  - {violation}")
        return 1
    print(f"All checked artifacts compliant ({results.compliance_rate * 100:.1f}%).")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Rebuild on every change until interrupted."""
    config = _load_config(args, watch_mode=True)

    async def _watch() -> None:
        async with Orchestrator(config) as orch:
            await orch.join_watch()

    asyncio.run(_watch())
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    """Compute a build in dry-run mode and print its report."""
    config = _load_config(args)
    orch, results = asyncio.run(_run_build(config, dry_run=True))
    if args.format == "json":
        rows = bundle_rows(orch.bundles, config.cache_busting) if orch.bundles is not None else []
        payload = {
            "results": results.to_dict(),
            "bundles": [dict(zip(BUNDLE_HEADERS, row, strict=True)) for row in rows],
            "templates": [
                {
                    "name": a.name,
                    "source_size": a.source_size,
                    "optimized_size": a.optimized_size,
                    "gzip": a.sizes.gzip,
                    "brotli": a.sizes.brotli,
                    "compliant": a.compliant,
                    "recommendations": list(a.recommendations),
                }
                for a in orch.template_analyses
            ],
            "preload_hints": orch.preload_hints(),
        }
        print(json.dumps(payload, indent=2))
    else:
        print(orch.report())
    return 0 if results.success else 1


def cmd_clean(args: argparse.Namespace) -> int:
    """Remove build output and cache directories."""
    config = _load_config(args)
    for directory in (Path(config.output_dir), Path(config.cache_dir)):
        if directory.is_dir():
            shutil.rmtree(directory)
            print(f"Removed {directory}")
        else:
            print(f"Nothing to remove at {directory}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="First Packet build optimizer",
        prog="firstpacket",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project-root", type=str, default=".", metavar="DIR", help="Project root (default: .)")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser("build", help="Run the optimization pipeline")
    p_build.add_argument("--dry-run", action="store_true", help="Compute everything, write nothing")
    p_build.add_argument("--sequential", action="store_true", help="Run stages strictly in order")
    p_build.add_argument("--no-cache", action="store_true", help="Disable the build cache")

    subparsers.add_parser("validate", help="Check first-packet compliance (exit 1 on violations)")
    subparsers.add_parser("watch", help="Rebuild when static assets or templates change")

    p_report = subparsers.add_parser("report", help="Print the optimization report")
    p_report.add_argument("--format", type=str, choices=["text", "json"], default="text")

    subparsers.add_parser("clean", help="Remove build output and cache directories")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure(json_output=args.json_logs, level="DEBUG" if args.verbose else None)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    commands = {
        "build": cmd_build,
        "validate": cmd_validate,
        "watch": cmd_watch,
        "report": cmd_report,
        "clean": cmd_clean,
    }
    try:
        code = commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except FirstPacketError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
