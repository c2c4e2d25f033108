#!/usr/bin/env python3
"""
Ecosystem — Operations CLI

Management script for the matching engine.  Provides three subcommands:

  match    — Run the batch matching pipeline for every onboarded user.
  health   — Run the system health validator and print the report.
  signals  — Print feedback aggregates per match type.

Usage examples
--------------
  # Generate up to 3 matches for everyone
  python scripts/ecosystem_manager.py match --limit 3

  # Quick health check (no live provider call)
  python scripts/ecosystem_manager.py health --quick

  # Feedback weighting signals as JSON
  python scripts/ecosystem_manager.py signals --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import httpx

# Ensure the project root is importable
sys.path.insert(0, ".")

from ecosystem.config import get_settings
from ecosystem.database import dispose_engine, get_session_factory, session_scope
from ecosystem.services.feedback_service import FeedbackCollector
from ecosystem.services.health_service import SystemHealthValidator
from ecosystem.services.matching_service import MatchingService
from ecosystem.services.provider_client import EmbeddingProviderClient


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: match
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_match(args: argparse.Namespace) -> None:
    """Run the batch pipeline and commit the generated matches."""
    service = MatchingService()

    async with session_scope() as session:
        results = await service.run_matching_pipeline(session, limit=args.limit)

    succeeded = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print(f"\n{'=' * 60}")
    print(f"  Matching Pipeline")
    print(f"{'=' * 60}")
    print(f"  Users processed:   {len(results)}")
    print(f"  Succeeded:         {len(succeeded)}")
    print(f"  Failed:            {len(failed)}")
    print(f"  Matches created:   {sum(r['matches_generated'] for r in results)}")

    if failed:
        print(f"\n  Failures:")
        for row in failed:
            print(f"    {row['user_id']}  {row['error']}")

    print(f"{'=' * 60}\n")

    if args.json:
        print(json.dumps(results, indent=2, default=str))


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: health
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_health(args: argparse.Namespace) -> None:
    """Run the validator; exits non-zero unless the system is healthy."""
    settings = get_settings()

    async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as http_client:
        validator = SystemHealthValidator(
            provider_client=EmbeddingProviderClient(http_client, settings=settings),
            session_factory=get_session_factory(),
        )
        report = await validator.run_full_validation(quick=args.quick)

    print(f"\n{'=' * 60}")
    print(f"  System Health: {report.overall.value.upper()} ({report.passed}/{report.total})")
    print(f"{'=' * 60}")
    for component in report.components:
        mark = "ok  " if component.passed else "FAIL"
        print(f"  [{mark}] {component.name:<24} {component.duration_ms:>8.1f} ms  {component.message}")

    print(f"\n  Recommendations:")
    for rec in report.recommendations:
        print(f"    - {rec}")
    print(f"{'=' * 60}\n")

    if args.json:
        print(report.model_dump_json(indent=2))

    if report.overall.value != "healthy":
        sys.exit(2)


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: signals
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_signals(args: argparse.Namespace) -> None:
    """Feedback count, average rating and positive rate per match type."""
    collector = FeedbackCollector()

    async with session_scope() as session:
        signals = await collector.weighting_signals(session)

    print(f"\n{'=' * 60}")
    print(f"  Feedback Signals")
    print(f"{'=' * 60}")
    if not signals:
        print(f"  No feedback recorded yet.")
    for match_type, data in sorted(signals.items()):
        print(
            f"  {match_type:<18} n={data['count']:<5} "
            f"avg={data['average_rating']:.2f}  positive={data['positive_rate']:.0%}"
        )
    print(f"{'=' * 60}\n")

    if args.json:
        print(json.dumps(signals, indent=2))


async def _run(command, args: argparse.Namespace) -> None:
    try:
        await command(args)
    finally:
        await dispose_engine()


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry point
# ──────────────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Ecosystem operations — batch matching, health and feedback signals.",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available subcommands",
    )

    # ── match ─────────────────────────────────────────────────────────
    match_parser = subparsers.add_parser(
        "match",
        help="Run the batch matching pipeline.",
    )
    match_parser.add_argument(
        "--limit", "-n",
        type=int,
        default=None,
        help="Matches per user (default: MATCH_DEFAULT_LIMIT).",
    )
    match_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Also output the per-user results as JSON.",
    )

    # ── health ────────────────────────────────────────────────────────
    health_parser = subparsers.add_parser(
        "health",
        help="Run the system health validator.",
    )
    health_parser.add_argument(
        "--quick",
        action="store_true",
        default=False,
        help="Skip the live embedding provider call.",
    )
    health_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Also output the raw report as JSON.",
    )

    # ── signals ───────────────────────────────────────────────────────
    signals_parser = subparsers.add_parser(
        "signals",
        help="Print feedback aggregates per match type.",
    )
    signals_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Also output raw JSON data.",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {"match": cmd_match, "health": cmd_health, "signals": cmd_signals}
    asyncio.run(_run(commands[args.command], args))


if __name__ == "__main__":
    main()
