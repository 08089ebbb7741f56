#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys

import httpx

from backend.app.config import MissingConfigurationError, Settings
from backend.app.logging_config import configure_logging
from backend.app.points_of_interest import backfill_points_of_interest
from backend.app.store import InstantAdminStore, Store, StoreError

EXIT_MISSING_CONFIG = 3
EXIT_STORE_FAILURE = 5
EXIT_PARTIAL_FAILURE = 6


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Recompute points of interest for every enabled statistic."
    )
    parser.add_argument(
        "--all",
        dest="all_stats",
        action="store_true",
        help="Include statistics without pointsOfInterestEnabled (they are deactivated unless --force).",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Compute even when pointsOfInterestEnabled is not set.",
    )
    parser.add_argument("--console-logs", action="store_true", help="Human-readable logs instead of JSON.")
    return parser


def open_store(client: httpx.Client, settings: Settings) -> Store:
    return InstantAdminStore(client, settings.require_store())


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(json_logs=not args.console_logs, service="backfill-points-of-interest")

    try:
        with httpx.Client() as client:
            store = open_store(client, Settings.from_env())
            result = backfill_points_of_interest(store, all_stats=args.all_stats, force=args.force)
    except MissingConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_MISSING_CONFIG
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_STORE_FAILURE

    print(
        f"Complete. success={result.success} failed={result.failed} "
        f"upserted={result.upserted} deactivated={result.deactivated}"
    )
    for stat_id, message in result.failures.items():
        print(f"- {stat_id}: {message}", file=sys.stderr)
    return EXIT_PARTIAL_FAILURE if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
