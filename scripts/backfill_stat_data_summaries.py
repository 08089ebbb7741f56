#!/usr/bin/env python3
"""Rebuild the statDataSummaries index from existing statData rows.

One summary row per (statId, name, parentArea, boundaryType), holding the
latest date for that key. Upserts by summaryKey, so reruns are safe.
"""
from __future__ import annotations

import argparse
import sys

import httpx

from backend.app.aggregates import backfill_stat_data_summaries
from backend.app.config import MissingConfigurationError, Settings
from backend.app.logging_config import configure_logging
from backend.app.store import InstantAdminStore, Store, StoreError

EXIT_MISSING_CONFIG = 3
EXIT_STORE_FAILURE = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0] if __doc__ else None)
    parser.add_argument("--page-size", type=int, default=25, help="statData rows per query (default: 25).")
    parser.add_argument("--console-logs", action="store_true", help="Human-readable logs instead of JSON.")
    return parser


def open_store(client: httpx.Client, settings: Settings) -> Store:
    return InstantAdminStore(client, settings.require_store())


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.page_size <= 0:
        parser.error("--page-size must be > 0.")
    configure_logging(json_logs=not args.console_logs, service="backfill-stat-data-summaries")

    try:
        with httpx.Client() as client:
            store = open_store(client, Settings.from_env())
            written = backfill_stat_data_summaries(store, page_size=args.page_size)
    except MissingConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_MISSING_CONFIG
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_STORE_FAILURE

    print(f"Upserted {written} summary rows.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
