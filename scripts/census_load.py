#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys

import httpx

from backend.app.aggregates import load_area_metadata
from backend.app.census_derived import (
    DERIVED_ONLY_VARIABLES,
    POPULATION_VARIABLE,
    DerivedImportRequest,
    DerivedWrite,
    run_derived_imports,
)
from backend.app.census_import import (
    DEFAULT_DATASET,
    CensusImportRequest,
    CensusImportResult,
    default_year,
    run_census_import,
)
from backend.app.census_service import (
    CensusOptions,
    UpstreamAPIError,
    VariableNotAvailableError,
    fetch_group_metadata,
    resolve_variables,
)
from backend.app.config import CensusApiConfig, MissingConfigurationError, Settings
from backend.app.logging_config import configure_logging
from backend.app.store import InstantAdminStore, Store, StoreError

EXIT_INVALID_ARGS = 2
EXIT_MISSING_CONFIG = 3
EXIT_UPSTREAM_FAILURE = 4
EXIT_STORE_FAILURE = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import Census ZIP and county estimates into the aggregate store."
    )
    parser.add_argument("--group", type=str, required=True, help="Census group/table id, e.g. B22003.")
    parser.add_argument(
        "--variable",
        action="append",
        default=[],
        help="Estimate variable to import (repeatable). Defaults to every estimate in the group.",
    )
    parser.add_argument("--dataset", type=str, default=DEFAULT_DATASET, help="Dataset path (default: acs/acs5).")
    parser.add_argument("--year", type=int, default=None, help="Most recent vintage to import.")
    parser.add_argument("--years", type=int, default=1, help="Number of vintages to import, newest first (1-5).")
    parser.add_argument("--include-moe", action="store_true", help="Also import margins of error.")
    parser.add_argument("--category", type=str, default=None, help="Category assigned to created stats.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and aggregate without writing. Derived percents and breakdowns are skipped.",
    )
    parser.add_argument("--timeout", type=float, default=30.0, help="HTTP timeout in seconds (default: 30).")
    parser.add_argument(
        "--retries",
        type=int,
        default=0,
        help="Retry count for timeout/429/5xx failures on the Census API (default: 0).",
    )
    parser.add_argument("--console-logs", action="store_true", help="Human-readable logs instead of JSON.")
    return parser


def validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if not 1 <= args.years <= 5:
        parser.error("--years must be between 1 and 5.")
    if args.timeout <= 0:
        parser.error("--timeout must be > 0.")
    if args.retries < 0:
        parser.error("--retries must be >= 0.")


def open_store(client: httpx.Client, settings: Settings) -> Store:
    return InstantAdminStore(client, settings.require_store())


def resolve_requested_variables(
    client: httpx.Client,
    args: argparse.Namespace,
    config: CensusApiConfig,
) -> list[str]:
    if args.variable:
        return list(dict.fromkeys(args.variable))
    options = CensusOptions(dataset=args.dataset, group=args.group, year=args.year or default_year())
    estimates, _ = resolve_variables(options, fetch_group_metadata(client, options, config))
    return estimates


def print_summary(
    results: list[CensusImportResult],
    derived: list[DerivedWrite] | None = None,
    derived_only: list[str] | None = None,
) -> None:
    for result in results:
        mode = " (dry run)" if result.dry_run else ""
        print(f"{result.variable} -> {result.stat_name}{mode}")
        print(f"  stat id: {result.stat_id or 'N/A'}  type: {result.stat_type}")
        for year in result.years_processed:
            counts = result.counts_by_year.get(year, {})
            print(
                f"  {year}: zips={counts.get('zip_count', 0)} counties={counts.get('county_count', 0)}"
                f" county groups={counts.get('county_zip_groups', 0)}"
            )
        if not result.dry_run:
            print(f"  rows inserted={result.rows_inserted} updated={result.rows_updated}")
    for variable in derived_only or []:
        print(f"{variable} (derived only)")
    for write in derived or []:
        label = "" if write.series_name == "root" else f" [{write.series_name}]"
        print(
            f"{write.census_variable} -> {write.stat_name}{label} {write.year}:"
            f" rows inserted={write.inserted} updated={write.updated}"
        )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    validate_args(parser, args)
    configure_logging(json_logs=not args.console_logs, service="census-load")

    try:
        settings = Settings.from_env()
    except MissingConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_MISSING_CONFIG
    config = CensusApiConfig(
        api_key=settings.census.api_key,
        base_url=settings.census.base_url,
        timeout=args.timeout,
        retries=args.retries,
    )

    results: list[CensusImportResult] = []
    derived: list[DerivedWrite] = []
    derived_only: list[str] = []
    try:
        with httpx.Client(follow_redirects=True) as client:
            store = open_store(client, settings)
            variables = resolve_requested_variables(client, args, config)
            if not variables:
                print(f"Error: no estimate variables found in group {args.group}.", file=sys.stderr)
                return EXIT_INVALID_ARGS
            area_metadata = load_area_metadata(store)
            if not args.variable and not args.dry_run:
                derived_only = [v for v in variables if v in DERIVED_ONLY_VARIABLES]
            for variable in variables:
                if variable in derived_only:
                    continue
                request = CensusImportRequest(
                    group=args.group,
                    variable=variable,
                    dataset=args.dataset,
                    year=args.year,
                    years=args.years,
                    include_moe=args.include_moe,
                    category=args.category,
                    dry_run=args.dry_run,
                )
                results.append(
                    run_census_import(client, store, request, config, area_metadata=area_metadata)
                )
            if not args.dry_run:
                population_stat_id = next(
                    (r.stat_id for r in results if r.variable == POPULATION_VARIABLE and r.stat_id), None
                )
                derived = run_derived_imports(
                    client,
                    store,
                    DerivedImportRequest(
                        group=args.group,
                        variables=tuple(variables),
                        dataset=args.dataset,
                        year=args.year,
                        years=args.years,
                        category=args.category,
                    ),
                    config,
                    area_metadata=area_metadata,
                    population_stat_id=population_stat_id,
                )
    except MissingConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_MISSING_CONFIG
    except VariableNotAvailableError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_ARGS
    except UpstreamAPIError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_UPSTREAM_FAILURE
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_STORE_FAILURE

    print_summary(results, derived, derived_only)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
