from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
import structlog

from .aggregates import (
    AreaMetadata,
    PayloadMeta,
    StatDataPayload,
    apply_stat_data_payloads,
    build_data_maps,
    build_stat_data_payloads,
    ensure_stat_record,
    load_area_metadata,
    summarize_data_maps,
)
from .census_service import (
    CensusOptions,
    VariableNotAvailableError,
    census_table_doc_url,
    derive_stat_name,
    fetch_county_records,
    fetch_group_metadata,
    fetch_zip_records,
    infer_stat_type,
    resolve_variables,
)
from .config import CensusApiConfig
from .store import Store

log = structlog.get_logger(__name__)

DEFAULT_DATASET = "acs/acs5"
DEFAULT_IMPORT_CATEGORY = "demographics"
MAX_YEARS = 5
ALLOWED_CATEGORIES = {
    "food",
    "demographics",
    "health",
    "education",
    "economy",
    "housing",
    "justice",
}


def default_year() -> int:
    # ACS 5-year releases trail the calendar by roughly two years.
    return datetime.now(timezone.utc).year - 2


def coerce_category(value: str | None) -> str:
    text = (value or "").strip()
    return text if text in ALLOWED_CATEGORIES else DEFAULT_IMPORT_CATEGORY


def clamp_years(value: int | None) -> int:
    if value is None:
        return 1
    return max(1, min(MAX_YEARS, int(value)))


def build_year_range(start: int, count: int) -> list[int]:
    return [start - offset for offset in range(count)]


@dataclass(frozen=True)
class CensusImportRequest:
    group: str
    variable: str
    dataset: str = DEFAULT_DATASET
    year: int | None = None
    years: int = 1
    include_moe: bool = False
    category: str | None = None
    dry_run: bool = False


@dataclass
class CensusImportResult:
    stat_id: str | None
    stat_name: str
    stat_type: str
    variable: str
    dataset: str
    group: str
    include_moe: bool
    category: str
    years_processed: list[int] = field(default_factory=list)
    counts_by_year: dict[int, dict[str, int]] = field(default_factory=dict)
    rows_inserted: int = 0
    rows_updated: int = 0
    summaries_written: int = 0
    dry_run: bool = False


def run_census_import(
    client: httpx.Client,
    store: Store,
    request: CensusImportRequest,
    config: CensusApiConfig,
    *,
    area_metadata: AreaMetadata | None = None,
    now: int | None = None,
) -> CensusImportResult:
    """Import one Census variable for one or more vintages into the aggregate store."""
    start_year = request.year or default_year()
    years = clamp_years(request.years)
    category = coerce_category(request.category)
    variable = request.variable

    bound = log.bind(group=request.group, variable=variable, dataset=request.dataset)
    bound.info("census_import.start", year=start_year, years=years, dry_run=request.dry_run)

    if area_metadata is None:
        area_metadata = load_area_metadata(store)

    stat_id: str | None = None
    stat_name: str | None = None
    stat_type: str | None = None
    all_payloads: list[StatDataPayload] = []
    result_years: list[int] = []
    counts_by_year: dict[int, dict[str, int]] = {}

    for year in build_year_range(start_year, years):
        options = CensusOptions(
            dataset=request.dataset,
            group=request.group,
            year=year,
            variables=[variable],
            include_moe=request.include_moe,
        )
        group_meta = fetch_group_metadata(client, options, config)
        estimates, moe_map = resolve_variables(options, group_meta)
        if variable not in estimates:
            raise VariableNotAvailableError(
                f"Variable {variable} is not available in group {request.group} for year {year}."
            )
        variable_meta = group_meta.variables[variable]

        moe_variables = list(moe_map.values()) if request.include_moe else []
        zip_records = fetch_zip_records(client, options, [variable], moe_variables, config)
        county_records = fetch_county_records(client, options, [variable], moe_variables, config)
        maps = build_data_maps(
            variable,
            moe_map.get(variable) if request.include_moe else None,
            zip_records,
            county_records,
            area_metadata,
        )
        counts_by_year[year] = summarize_data_maps(maps)
        bound.info("census_import.maps", year=year, **counts_by_year[year])

        if stat_name is None:
            stat_name = derive_stat_name(variable, variable_meta, group_meta)
        if stat_type is None:
            stat_type = infer_stat_type(variable_meta)
        if stat_id is None and not request.dry_run:
            ensured = ensure_stat_record(store, stat_name, variable_meta, category, now=now)
            stat_id = ensured.stat_id
            stat_type = ensured.stat_type

        all_payloads.extend(
            build_stat_data_payloads(
                stat_id or "",
                stat_name,
                stat_type,
                maps,
                PayloadMeta(
                    census_variable=variable,
                    census_survey=options.survey,
                    census_universe=group_meta.universe,
                    census_table_url=census_table_doc_url(year, options.dataset, options.group),
                    year=year,
                ),
            )
        )
        result_years.append(year)

    result = CensusImportResult(
        stat_id=stat_id,
        stat_name=stat_name or variable,
        stat_type=stat_type or "count",
        variable=variable,
        dataset=request.dataset,
        group=request.group,
        include_moe=request.include_moe,
        category=category,
        years_processed=sorted(set(result_years)),
        counts_by_year=counts_by_year,
        dry_run=request.dry_run,
    )

    if request.dry_run:
        bound.info("census_import.dry_run", payloads=len(all_payloads))
        return result

    written = apply_stat_data_payloads(store, all_payloads, now=now)
    result.rows_inserted = written.inserted
    result.rows_updated = written.updated
    result.summaries_written = written.summaries
    bound.info(
        "census_import.done",
        stat_id=stat_id,
        inserted=written.inserted,
        updated=written.updated,
        years=result.years_processed,
    )
    return result
