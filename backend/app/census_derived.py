from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from .aggregates import (
    AreaMetadata,
    DataMaps,
    PayloadMeta,
    apply_stat_data_payloads,
    build_data_maps,
    build_percentage_data_maps,
    build_stat_data_payloads,
    ensure_stat_record,
    load_area_metadata,
    ratio_data_maps,
    subtract_maps,
    sum_maps,
)
from .census_import import DEFAULT_DATASET, build_year_range, clamp_years, coerce_category, default_year
from .census_service import (
    CensusGroupMeta,
    CensusOptions,
    CensusVariableMeta,
    census_table_doc_url,
    derive_stat_name,
    fetch_county_records,
    fetch_group_metadata,
    fetch_zip_records,
)
from .config import CensusApiConfig
from .store import Store

log = structlog.get_logger(__name__)

POPULATION_VARIABLE = "B01003_001E"
PERCENT_STAT_TYPE = "percent"


def _estimates(group: str, first: int, last: int) -> tuple[str, ...]:
    return tuple(f"{group}_{index:03d}E" for index in range(first, last + 1))


@dataclass(frozen=True)
class DerivedPercent:
    """A percent stat computed from the sum of some estimates over another estimate."""

    variable: str
    group: str
    numerators: tuple[str, ...]
    denominator: str
    concept: str
    name: str | None = None
    category: str | None = None

    @property
    def inputs(self) -> tuple[str, ...]:
        return (*self.numerators, self.denominator)


DERIVED_PERCENTS = (
    DerivedPercent(
        variable="B22003_002E_PCT",
        group="B22003",
        numerators=("B22003_002E",),
        denominator="B22003_001E",
        concept="Percentage of households receiving SNAP",
    ),
    DerivedPercent(
        variable="B12001_MARRIED_PERCENT",
        group="B12001",
        numerators=("B12001_004E", "B12001_010E"),
        denominator="B12001_001E",
        concept="Percentage of adults currently married",
        name="Married Percent",
        category="demographics",
    ),
)

# Inputs to a derived percent that are not worth a stat of their own.
DERIVED_ONLY_VARIABLES = frozenset({"B12001_001E", "B12001_004E", "B12001_010E"})


@dataclass(frozen=True)
class Segment:
    key: str
    variables: tuple[str, ...]
    source: str


@dataclass(frozen=True)
class Breakdown:
    """Shares of a Census table's total, written as named series under the Population stat."""

    prefix: str
    group: str
    total: str
    segments: tuple[Segment, ...]
    remainder: Segment | None = None

    @property
    def variables(self) -> list[str]:
        out = [self.total]
        for segment in self.segments:
            out.extend(segment.variables)
        return list(dict.fromkeys(out))


BREAKDOWNS = (
    Breakdown(
        prefix="ethnicity",
        group="B03002",
        total="B03002_001E",
        segments=(
            Segment("white", ("B03002_003E",), "B03002_003E"),
            Segment("black", ("B03002_004E",), "B03002_004E"),
            Segment("asian", ("B03002_006E",), "B03002_006E"),
            Segment("hispanic", ("B03002_012E",), "B03002_012E"),
        ),
        # Total less the four groups above.
        remainder=Segment("other", (), "B03002_other"),
    ),
    Breakdown(
        prefix="income",
        group="B19001",
        total="B19001_001E",
        segments=(
            Segment("low", _estimates("B19001", 2, 6), "B19001_low"),
            Segment("middle", _estimates("B19001", 7, 13), "B19001_middle"),
            Segment("high", _estimates("B19001", 14, 17), "B19001_high"),
        ),
    ),
    Breakdown(
        prefix="education",
        group="B15003",
        total="B15003_001E",
        segments=(
            Segment("hs_or_less", _estimates("B15003", 2, 16), "B15003_hs_or_less"),
            Segment("some_college", _estimates("B15003", 17, 20), "B15003_some_college"),
            Segment("bachelor_plus", _estimates("B15003", 21, 25), "B15003_bachelor_plus"),
        ),
    ),
)


@dataclass(frozen=True)
class DerivedImportRequest:
    group: str
    variables: tuple[str, ...]
    dataset: str = DEFAULT_DATASET
    year: int | None = None
    years: int = 1
    category: str | None = None


@dataclass
class DerivedWrite:
    stat_id: str
    stat_name: str
    series_name: str
    census_variable: str
    year: int
    inserted: int = 0
    updated: int = 0


def fetch_variable_maps(
    client: httpx.Client,
    options: CensusOptions,
    config: CensusApiConfig,
    metadata: AreaMetadata,
) -> tuple[CensusGroupMeta, dict[str, DataMaps]]:
    """Fetch estimates only (no margins) for the listed variables the group actually has."""
    group_meta = fetch_group_metadata(client, options, config)
    variables = [name for name in options.variables if name in group_meta.variables]
    zip_records = fetch_zip_records(client, options, variables, [], config)
    county_records = fetch_county_records(client, options, variables, [], config)
    maps = {
        variable: build_data_maps(variable, None, zip_records, county_records, metadata)
        for variable in variables
    }
    return group_meta, maps


def _has_values(maps: DataMaps | None) -> bool:
    return maps is not None and bool(maps.zip or maps.county)


def _write(
    store: Store,
    stat_id: str,
    stat_name: str,
    maps: DataMaps,
    meta: PayloadMeta,
    *,
    name: str | None = None,
    now: int | None = None,
) -> DerivedWrite:
    payloads = build_stat_data_payloads(stat_id, stat_name, PERCENT_STAT_TYPE, maps, meta, name=name)
    written = apply_stat_data_payloads(store, payloads, now=now)
    return DerivedWrite(
        stat_id=stat_id,
        stat_name=stat_name,
        series_name=payloads[0].series_name,
        census_variable=meta.census_variable,
        year=meta.year,
        inserted=written.inserted,
        updated=written.updated,
    )


def import_derived_percent(
    client: httpx.Client,
    store: Store,
    derived: DerivedPercent,
    options: CensusOptions,
    config: CensusApiConfig,
    metadata: AreaMetadata,
    *,
    category: str | None = None,
    now: int | None = None,
) -> DerivedWrite | None:
    options = CensusOptions(
        dataset=options.dataset, group=derived.group, year=options.year, variables=list(derived.inputs)
    )
    group_meta, maps = fetch_variable_maps(client, options, config, metadata)
    if not all(_has_values(maps.get(variable)) for variable in derived.inputs):
        log.warning("derived_percent.skipped", variable=derived.variable, year=options.year, reason="missing_inputs")
        return None

    first = derived.numerators[0]
    stat_name = derived.name or f"{derive_stat_name(first, group_meta.variables[first], group_meta)} (Percent)"
    variable_meta = CensusVariableMeta(
        name=derived.variable, label=stat_name, concept=derived.concept, predicate_type="float"
    )
    ref = ensure_stat_record(
        store, stat_name, variable_meta, derived.category or coerce_category(category), now=now
    )
    numerator = sum_maps([maps[variable] for variable in derived.numerators])
    percent_maps = build_percentage_data_maps(numerator, maps[derived.denominator])
    return _write(
        store,
        ref.stat_id,
        stat_name,
        percent_maps,
        PayloadMeta(
            census_variable=derived.variable,
            census_survey=options.survey,
            census_universe=group_meta.universe,
            census_table_url=census_table_doc_url(options.year, options.dataset, derived.group),
            year=options.year,
        ),
        now=now,
    )


def import_breakdown(
    client: httpx.Client,
    store: Store,
    breakdown: Breakdown,
    population_stat_id: str,
    options: CensusOptions,
    config: CensusApiConfig,
    metadata: AreaMetadata,
    *,
    now: int | None = None,
) -> list[DerivedWrite]:
    options = CensusOptions(
        dataset=options.dataset, group=breakdown.group, year=options.year, variables=breakdown.variables
    )
    group_meta, maps = fetch_variable_maps(client, options, config, metadata)
    total = maps.get(breakdown.total)
    if not _has_values(total):
        log.warning("breakdown.skipped", prefix=breakdown.prefix, year=options.year, reason="missing_totals")
        return []

    segment_maps: list[tuple[Segment, DataMaps]] = []
    for segment in breakdown.segments:
        parts = [maps[variable] for variable in segment.variables if variable in maps]
        if parts:
            segment_maps.append((segment, sum_maps(parts)))
    if breakdown.remainder is not None:
        known = sum_maps([segment_map for _, segment_map in segment_maps])
        segment_maps.append((breakdown.remainder, subtract_maps(total, known)))

    total_meta = group_meta.variables.get(breakdown.total)
    writes = []
    for segment, segment_map in segment_maps:
        series_name = f"{breakdown.prefix}:{segment.key}"
        writes.append(
            _write(
                store,
                population_stat_id,
                series_name,
                ratio_data_maps(segment_map, total),
                PayloadMeta(
                    census_variable=segment.source,
                    census_survey=options.survey,
                    census_universe=total_meta.concept if total_meta else None,
                    census_table_url=census_table_doc_url(options.year, options.dataset, breakdown.group),
                    year=options.year,
                ),
                name=series_name,
                now=now,
            )
        )
    log.info("breakdown.done", prefix=breakdown.prefix, year=options.year, series=len(writes))
    return writes


def run_derived_imports(
    client: httpx.Client,
    store: Store,
    request: DerivedImportRequest,
    config: CensusApiConfig,
    *,
    area_metadata: AreaMetadata | None = None,
    population_stat_id: str | None = None,
    now: int | None = None,
) -> list[DerivedWrite]:
    """Write the percent stats and demographic breakdowns a group import unlocks.

    A derived percent runs when every one of its inputs was imported from its
    group; breakdowns run once the Population stat exists.
    """
    requested = set(request.variables)
    percents = [d for d in DERIVED_PERCENTS if d.group == request.group and set(d.inputs) <= requested]
    breakdowns = BREAKDOWNS if population_stat_id and POPULATION_VARIABLE in requested else ()
    if not percents and not breakdowns:
        return []

    if area_metadata is None:
        area_metadata = load_area_metadata(store)

    writes: list[DerivedWrite] = []
    for year in build_year_range(request.year or default_year(), clamp_years(request.years)):
        options = CensusOptions(dataset=request.dataset, group=request.group, year=year)
        for derived in percents:
            write = import_derived_percent(
                client, store, derived, options, config, area_metadata, category=request.category, now=now
            )
            if write is not None:
                writes.append(write)
        for breakdown in breakdowns:
            writes.extend(
                import_breakdown(
                    client, store, breakdown, population_stat_id, options, config, area_metadata, now=now
                )
            )
    return writes
