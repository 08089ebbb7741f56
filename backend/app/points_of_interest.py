from __future__ import annotations

import math
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from .aggregates import normalize_county_fips
from .scope_labels import (
    STATEWIDE_LABEL,
    format_county_scope_label,
    normalize_scope_label,
    strip_county_suffix,
)
from .store import Store, TxOp, transact_chunked, unwrap_rows, update, upsert_by

log = structlog.get_logger(__name__)

BoundaryType = Literal["ZIP", "COUNTY"]
ExtremaKind = Literal["high", "low"]
ScopeKey = Literal["oklahoma", "tulsa_area", "okc_area"]
RecomputeAction = Literal["recompute", "deactivate"]

BOUNDARY_TYPES: tuple[BoundaryType, ...] = ("ZIP", "COUNTY")
MAX_QUERY_LIMIT = 2000
TX_CHUNK_SIZE = 50
SKIP_REASON = "stat_not_enabled_or_not_public"

COUNTY_NAME_FALLBACK_BY_CODE = {
    "40017": "Canadian County",
    "40027": "Cleveland County",
    "40037": "Creek County",
    "40073": "Kingfisher County",
    "40081": "Lincoln County",
    "40083": "Logan County",
    "40109": "Oklahoma County",
    "40111": "Okmulgee County",
    "40113": "Osage County",
    "40117": "Pawnee County",
    "40125": "Pottawatomie County",
    "40131": "Rogers County",
    "40143": "Tulsa County",
    "40145": "Wagoner County",
    "40147": "Washington County",
}


@dataclass(frozen=True)
class ScopeDefinition:
    label: str
    county_codes: tuple[str, ...] | None


SCOPE_DEFINITIONS: dict[ScopeKey, ScopeDefinition] = {
    "oklahoma": ScopeDefinition(label="Oklahoma", county_codes=None),
    "tulsa_area": ScopeDefinition(
        label="Tulsa Area",
        county_codes=(
            "40143",  # Tulsa
            "40037",  # Creek
            "40111",  # Okmulgee
            "40113",  # Osage
            "40117",  # Pawnee
            "40131",  # Rogers
            "40145",  # Wagoner
            "40147",  # Washington
        ),
    ),
    "okc_area": ScopeDefinition(
        label="Oklahoma City Area",
        county_codes=(
            "40109",  # Oklahoma
            "40017",  # Canadian
            "40027",  # Cleveland
            "40073",  # Kingfisher
            "40081",  # Lincoln
            "40083",  # Logan
            "40125",  # Pottawatomie
        ),
    ),
}


class StatNotFoundError(RuntimeError):
    pass


@dataclass
class AreaIndex:
    all_zip_codes: set[str] = field(default_factory=set)
    all_county_codes: set[str] = field(default_factory=set)
    county_label_by_code: dict[str, str] = field(default_factory=dict)
    zip_codes_by_county_label: dict[str, set[str]] = field(default_factory=dict)
    area_name_by_boundary: dict[str, dict[str, str]] = field(
        default_factory=lambda: {"ZIP": {}, "COUNTY": {}}
    )


@dataclass
class ScopeMembership:
    zip: set[str] = field(default_factory=set)
    county: set[str] = field(default_factory=set)
    county_scope_labels: set[str] = field(default_factory=set)

    def codes(self, boundary_type: str) -> set[str]:
        return self.zip if boundary_type == "ZIP" else self.county


@dataclass(frozen=True)
class SummaryContext:
    boundary_type: str
    parent_area: str
    date: str
    normalized_parent_area: str

    @property
    def key(self) -> str:
        return context_key(self.boundary_type, self.parent_area, self.date)


@dataclass(frozen=True)
class StatDataRow:
    boundary_type: str
    parent_area: str
    date: str
    data: dict[str, float]


@dataclass(frozen=True)
class AreaValue:
    area_code: str
    value: float


@dataclass(frozen=True)
class Extrema:
    high: AreaValue | None
    low: AreaValue | None
    considered: int


@dataclass(frozen=True)
class ComputedPoiRecord:
    poi_key: str
    stat_id: str
    stat_category: str | None
    stat_name: str | None
    boundary_type: str
    scope_key: str
    scope_label: str
    extrema_kind: str
    area_code: str
    area_name: str | None
    value: float
    good_if_up: bool | None
    is_active: bool
    computed_at: int
    source_date: str | None
    run_id: str

    def to_attrs(self) -> dict[str, Any]:
        return {
            "statId": self.stat_id,
            "statCategory": self.stat_category,
            "statName": self.stat_name,
            "boundaryType": self.boundary_type,
            "scopeKey": self.scope_key,
            "scopeLabel": self.scope_label,
            "extremaKind": self.extrema_kind,
            "areaCode": self.area_code,
            "areaName": self.area_name,
            "value": self.value,
            "goodIfUp": self.good_if_up,
            "isActive": self.is_active,
            "computedAt": self.computed_at,
            "sourceDate": self.source_date,
            "runId": self.run_id,
        }


@dataclass
class PoiRecomputeResult:
    ok: bool
    action: str
    stat_id: str
    run_id: str
    computed_at: int
    rows_upserted: int
    rows_deactivated: int
    rows_considered: int
    skipped: bool = False
    reason: str | None = None


def normalize_boundary_type(value: Any) -> str | None:
    return value if value in BOUNDARY_TYPES else None


def normalize_visibility(value: Any) -> str | None:
    return value if value in {"inactive", "private", "public"} else None


def normalize_finite_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def normalize_data_map(value: Any) -> dict[str, float]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, float] = {}
    for key, raw in value.items():
        number = normalize_finite_number(raw)
        if number is not None:
            out[key] = number
    return out


def make_poi_key(stat_id: str, scope_key: str, boundary_type: str, extrema_kind: str) -> str:
    return f"{stat_id}::{scope_key}::{boundary_type}::{extrema_kind}"


def create_run_id(now: int | None = None) -> str:
    stamp = now if now is not None else int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"poi_{stamp}_{suffix}"


def context_key(boundary_type: str, parent_area: str, date: str) -> str:
    return f"{boundary_type}::{parent_area}::{date}"


def get_stat_effective_visibility(stat: dict[str, Any]) -> str:
    effective = normalize_visibility(stat.get("visibilityEffective"))
    if effective:
        return effective
    declared = normalize_visibility(stat.get("visibility"))
    if declared:
        return declared
    if stat.get("active") is False:
        return "inactive"
    return "public"


def _county_label_for_code(code: str, name: str | None = None) -> str | None:
    return (
        format_county_scope_label(name)
        or format_county_scope_label(COUNTY_NAME_FALLBACK_BY_CODE.get(code))
        or normalize_scope_label(name)
    )


def _parent_county_label(parent: Any, index: AreaIndex) -> str | None:
    """Label of the county a ZIP belongs to; ``parent`` is a county code (3 or 5 digits) or name."""
    if not isinstance(parent, str) or not parent.strip():
        return None
    parent = parent.strip()
    if parent.isdigit():
        code = normalize_county_fips(parent)
        return index.county_label_by_code.get(code or "") or index.county_label_by_code.get(parent)
    return format_county_scope_label(parent) or normalize_scope_label(parent)


def build_area_index(rows: list[dict[str, Any]]) -> AreaIndex:
    index = AreaIndex()
    valid = [
        row
        for row in rows
        if row.get("code") and row.get("kind") and row.get("name") and row.get("isActive") is not False
    ]

    # Counties first so a ZIP whose parent is a county code resolves to that county's label.
    for row in valid:
        if normalize_boundary_type(row["kind"]) != "COUNTY":
            continue
        code = row["code"]
        index.area_name_by_boundary["COUNTY"][code] = row["name"]
        index.all_county_codes.add(code)
        label = _county_label_for_code(code, row["name"])
        if label:
            index.county_label_by_code[code] = label

    for row in valid:
        if normalize_boundary_type(row["kind"]) != "ZIP":
            continue
        code = row["code"]
        index.area_name_by_boundary["ZIP"][code] = row["name"]
        index.all_zip_codes.add(code)

        parent_label = _parent_county_label(row.get("parentCode"), index)
        if not parent_label:
            continue
        index.zip_codes_by_county_label.setdefault(parent_label, set()).add(code)

    return index


def build_scope_membership(index: AreaIndex) -> dict[str, ScopeMembership]:
    out: dict[str, ScopeMembership] = {}
    for scope_key, definition in SCOPE_DEFINITIONS.items():
        if definition.county_codes is None:
            out[scope_key] = ScopeMembership(
                zip=set(index.all_zip_codes),
                county=set(index.all_county_codes),
                county_scope_labels=set(index.county_label_by_code.values()),
            )
            continue

        membership = ScopeMembership()
        for county_code in definition.county_codes:
            membership.county.add(county_code)
            fallback = COUNTY_NAME_FALLBACK_BY_CODE.get(county_code)
            county_label = (
                index.county_label_by_code.get(county_code)
                or format_county_scope_label(fallback)
                or normalize_scope_label(fallback)
            )
            if not county_label:
                continue
            membership.county_scope_labels.add(county_label)
            membership.zip.update(index.zip_codes_by_county_label.get(county_label, set()))
        out[scope_key] = membership
    return out


def build_parent_area_alias_set(scope: ScopeMembership) -> set[str]:
    """Parent-area labels, as written by ingestion, that belong to a scope."""
    aliases: set[str] = set()
    statewide = normalize_scope_label(STATEWIDE_LABEL)
    if statewide:
        aliases.add(statewide)
    for county_label in scope.county_scope_labels:
        for alias in (
            normalize_scope_label(county_label),
            normalize_scope_label(strip_county_suffix(county_label)),
            format_county_scope_label(county_label),
        ):
            if alias:
                aliases.add(alias)
    return aliases


def extract_extrema(data: dict[str, Any], membership: set[str]) -> Extrema:
    entries = sorted(
        (code, float(value))
        for code, value in data.items()
        if code in membership
        and isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
    if not entries:
        return Extrema(high=None, low=None, considered=0)

    high = low = entries[0]
    for entry in entries:
        if entry[1] > high[1]:
            high = entry
        if entry[1] < low[1]:
            low = entry

    return Extrema(
        high=AreaValue(area_code=high[0], value=high[1]),
        low=AreaValue(area_code=low[0], value=low[1]),
        considered=len(entries),
    )


def merge_context_rows(
    contexts: list[SummaryContext],
    rows_by_key: dict[str, StatDataRow],
) -> tuple[dict[str, float], str | None]:
    """Overlay each context's data map, oldest date first, so the latest date wins per area."""
    merged: dict[str, float] = {}
    source_date: str | None = None
    for ctx in sorted(contexts, key=lambda c: (c.date, c.parent_area)):
        row = rows_by_key.get(ctx.key)
        if row is None:
            continue
        if source_date is None or row.date > source_date:
            source_date = row.date
        merged.update(row.data)
    return merged, source_date


def fetch_stat(store: Store, stat_id: str) -> dict[str, Any] | None:
    resp = store.query(
        {
            "stats": {
                "$": {
                    "where": {"id": stat_id},
                    "limit": 1,
                    "fields": [
                        "id",
                        "name",
                        "label",
                        "category",
                        "goodIfUp",
                        "pointsOfInterestEnabled",
                        "visibility",
                        "visibilityEffective",
                        "active",
                    ],
                }
            }
        }
    )
    rows = unwrap_rows(resp, "stats")
    return rows[0] if rows else None


def fetch_areas(store: Store) -> list[dict[str, Any]]:
    resp = store.query(
        {
            "areas": {
                "$": {
                    "where": {"kind": {"$in": list(BOUNDARY_TYPES)}},
                    "fields": ["code", "kind", "name", "parentCode", "isActive"],
                    "limit": MAX_QUERY_LIMIT,
                }
            }
        }
    )
    out = []
    for row in unwrap_rows(resp, "areas"):
        code, kind, name = row.get("code"), row.get("kind"), row.get("name")
        if not all(isinstance(v, str) and v for v in (code, kind, name)):
            continue
        parent = row.get("parentCode")
        active = row.get("isActive")
        out.append(
            {
                "code": code,
                "kind": kind,
                "name": name,
                "parentCode": parent if isinstance(parent, str) else None,
                "isActive": active if isinstance(active, bool) else None,
            }
        )
    return out


def fetch_summary_contexts(store: Store, stat_id: str, boundary_type: str) -> list[SummaryContext]:
    resp = store.query(
        {
            "statDataSummaries": {
                "$": {
                    "where": {"statId": stat_id, "name": "root", "boundaryType": boundary_type},
                    "fields": ["parentArea", "date", "boundaryType"],
                    "limit": MAX_QUERY_LIMIT,
                }
            }
        }
    )
    out = []
    for row in unwrap_rows(resp, "statDataSummaries"):
        parent_area = row.get("parentArea")
        date = row.get("date")
        normalized = normalize_scope_label(parent_area)
        if not isinstance(parent_area, str) or not isinstance(date, str) or not normalized:
            continue
        out.append(
            SummaryContext(
                boundary_type=boundary_type,
                parent_area=parent_area,
                date=date,
                normalized_parent_area=normalized,
            )
        )
    return out


def fetch_stat_data_rows_for_contexts(
    store: Store,
    stat_id: str,
    boundary_type: str,
    contexts: list[SummaryContext],
) -> dict[str, StatDataRow]:
    if not contexts:
        return {}
    parent_areas = sorted({ctx.parent_area for ctx in contexts})
    dates = sorted({ctx.date for ctx in contexts})
    resp = store.query(
        {
            "statData": {
                "$": {
                    "where": {
                        "statId": stat_id,
                        "name": "root",
                        "boundaryType": boundary_type,
                        "parentArea": {"$in": parent_areas},
                        "date": {"$in": dates},
                    },
                    "fields": ["boundaryType", "parentArea", "date", "data"],
                    "limit": MAX_QUERY_LIMIT,
                }
            }
        }
    )
    out: dict[str, StatDataRow] = {}
    for row in unwrap_rows(resp, "statData"):
        parent_area = row.get("parentArea")
        date = row.get("date")
        parsed_boundary = normalize_boundary_type(row.get("boundaryType"))
        if not isinstance(parent_area, str) or not isinstance(date, str) or not parsed_boundary:
            continue
        out[context_key(parsed_boundary, parent_area, date)] = StatDataRow(
            boundary_type=parsed_boundary,
            parent_area=parent_area,
            date=date,
            data=normalize_data_map(row.get("data")),
        )
    return out


def build_computed_records(
    stat: dict[str, Any],
    memberships: dict[str, ScopeMembership],
    summaries_by_boundary: dict[str, list[SummaryContext]],
    rows_by_boundary: dict[str, dict[str, StatDataRow]],
    areas: AreaIndex,
    computed_at: int,
    run_id: str,
) -> tuple[list[ComputedPoiRecord], int]:
    records: list[ComputedPoiRecord] = []
    rows_considered = 0
    label = stat.get("label")
    stat_name = label if isinstance(label, str) and label.strip() else stat.get("name")
    good_if_up = stat.get("goodIfUp") if isinstance(stat.get("goodIfUp"), bool) else None

    for scope_key, definition in SCOPE_DEFINITIONS.items():
        membership = memberships[scope_key]
        aliases = build_parent_area_alias_set(membership)

        for boundary_type in BOUNDARY_TYPES:
            contexts = [
                ctx
                for ctx in summaries_by_boundary.get(boundary_type, [])
                if ctx.normalized_parent_area in aliases
            ]
            if not contexts:
                continue

            merged, source_date = merge_context_rows(contexts, rows_by_boundary.get(boundary_type, {}))
            extrema = extract_extrema(merged, membership.codes(boundary_type))
            rows_considered += extrema.considered
            if extrema.high is None:
                continue

            winners = [("high", extrema.high)]
            if extrema.low is not None and extrema.low.area_code != extrema.high.area_code:
                winners.append(("low", extrema.low))

            for kind, winner in winners:
                records.append(
                    ComputedPoiRecord(
                        poi_key=make_poi_key(stat["id"], scope_key, boundary_type, kind),
                        stat_id=stat["id"],
                        stat_category=stat.get("category"),
                        stat_name=stat_name,
                        boundary_type=boundary_type,
                        scope_key=scope_key,
                        scope_label=definition.label,
                        extrema_kind=kind,
                        area_code=winner.area_code,
                        area_name=areas.area_name_by_boundary[boundary_type].get(winner.area_code),
                        value=winner.value,
                        good_if_up=good_if_up,
                        is_active=True,
                        computed_at=computed_at,
                        source_date=source_date,
                        run_id=run_id,
                    )
                )

    return records, rows_considered


def fetch_existing_poi_rows(store: Store, stat_id: str) -> list[dict[str, Any]]:
    resp = store.query(
        {
            "pointsOfInterest": {
                "$": {
                    "where": {"statId": stat_id},
                    "fields": ["id", "poiKey", "isActive"],
                    "limit": MAX_QUERY_LIMIT,
                }
            }
        }
    )
    out = []
    for row in unwrap_rows(resp, "pointsOfInterest"):
        if not isinstance(row.get("id"), str) or not isinstance(row.get("poiKey"), str):
            continue
        active = row.get("isActive")
        out.append(
            {
                "id": row["id"],
                "poiKey": row["poiKey"],
                "isActive": active if isinstance(active, bool) else None,
            }
        )
    return out


def run_points_of_interest_recompute(
    store: Store,
    stat_id: str,
    *,
    action: RecomputeAction = "recompute",
    force: bool = False,
    run_id: str | None = None,
    now: int | None = None,
) -> PoiRecomputeResult:
    computed_at = now if now is not None else int(time.time() * 1000)
    run_id = run_id or create_run_id(computed_at)
    bound = log.bind(stat_id=stat_id, run_id=run_id, action=action)

    stat = fetch_stat(store, stat_id)
    if not stat:
        raise StatNotFoundError(f"Stat not found: {stat_id}")

    deactivate_only = (
        action == "deactivate"
        or get_stat_effective_visibility(stat) != "public"
        or (not force and stat.get("pointsOfInterestEnabled") is not True)
    )

    records: list[ComputedPoiRecord] = []
    rows_considered = 0

    if not deactivate_only:
        area_index = build_area_index(fetch_areas(store))
        memberships = build_scope_membership(area_index)
        summaries = {
            boundary_type: fetch_summary_contexts(store, stat_id, boundary_type)
            for boundary_type in BOUNDARY_TYPES
        }

        # One statData query per boundary covers every scope.
        required: dict[str, dict[str, SummaryContext]] = {b: {} for b in BOUNDARY_TYPES}
        for membership in memberships.values():
            aliases = build_parent_area_alias_set(membership)
            for boundary_type in BOUNDARY_TYPES:
                for ctx in summaries[boundary_type]:
                    if ctx.normalized_parent_area in aliases:
                        required[boundary_type][ctx.key] = ctx

        rows_by_boundary = {
            boundary_type: fetch_stat_data_rows_for_contexts(
                store, stat_id, boundary_type, list(required[boundary_type].values())
            )
            for boundary_type in BOUNDARY_TYPES
        }

        records, rows_considered = build_computed_records(
            stat,
            memberships,
            summaries,
            rows_by_boundary,
            area_index,
            computed_at,
            run_id,
        )

    existing_rows = fetch_existing_poi_rows(store, stat_id)
    next_active_keys = {record.poi_key for record in records}
    deactivate_ops: list[TxOp] = [
        update("pointsOfInterest", row["id"], {"isActive": False, "computedAt": computed_at, "runId": run_id})
        for row in existing_rows
        if row["poiKey"] not in next_active_keys and row["isActive"] is not False
    ]
    upsert_ops = [
        upsert_by("pointsOfInterest", "poiKey", record.poi_key, record.to_attrs())
        for record in records
    ]

    transact_chunked(store, upsert_ops, TX_CHUNK_SIZE)
    transact_chunked(store, deactivate_ops, TX_CHUNK_SIZE)

    skipped = deactivate_only and action == "recompute"
    bound.info(
        "poi.recompute.done",
        upserted=len(upsert_ops),
        deactivated=len(deactivate_ops),
        considered=rows_considered,
        skipped=skipped,
    )
    return PoiRecomputeResult(
        ok=True,
        action=action,
        stat_id=stat_id,
        run_id=run_id,
        computed_at=computed_at,
        rows_upserted=len(upsert_ops),
        rows_deactivated=len(deactivate_ops),
        rows_considered=rows_considered,
        skipped=skipped,
        reason=SKIP_REASON if skipped else None,
    )


@dataclass
class BackfillResult:
    success: int = 0
    failed: int = 0
    upserted: int = 0
    deactivated: int = 0
    failures: dict[str, str] = field(default_factory=dict)


def backfill_points_of_interest(store: Store, *, all_stats: bool = False, force: bool = False) -> BackfillResult:
    """Recompute every enabled statistic (or every statistic with ``all_stats``)."""
    resp = store.query(
        {
            "stats": {
                "$": {
                    "fields": ["id", "name", "pointsOfInterestEnabled"],
                    "order": {"name": "asc"},
                    "limit": 4000,
                }
            }
        }
    )
    stat_ids = [
        row["id"]
        for row in unwrap_rows(resp, "stats")
        if isinstance(row.get("id"), str) and (all_stats or row.get("pointsOfInterestEnabled") is True)
    ]
    log.info("poi.backfill.start", stats=len(stat_ids), all_stats=all_stats, force=force)

    result = BackfillResult()
    for stat_id in stat_ids:
        try:
            outcome = run_points_of_interest_recompute(store, stat_id, force=force)
        except Exception as exc:  # reported per statistic
            result.failed += 1
            result.failures[stat_id] = str(exc)
            log.error("poi.backfill.failed", stat_id=stat_id, error=str(exc))
            continue
        result.success += 1
        result.upserted += outcome.rows_upserted
        result.deactivated += outcome.rows_deactivated

    log.info(
        "poi.backfill.done",
        success=result.success,
        failed=result.failed,
        upserted=result.upserted,
        deactivated=result.deactivated,
    )
    return result
