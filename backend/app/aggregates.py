from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from .census_service import (
    OK_STATE_FIPS,
    ZIP_GEOGRAPHY,
    CensusVariableMeta,
    infer_stat_type,
    parse_stat_value,
)
from .scope_labels import (
    NORMALIZED_STATEWIDE_LABEL,
    format_county_scope_label,
    normalize_scope_label,
)
from .store import Store, TxOp, new_id, transact_chunked, unwrap_rows, update, upsert_by

log = structlog.get_logger(__name__)

ZIP_PREFIXES_OK = (
    "730",
    "731",
    "732",
    "733",
    "734",
    "735",
    "736",
    "737",
    "738",
    "739",
    "740",
    "741",
    "743",
    "744",
    "745",
    "746",
    "747",
    "748",
    "749",
)

DEFAULT_CATEGORY = "food"
DEFAULT_SERIES_NAME = "root"
STAT_SOURCE = "Census"
MAX_TX_BATCH = 20
SUMMARY_CHUNK_SIZE = 50
MAX_QUERY_LIMIT = 2000


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_county_fips(county_id: Any) -> str | None:
    if not isinstance(county_id, str):
        return None
    trimmed = county_id.strip()
    if not trimmed:
        return None
    if len(trimmed) == 5:
        return trimmed
    if len(trimmed) == 3:
        return f"{OK_STATE_FIPS}{trimmed}"
    if len(trimmed) < 5:
        return f"{OK_STATE_FIPS}{trimmed.zfill(3)}"
    return trimmed


def is_oklahoma_zip(zip_code: Any) -> bool:
    if not isinstance(zip_code, str) or not zip_code:
        return False
    return zip_code[:3] in ZIP_PREFIXES_OK


@dataclass
class AreaMetadata:
    ok_zips: set[str] = field(default_factory=set)
    zip_to_county_id: dict[str, str] = field(default_factory=dict)
    zip_to_county_name: dict[str, str] = field(default_factory=dict)
    county_names: dict[str, str] = field(default_factory=dict)


def build_area_metadata(area_rows: Iterable[dict[str, Any]]) -> AreaMetadata:
    """Resolve every in-state ZIP to its county code and canonical county label.

    A ZIP's ``parentCode`` may hold either a county FIPS code or a county name.
    """
    rows = [row for row in area_rows if isinstance(row, dict) and row.get("isActive") is not False]
    metadata = AreaMetadata()
    code_by_label: dict[str, str] = {}

    for row in rows:
        if row.get("kind") != "COUNTY":
            continue
        code = normalize_county_fips(row.get("code"))
        label = format_county_scope_label(row.get("name"))
        if not code or not label:
            continue
        metadata.county_names[code] = label
        code_by_label[label] = code

    for row in rows:
        if row.get("kind") != "ZIP":
            continue
        zip_code = row.get("code")
        if not is_oklahoma_zip(zip_code):
            continue
        metadata.ok_zips.add(zip_code)

        parent = row.get("parentCode")
        if not isinstance(parent, str) or not parent.strip():
            continue
        parent = parent.strip()
        if parent.isdigit():
            county_id = normalize_county_fips(parent)
            county_name = metadata.county_names.get(county_id or "")
        else:
            county_name = format_county_scope_label(parent)
            county_id = code_by_label.get(county_name or "")
        if county_id:
            metadata.zip_to_county_id[zip_code] = county_id
        if county_name:
            metadata.zip_to_county_name[zip_code] = normalize_scope_label(county_name) or county_name

    return metadata


def load_area_metadata(store: Store) -> AreaMetadata:
    resp = store.query(
        {
            "areas": {
                "$": {
                    "where": {"kind": {"$in": ["ZIP", "COUNTY"]}},
                    "fields": ["code", "kind", "name", "parentCode", "isActive"],
                    "limit": MAX_QUERY_LIMIT,
                }
            }
        }
    )
    return build_area_metadata(unwrap_rows(resp, "areas"))


@dataclass
class DataMaps:
    zip: dict[str, float] = field(default_factory=dict)
    zip_moe: dict[str, float] = field(default_factory=dict)
    county: dict[str, float] = field(default_factory=dict)
    county_moe: dict[str, float] = field(default_factory=dict)
    county_zip_buckets: dict[str, dict[str, float]] = field(default_factory=dict)
    county_zip_moe: dict[str, dict[str, float]] | None = None


def build_data_maps(
    variable: str,
    moe_variable: str | None,
    zip_records: list[dict[str, Any]],
    county_records: list[dict[str, Any]],
    metadata: AreaMetadata,
) -> DataMaps:
    maps = DataMaps(county_zip_moe={} if moe_variable else None)

    for record in zip_records:
        zip_code = record.get(ZIP_GEOGRAPHY)
        if zip_code not in metadata.ok_zips:
            continue
        county_id = metadata.zip_to_county_id.get(zip_code)
        county_name = metadata.zip_to_county_name.get(zip_code)
        bucket_key = f"{county_id}::{county_name}" if county_id and county_name else None

        estimate = parse_stat_value(record.get(variable))
        if estimate is not None:
            maps.zip[zip_code] = estimate
            if bucket_key:
                maps.county_zip_buckets.setdefault(bucket_key, {})[zip_code] = estimate

        if moe_variable:
            margin = parse_stat_value(record.get(moe_variable))
            if margin is not None:
                maps.zip_moe[zip_code] = margin
                if bucket_key and maps.county_zip_moe is not None:
                    maps.county_zip_moe.setdefault(bucket_key, {})[zip_code] = margin

    for record in county_records:
        if record.get("state") != OK_STATE_FIPS:
            continue
        county_id = normalize_county_fips(record.get("county"))
        if not county_id:
            continue
        estimate = parse_stat_value(record.get(variable))
        if estimate is not None:
            maps.county[county_id] = estimate
        if moe_variable:
            margin = parse_stat_value(record.get(moe_variable))
            if margin is not None:
                maps.county_moe[county_id] = margin

    return maps


def summarize_data_maps(maps: DataMaps) -> dict[str, int]:
    return {
        "zip_count": len(maps.zip),
        "county_count": len(maps.county),
        "county_zip_groups": len(maps.county_zip_buckets),
    }


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _sum_number_maps(maps: Iterable[dict[str, float]]) -> dict[str, float]:
    out: dict[str, float] = {}
    for values in maps:
        for key, value in values.items():
            total = out.get(key, 0.0) + value
            if _finite(total):
                out[key] = total
    return out


def _ratio_number_map(numerator: dict[str, float], denominator: dict[str, float]) -> dict[str, float]:
    out: dict[str, float] = {}
    for key, num in numerator.items():
        den = denominator.get(key)
        if _finite(num) and _finite(den) and den != 0:
            out[key] = num / den
    return out


def sum_maps(maps: list[DataMaps]) -> DataMaps:
    """Add estimates area by area; an area missing from one input counts as zero there.

    Margins of error are not carried, since they do not add linearly.
    """
    buckets: dict[str, dict[str, float]] = {}
    for key in dict.fromkeys(k for m in maps for k in m.county_zip_buckets):
        summed = _sum_number_maps(m.county_zip_buckets.get(key, {}) for m in maps)
        if summed:
            buckets[key] = summed
    return DataMaps(
        zip=_sum_number_maps(m.zip for m in maps),
        county=_sum_number_maps(m.county for m in maps),
        county_zip_buckets=buckets,
    )


def subtract_maps(left: DataMaps, right: DataMaps) -> DataMaps:
    def diff(a: dict[str, float], b: dict[str, float]) -> dict[str, float]:
        out: dict[str, float] = {}
        for key in dict.fromkeys([*a, *b]):
            value = a.get(key, 0.0) - b.get(key, 0.0)
            if _finite(value):
                out[key] = value
        return out

    buckets: dict[str, dict[str, float]] = {}
    for key in dict.fromkeys([*left.county_zip_buckets, *right.county_zip_buckets]):
        bucket = diff(left.county_zip_buckets.get(key, {}), right.county_zip_buckets.get(key, {}))
        if bucket:
            buckets[key] = bucket
    return DataMaps(zip=diff(left.zip, right.zip), county=diff(left.county, right.county), county_zip_buckets=buckets)


def ratio_data_maps(numerator: DataMaps, denominator: DataMaps) -> DataMaps:
    """Statewide ZIP and county shares only; no per-county ZIP buckets."""
    return DataMaps(
        zip=_ratio_number_map(numerator.zip, denominator.zip),
        county=_ratio_number_map(numerator.county, denominator.county),
    )


def build_percentage_data_maps(numerator: DataMaps, denominator: DataMaps) -> DataMaps:
    """Shares at every level, including per-county ZIP buckets present on both sides.

    Areas with a missing or zero denominator are dropped.
    """
    maps = ratio_data_maps(numerator, denominator)
    for key, bucket in numerator.county_zip_buckets.items():
        den_bucket = denominator.county_zip_buckets.get(key)
        if not den_bucket:
            continue
        ratios = _ratio_number_map(bucket, den_bucket)
        if ratios:
            maps.county_zip_buckets[key] = ratios
    return maps


@dataclass(frozen=True)
class PayloadMeta:
    census_variable: str
    census_survey: str
    census_table_url: str
    year: int
    census_universe: str | None = None


@dataclass
class StatDataPayload:
    stat_id: str
    stat_name: str
    stat_type: str
    parent_area: str
    boundary_type: str
    data: dict[str, float]
    meta: PayloadMeta
    margin: dict[str, float] | None = None
    name: str | None = None

    @property
    def date(self) -> str:
        return str(self.meta.year)

    @property
    def series_name(self) -> str:
        return self.name or DEFAULT_SERIES_NAME


def build_stat_data_payloads(
    stat_id: str,
    stat_name: str,
    stat_type: str,
    maps: DataMaps,
    meta: PayloadMeta,
    name: str | None = None,
) -> list[StatDataPayload]:
    payloads = [
        StatDataPayload(
            stat_id=stat_id,
            stat_name=stat_name,
            stat_type=stat_type,
            parent_area=NORMALIZED_STATEWIDE_LABEL,
            boundary_type="ZIP",
            data=maps.zip,
            margin=maps.zip_moe or None,
            meta=meta,
            name=name,
        )
    ]

    for bucket_key, bucket in maps.county_zip_buckets.items():
        county_id, _, county_name = bucket_key.partition("::")
        if not county_id or not county_name:
            continue
        payloads.append(
            StatDataPayload(
                stat_id=stat_id,
                stat_name=stat_name,
                stat_type=stat_type,
                parent_area=normalize_scope_label(county_name) or county_name,
                boundary_type="ZIP",
                data=bucket,
                margin=(maps.county_zip_moe or {}).get(bucket_key),
                meta=meta,
                name=name,
            )
        )

    payloads.append(
        StatDataPayload(
            stat_id=stat_id,
            stat_name=stat_name,
            stat_type=stat_type,
            parent_area=NORMALIZED_STATEWIDE_LABEL,
            boundary_type="COUNTY",
            data=maps.county,
            margin=maps.county_moe or None,
            meta=meta,
            name=name,
        )
    )
    return payloads


def payload_key(payload: StatDataPayload) -> str:
    return f"{payload.boundary_type}::{payload.parent_area}::{payload.date}::{payload.series_name}"


def existing_row_key(row: dict[str, Any]) -> str:
    name = row.get("name") or DEFAULT_SERIES_NAME
    return f"{row.get('boundaryType')}::{row.get('parentArea')}::{row.get('date')}::{name}"


def merge_number_maps(existing: Any, incoming: dict[str, float]) -> dict[str, float]:
    merged = dict(existing) if isinstance(existing, dict) else {}
    merged.update(incoming)
    return merged


def fetch_existing_stat_data(store: Store, stat_id: str) -> dict[str, dict[str, Any]]:
    resp = store.query({"statData": {"$": {"where": {"statId": stat_id}}}})
    return {existing_row_key(row): row for row in unwrap_rows(resp, "statData")}


@dataclass
class WriteResult:
    inserted: int = 0
    updated: int = 0
    summaries: int = 0
    batches: int = 0


def apply_stat_data_payloads(
    store: Store,
    payloads: list[StatDataPayload],
    *,
    now: int | None = None,
    write_summaries: bool = True,
) -> WriteResult:
    """Merge-write aggregate rows for one statistic.

    Rows are matched on (boundary, parent area, date, series name). Incoming
    values overwrite existing ones per area code; codes absent from the payload
    are kept. A failing batch aborts the call; earlier batches stay written.
    """
    result = WriteResult()
    if not payloads:
        return result

    now = now if now is not None else now_ms()
    stat_id = payloads[0].stat_id
    existing = fetch_existing_stat_data(store, stat_id)
    operations: list[TxOp] = []
    touched: set[str] = set()

    def flush() -> None:
        if not operations:
            return
        chunk = operations[:]
        operations.clear()
        store.transact(chunk)
        result.batches += 1

    for payload in payloads:
        key = payload_key(payload)
        base_fields: dict[str, Any] = {
            "statId": payload.stat_id,
            "name": payload.series_name,
            "statTitle": payload.stat_name,
            "statNameHint": payload.stat_name,
            "parentArea": payload.parent_area,
            "boundaryType": payload.boundary_type,
            "date": payload.date,
            "type": payload.stat_type,
            "source": STAT_SOURCE,
            "censusVariable": payload.meta.census_variable,
            "censusSurvey": payload.meta.census_survey,
            "censusUniverse": payload.meta.census_universe,
            "censusTableUrl": payload.meta.census_table_url,
        }

        existing_row = existing.get(key)
        if existing_row:
            merged_data = merge_number_maps(existing_row.get("data"), payload.data)
            updates = {**base_fields, "data": merged_data, "lastUpdated": now}
            if payload.margin:
                updates["marginOfError"] = merge_number_maps(
                    existing_row.get("marginOfError"), payload.margin
                )
            operations.append(update("statData", existing_row["id"], updates))
            existing[key] = {**existing_row, **updates}
            result.updated += 1
        else:
            row_id = new_id()
            record = {**base_fields, "data": dict(payload.data), "createdOn": now, "lastUpdated": now}
            if payload.margin:
                record["marginOfError"] = dict(payload.margin)
            operations.append(update("statData", row_id, record))
            existing[key] = {"id": row_id, **record}
            result.inserted += 1

        touched.add(build_summary_key(payload.stat_id, payload.series_name, payload.parent_area, payload.boundary_type))

        if len(operations) >= MAX_TX_BATCH:
            flush()

    flush()

    if write_summaries:
        entries = build_summary_entries(existing.values())
        selected = [entries[key] for key in sorted(touched) if key in entries]
        result.summaries = upsert_stat_data_summaries(store, selected, now=now)

    log.info(
        "stat_data.write.done",
        stat_id=stat_id,
        inserted=result.inserted,
        updated=result.updated,
        batches=result.batches,
        summaries=result.summaries,
    )
    return result


def build_summary_key(stat_id: str, name: str, parent_area: str, boundary_type: str) -> str:
    return f"{stat_id}::{name}::{parent_area}::{boundary_type}"


def compute_numeric_summary(data: Any) -> dict[str, float]:
    values = data.values() if isinstance(data, dict) else []
    numbers = [float(v) for v in values if _finite(v)]
    if not numbers:
        return {"count": 0, "sum": 0, "avg": 0, "min": 0, "max": 0}
    total = sum(numbers)
    return {
        "count": len(numbers),
        "sum": total,
        "avg": total / len(numbers),
        "min": min(numbers),
        "max": max(numbers),
    }


def build_summary_entries(rows: Iterable[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Collapse aggregate rows to one entry per summary key, keeping the latest date."""
    latest: dict[str, dict[str, Any]] = {}
    for row in rows:
        stat_id = row.get("statId")
        name = row.get("name")
        parent_area = row.get("parentArea")
        boundary_type = row.get("boundaryType")
        date = row.get("date")
        if isinstance(date, (int, float)) and not isinstance(date, bool):
            date = str(int(date))
        if not all(isinstance(v, str) and v for v in (stat_id, name, parent_area, boundary_type, date)):
            continue

        summary_key = build_summary_key(stat_id, name, parent_area, boundary_type)
        entry = latest.get(summary_key)
        min_date = date
        max_date = date
        if entry:
            min_date = min(entry["minDate"], date)
            max_date = max(entry["maxDate"], date)
            entry["minDate"] = min_date
            entry["maxDate"] = max_date
            if date < entry["date"]:
                continue

        latest[summary_key] = {
            "summaryKey": summary_key,
            "statId": stat_id,
            "name": name,
            "parentArea": parent_area,
            "boundaryType": boundary_type,
            "date": date,
            "minDate": min_date,
            "maxDate": max_date,
            "type": row.get("type") if isinstance(row.get("type"), str) else "count",
            **compute_numeric_summary(row.get("data")),
        }
    return latest


def upsert_stat_data_summaries(
    store: Store,
    entries: list[dict[str, Any]],
    *,
    now: int | None = None,
) -> int:
    now = now if now is not None else now_ms()
    ops = []
    for entry in entries:
        record = {key: value for key, value in entry.items() if key != "summaryKey"}
        record["updatedAt"] = now
        ops.append(upsert_by("statDataSummaries", "summaryKey", entry["summaryKey"], record))
    transact_chunked(store, ops, SUMMARY_CHUNK_SIZE)
    return len(ops)


@dataclass(frozen=True)
class StatRecordRef:
    stat_id: str
    stat_type: str
    created: bool = False


def _first_row(store: Store, where: dict[str, Any]) -> dict[str, Any] | None:
    resp = store.query({"stats": {"$": {"where": where, "limit": 1}}})
    rows = unwrap_rows(resp, "stats")
    return rows[0] if rows else None


def ensure_stat_record(
    store: Store,
    stat_name: str,
    variable_meta: CensusVariableMeta,
    category: str | None = None,
    *,
    now: int | None = None,
) -> StatRecordRef:
    now = now if now is not None else now_ms()
    external_id = f"census:{variable_meta.name}"
    stat_type = infer_stat_type(variable_meta)
    target_category = category or DEFAULT_CATEGORY

    existing = _first_row(store, {"neId": external_id})
    if existing:
        updates: dict[str, Any] = {"lastUpdated": now}
        if existing.get("category") != target_category:
            updates["category"] = target_category
        if existing.get("source") != STAT_SOURCE:
            updates["source"] = STAT_SOURCE
        if existing.get("name") != stat_name:
            updates["name"] = stat_name
        if len(updates) > 1:
            store.transact([update("stats", existing["id"], updates)])
        return StatRecordRef(stat_id=existing["id"], stat_type=stat_type)

    same_name = _first_row(store, {"name": stat_name})
    if same_name:
        updates = {"lastUpdated": now}
        if not same_name.get("neId"):
            updates["neId"] = external_id
        if same_name.get("category") != target_category:
            updates["category"] = target_category
        if same_name.get("source") != STAT_SOURCE:
            updates["source"] = STAT_SOURCE
        store.transact([update("stats", same_name["id"], updates)])
        return StatRecordRef(stat_id=same_name["id"], stat_type=stat_type)

    stat_id = new_id()
    store.transact(
        [
            update(
                "stats",
                stat_id,
                {
                    "name": stat_name,
                    "category": target_category,
                    "neId": external_id,
                    "source": STAT_SOURCE,
                    "goodIfUp": None,
                    "createdOn": now,
                    "lastUpdated": now,
                },
            )
        ]
    )
    log.info("stat.created", stat_id=stat_id, name=stat_name, ne_id=external_id)
    return StatRecordRef(stat_id=stat_id, stat_type=stat_type, created=True)


def backfill_stat_data_summaries(store: Store, *, page_size: int = 25) -> int:
    """Rebuild the summary index from every root aggregate row in the store."""
    rows: list[dict[str, Any]] = []
    offset = 0
    while True:
        resp = store.query(
            {
                "statData": {
                    "$": {
                        "where": {"name": DEFAULT_SERIES_NAME},
                        "fields": ["statId", "name", "parentArea", "boundaryType", "date", "type", "data"],
                        "order": {"statId": "asc"},
                        "limit": page_size,
                        "offset": offset,
                    }
                }
            }
        )
        page = unwrap_rows(resp, "statData")
        if not page:
            break
        rows.extend(page)
        offset += len(page)
        if offset % (page_size * 20) == 0:
            log.info("summaries.backfill.scan", scanned=offset)

    entries = build_summary_entries(rows)
    log.info("summaries.backfill.upsert", keys=len(entries))
    return upsert_stat_data_summaries(store, [entries[key] for key in sorted(entries)])
