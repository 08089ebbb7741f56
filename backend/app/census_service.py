from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from .config import CensusApiConfig

log = structlog.get_logger(__name__)

OK_STATE_FIPS = "40"
ZIP_GEOGRAPHY = "zip code tabulation area"
COUNTY_GEOGRAPHY = "county"

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# The API reports suppressed or unavailable estimates as large negative numbers
# (-999999999, -888888888, -666666666, ...).
SUPPRESSED_VALUE_THRESHOLD = -99999999

CUSTOM_LABELS = {
    "B22003_001E": "Total Households",
    "B22003_002E": "Households Receiving SNAP",
    "B22003_003E": "Households Receiving SNAP (Below Poverty)",
    "B22003_004E": "Households Receiving SNAP (At or Above Poverty)",
    "B22003_005E": "Households Not Receiving SNAP",
    "B22003_006E": "Households Not Receiving SNAP (Below Poverty)",
    "B22003_007E": "Households Not Receiving SNAP (At or Above Poverty)",
    "B01002_001E": "Median Age",
    "B01003_001E": "Population",
    "B12001_001E": "Population 15+",
    "B12001_004E": "Married Population (Male)",
    "B12001_010E": "Married Population (Female)",
}


@dataclass(frozen=True)
class CensusOptions:
    dataset: str
    group: str
    year: int
    variables: list[str] = field(default_factory=list)
    include_moe: bool = False

    @property
    def survey(self) -> str:
        return self.dataset.rstrip("/").split("/")[-1] or "acs5"


@dataclass(frozen=True)
class CensusVariableMeta:
    name: str
    label: str
    concept: str | None = None
    predicate_type: str | None = None


@dataclass(frozen=True)
class CensusGroupMeta:
    group: str
    label: str
    concept: str
    universe: str | None
    variables: dict[str, CensusVariableMeta]


class UpstreamAPIError(RuntimeError):
    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class VariableNotAvailableError(RuntimeError):
    pass


def _backoff_seconds(attempt: int) -> float:
    return min(8.0, 0.5 * (2**attempt))


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


def census_table_doc_url(year: int, dataset: str, group: str) -> str:
    return f"https://api.census.gov/data/{year}/{dataset}/groups/{group}.html"


def build_census_url(config: CensusApiConfig, year: int, dataset: str, pathname: str = "") -> str:
    base = f"{config.base_url.rstrip('/')}/{year}/{dataset.strip('/')}"
    trimmed = pathname.lstrip("/")
    return f"{base}/{trimmed}" if trimmed else base


def request_json(
    client: httpx.Client,
    url: str,
    *,
    params: dict[str, Any] | None,
    stage: str,
    config: CensusApiConfig,
) -> Any:
    last_error: Exception | None = None
    headers = {"User-Agent": "okstats-census-ingest/0.1"}
    query = dict(params or {})
    if config.api_key:
        query["key"] = config.api_key

    for attempt in range(config.retries + 1):
        try:
            response = client.get(url, params=query, timeout=config.timeout, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_error = exc
            if attempt < config.retries:
                time.sleep(_backoff_seconds(attempt))
                continue
            raise UpstreamAPIError(stage, f"Network error: {exc!s}") from exc

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            last_error = UpstreamAPIError(
                stage, f"HTTP {status}: {_short_error_text(response.text)}"
            )
            if attempt < config.retries:
                time.sleep(_backoff_seconds(attempt))
                continue
            raise last_error

        if status >= 400:
            raise UpstreamAPIError(stage, f"HTTP {status}: {_short_error_text(response.text)}")

        # No rows for the requested geography.
        if status == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamAPIError(
                stage, f"Invalid JSON in upstream response (HTTP {status})"
            ) from exc

    if last_error is not None:
        raise UpstreamAPIError(stage, f"Failed request after retries: {last_error!s}")
    raise UpstreamAPIError(stage, "Failed request after retries.")


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return " ".join(segment[:1].upper() + segment[1:].lower() for segment in value.split(" ") if segment)


def parse_stat_value(value: Any) -> float | None:
    """Coerce a raw API cell to a number.

    ``None``, ``""``, ``"null"``, non-finite or unparsable values, and anything at
    or below ``SUPPRESSED_VALUE_THRESHOLD`` are treated as missing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text or text == "null":
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return None
    if not math.isfinite(number):
        return None
    if number <= SUPPRESSED_VALUE_THRESHOLD:
        return None
    return number


def fetch_group_metadata(
    client: httpx.Client,
    options: CensusOptions,
    config: CensusApiConfig,
) -> CensusGroupMeta:
    payload = request_json(
        client,
        build_census_url(config, options.year, options.dataset, f"groups/{options.group}.json"),
        params=None,
        stage=f"group_metadata:{options.group}:{options.year}",
        config=config,
    )
    if not isinstance(payload, dict):
        payload = {}

    variables: dict[str, CensusVariableMeta] = {}
    raw_variables = payload.get("variables")
    if isinstance(raw_variables, dict):
        for key, value in raw_variables.items():
            value = value if isinstance(value, dict) else {}
            name = value.get("name") or key
            variables[name] = CensusVariableMeta(
                name=name,
                label=value.get("label") or "",
                concept=value.get("concept"),
                predicate_type=value.get("predicateType"),
            )

    return CensusGroupMeta(
        group=options.group,
        label=payload.get("label") or payload.get("concept") or options.group,
        concept=payload.get("concept") or payload.get("label") or options.group,
        universe=payload.get("universe"),
        variables=variables,
    )


def resolve_variables(
    options: CensusOptions,
    group_meta: CensusGroupMeta,
) -> tuple[list[str], dict[str, str]]:
    if options.variables:
        base = list(options.variables)
    else:
        base = [name for name in group_meta.variables if name.endswith("E") and name != "NAME"]

    estimates = [name for name in base if name in group_meta.variables]
    moe_map: dict[str, str] = {}
    if options.include_moe:
        for estimate in estimates:
            candidate = f"{estimate[:-1]}M"
            if candidate != estimate and candidate in group_meta.variables:
                moe_map[estimate] = candidate
    return estimates, moe_map


def _clean_variable_label(label: str) -> str:
    if not label:
        return ""
    cleaned = label
    if cleaned.lower().startswith("estimate!!"):
        cleaned = cleaned[len("estimate!!") :]
    cleaned = cleaned.replace("!!", " → ")
    return cleaned.rstrip(":").strip()


def derive_stat_name(
    variable_name: str,
    variable: CensusVariableMeta,
    group: CensusGroupMeta,
) -> str:
    custom = CUSTOM_LABELS.get(variable_name)
    if custom:
        return custom
    cleaned = _clean_variable_label(variable.label)
    if not cleaned:
        return normalize_text(group.concept or variable.name)
    concept = normalize_text(group.concept or "")
    if not concept:
        return cleaned
    if concept.lower() in cleaned.lower():
        return cleaned
    return f"{concept} – {cleaned}"


def infer_stat_type(variable: CensusVariableMeta) -> str:
    label = (variable.label or "").lower()
    if "percent" in label or "%" in label:
        return "percent"
    predicate = (variable.predicate_type or "").lower()
    if predicate in {"float", "double"}:
        return "rate"
    return "count"


def rows_to_records(payload: Any) -> list[dict[str, str]]:
    if not isinstance(payload, list) or not payload:
        return []
    headers, *rows = payload
    if not isinstance(headers, list) or not headers:
        return []
    records: list[dict[str, str]] = []
    for row in rows:
        if not isinstance(row, list):
            continue
        records.append({key: row[index] if index < len(row) else None for index, key in enumerate(headers)})
    return records


def _fetch_records(
    client: httpx.Client,
    options: CensusOptions,
    columns: list[str],
    geography: dict[str, str],
    stage: str,
    config: CensusApiConfig,
) -> list[dict[str, str]]:
    params = {"get": ",".join(["NAME", *columns]), **geography}
    payload = request_json(
        client,
        build_census_url(config, options.year, options.dataset),
        params=params,
        stage=stage,
        config=config,
    )
    records = rows_to_records(payload)
    log.debug("census.fetch.done", stage=stage, rows=len(records))
    return records


def fetch_zip_records(
    client: httpx.Client,
    options: CensusOptions,
    estimates: list[str],
    moe_variables: list[str],
    config: CensusApiConfig,
) -> list[dict[str, str]]:
    if not estimates:
        return []
    return _fetch_records(
        client,
        options,
        [*estimates, *moe_variables],
        {"for": f"{ZIP_GEOGRAPHY}:*"},
        stage=f"zip_data:{options.group}:{options.year}",
        config=config,
    )


def fetch_county_records(
    client: httpx.Client,
    options: CensusOptions,
    estimates: list[str],
    moe_variables: list[str],
    config: CensusApiConfig,
) -> list[dict[str, str]]:
    if not estimates:
        return []
    return _fetch_records(
        client,
        options,
        [*estimates, *moe_variables],
        {"for": f"{COUNTY_GEOGRAPHY}:*", "in": f"state:{OK_STATE_FIPS}"},
        stage=f"county_data:{options.group}:{options.year}",
        config=config,
    )
