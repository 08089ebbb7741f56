from __future__ import annotations

from copy import deepcopy
from typing import Any, Iterable, Sequence

import pytest

from backend.app.store import StoreError, TxOp, new_id

GROUP = "B19013"
VARIABLE = "B19013_001E"
MOE_VARIABLE = "B19013_001M"


def area_rows() -> list[dict]:
    return [
        {"code": "40109", "kind": "COUNTY", "name": "Oklahoma County", "isActive": True},
        {"code": "40143", "kind": "COUNTY", "name": "TULSA COUNTY", "isActive": True},
        {"code": "40017", "kind": "COUNTY", "name": "Canadian", "isActive": True},
        {"code": "40001", "kind": "COUNTY", "name": "Adair County", "isActive": True},
        {"code": "73102", "kind": "ZIP", "name": "73102", "parentCode": "Oklahoma County", "isActive": True},
        {"code": "73103", "kind": "ZIP", "name": "73103", "parentCode": "40109", "isActive": True},
        {"code": "73099", "kind": "ZIP", "name": "73099", "parentCode": "Canadian", "isActive": True},
        {"code": "74103", "kind": "ZIP", "name": "74103", "parentCode": "tulsa county", "isActive": True},
        {"code": "74960", "kind": "ZIP", "name": "74960", "parentCode": "Adair County"},
        {"code": "74104", "kind": "ZIP", "name": "74104", "parentCode": "Tulsa County", "isActive": False},
        {"code": "67202", "kind": "ZIP", "name": "67202", "parentCode": "Sedgwick County", "isActive": True},
    ]


def group_metadata_payload() -> dict:
    return {
        "name": GROUP,
        "label": "MEDIAN HOUSEHOLD INCOME",
        "concept": "MEDIAN HOUSEHOLD INCOME IN THE PAST 12 MONTHS",
        "universe": "Households",
        "variables": {
            VARIABLE: {
                "label": "Estimate!!Median household income in the past 12 months",
                "concept": "MEDIAN HOUSEHOLD INCOME IN THE PAST 12 MONTHS",
                "predicateType": "int",
            },
            MOE_VARIABLE: {
                "label": "Margin of Error!!Median household income in the past 12 months",
                "predicateType": "int",
            },
            "NAME": {"label": "Geographic Area Name", "predicateType": "string"},
        },
    }


def zip_data_payload() -> list[list[str]]:
    return [
        ["NAME", VARIABLE, MOE_VARIABLE, "zip code tabulation area"],
        ["ZCTA5 73102", "500", "40", "73102"],
        ["ZCTA5 73103", "300", "25", "73103"],
        ["ZCTA5 73099", "-666666666", "-222222222", "73099"],
        ["ZCTA5 74103", "410", "", "74103"],
        ["ZCTA5 67202", "999", "10", "67202"],
    ]


def county_data_payload() -> list[list[str]]:
    return [
        ["NAME", VARIABLE, MOE_VARIABLE, "state", "county"],
        ["Oklahoma County, Oklahoma", "61000", "900", "40", "109"],
        ["Tulsa County, Oklahoma", "63000", "800", "40", "143"],
        ["Adair County, Oklahoma", "null", "null", "40", "001"],
    ]


def make_fake_request_json(overrides: dict | None = None):
    """Stage-dispatching stand-in for census_service.request_json."""
    responses = {
        "group_metadata": group_metadata_payload,
        "zip_data": zip_data_payload,
        "county_data": county_data_payload,
    }
    responses.update(overrides or {})
    calls: list[dict] = []

    def fake_request_json(client, url, *, params, stage, config):  # type: ignore[no-untyped-def]
        calls.append({"url": url, "params": params, "stage": stage})
        prefix = stage.split(":", 1)[0]
        if prefix not in responses:
            raise AssertionError(f"Unexpected stage: {stage}")
        handler = responses[prefix]
        return handler()

    fake_request_json.calls = calls  # type: ignore[attr-defined]
    return fake_request_json


def _matches(row: dict[str, Any], where: dict[str, Any]) -> bool:
    for field_name, expected in where.items():
        actual = row.get(field_name)
        if isinstance(expected, dict) and "$in" in expected:
            if actual not in expected["$in"]:
                return False
        elif actual != expected:
            return False
    return True


class MemoryStore:
    """In-process store with the same query/transact contract as the hosted one.

    Supports equality and ``$in`` filters, ``fields``, ``order``, ``offset`` and
    ``limit``. Every transact call is recorded in ``transactions``.
    """

    def __init__(self, entities: dict[str, Iterable[dict[str, Any]]] | None = None):
        self.entities: dict[str, dict[str, dict[str, Any]]] = {}
        self.transactions: list[list[TxOp]] = []
        self.queries: list[dict[str, Any]] = []
        for entity, rows in (entities or {}).items():
            for row in rows:
                self.insert(entity, row)

    def insert(self, entity: str, row: dict[str, Any]) -> str:
        row_id = row.get("id") or new_id()
        stored = deepcopy(row)
        stored["id"] = row_id
        self.entities.setdefault(entity, {})[row_id] = stored
        return row_id

    def rows(self, entity: str) -> list[dict[str, Any]]:
        return [deepcopy(row) for row in self.entities.get(entity, {}).values()]

    def query(self, query: dict[str, Any]) -> dict[str, Any]:
        self.queries.append(deepcopy(query))
        out: dict[str, Any] = {}
        for entity, spec in query.items():
            options = spec.get("$", {}) if isinstance(spec, dict) else {}
            where = options.get("where") or {}
            rows = [row for row in self.entities.get(entity, {}).values() if _matches(row, where)]

            order = options.get("order") or {}
            for field_name, direction in reversed(list(order.items())):
                rows.sort(
                    key=lambda row: (row.get(field_name) is None, row.get(field_name)),
                    reverse=direction == "desc",
                )

            offset = int(options.get("offset") or 0)
            limit = options.get("limit")
            rows = rows[offset:]
            if limit is not None:
                rows = rows[: int(limit)]

            fields = options.get("fields")
            if fields:
                keep = set(fields) | {"id"}
                rows = [{k: v for k, v in row.items() if k in keep} for row in rows]
            out[entity] = deepcopy(rows)
        return out

    def transact(self, ops: Sequence[TxOp]) -> dict[str, Any]:
        self.transactions.append(list(ops))
        for op in ops:
            table = self.entities.setdefault(op.entity, {})
            if op.lookup is not None:
                attr, value = op.lookup
                target = next((row for row in table.values() if row.get(attr) == value), None)
                if target is None:
                    target = {"id": new_id(), attr: value}
                    table[target["id"]] = target
            else:
                if not op.id:
                    raise StoreError("store:transact", f"Missing id for {op.entity} update")
                target = table.setdefault(op.id, {"id": op.id})
            target.update(deepcopy(op.attrs))
        return {"status": "ok"}


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore({"areas": area_rows()})


@pytest.fixture()
def fake_census(monkeypatch: pytest.MonkeyPatch):
    import backend.app.census_service as census_service

    fake = make_fake_request_json()
    monkeypatch.setattr(census_service, "request_json", fake)
    return fake
