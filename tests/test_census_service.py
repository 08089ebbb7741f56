from __future__ import annotations

import httpx
import pytest

import backend.app.census_service as census_service
from backend.app.census_service import (
    CensusGroupMeta,
    CensusOptions,
    CensusVariableMeta,
    UpstreamAPIError,
    build_census_url,
    derive_stat_name,
    fetch_county_records,
    fetch_group_metadata,
    fetch_zip_records,
    infer_stat_type,
    parse_stat_value,
    request_json,
    resolve_variables,
    rows_to_records,
)
from backend.app.config import CensusApiConfig

from conftest import GROUP, MOE_VARIABLE, VARIABLE


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def _group_meta() -> CensusGroupMeta:
    return CensusGroupMeta(
        group=GROUP,
        label="MEDIAN HOUSEHOLD INCOME",
        concept="MEDIAN HOUSEHOLD INCOME IN THE PAST 12 MONTHS",
        universe="Households",
        variables={
            VARIABLE: CensusVariableMeta(name=VARIABLE, label="Estimate!!Median", predicate_type="int"),
            MOE_VARIABLE: CensusVariableMeta(name=MOE_VARIABLE, label="Margin of Error!!Median"),
            "B19013_002E": CensusVariableMeta(name="B19013_002E", label="Estimate!!Other"),
            "NAME": CensusVariableMeta(name="NAME", label="Geographic Area Name"),
        },
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("500", 500.0),
        (" 12.5 ", 12.5),
        (42, 42.0),
        (0, 0.0),
        ("-5", -5.0),
        (None, None),
        ("", None),
        ("null", None),
        ("N/A", None),
        ("-666666666", None),
        (-999999999, None),
        (-99999999, None),
        (float("nan"), None),
        ("inf", None),
        (True, None),
    ],
)
def test_parse_stat_value(raw, expected):
    assert parse_stat_value(raw) == expected


def test_build_census_url_joins_year_dataset_and_path():
    config = CensusApiConfig(base_url="https://api.census.gov/data/")
    assert build_census_url(config, 2022, "acs/acs5") == "https://api.census.gov/data/2022/acs/acs5"
    assert (
        build_census_url(config, 2022, "/acs/acs5/", "/groups/B19013.json")
        == "https://api.census.gov/data/2022/acs/acs5/groups/B19013.json"
    )


def test_census_options_survey_is_last_dataset_segment():
    assert CensusOptions(dataset="acs/acs5", group=GROUP, year=2022).survey == "acs5"
    assert CensusOptions(dataset="acs/acs1/", group=GROUP, year=2022).survey == "acs1"


def test_resolve_variables_defaults_to_every_estimate():
    options = CensusOptions(dataset="acs/acs5", group=GROUP, year=2022)
    estimates, moe_map = resolve_variables(options, _group_meta())
    assert estimates == [VARIABLE, "B19013_002E"]
    assert moe_map == {}


def test_resolve_variables_drops_unknown_and_pairs_margins():
    options = CensusOptions(
        dataset="acs/acs5",
        group=GROUP,
        year=2022,
        variables=[VARIABLE, "B99999_001E", "B19013_002E"],
        include_moe=True,
    )
    estimates, moe_map = resolve_variables(options, _group_meta())
    assert estimates == [VARIABLE, "B19013_002E"]
    assert moe_map == {VARIABLE: MOE_VARIABLE}


def test_derive_stat_name_prefers_custom_labels():
    group = _group_meta()
    variable = CensusVariableMeta(name="B01003_001E", label="Estimate!!Total")
    assert derive_stat_name("B01003_001E", variable, group) == "Population"


def test_derive_stat_name_keeps_label_that_already_contains_concept():
    group = CensusGroupMeta(
        group=GROUP,
        label="x",
        concept="MEDIAN HOUSEHOLD INCOME",
        universe=None,
        variables={},
    )
    variable = CensusVariableMeta(name=VARIABLE, label="Estimate!!Median household income:")
    assert derive_stat_name(VARIABLE, variable, group) == "Median household income"


def test_derive_stat_name_prefixes_concept_and_joins_segments():
    group = CensusGroupMeta(group="B01001", label="x", concept="SEX BY AGE", universe=None, variables={})
    variable = CensusVariableMeta(name="B01001_002E", label="Estimate!!Total:!!Male:")
    assert derive_stat_name("B01001_002E", variable, group) == "Sex By Age – Total: → Male"


def test_derive_stat_name_falls_back_to_concept_without_label():
    group = CensusGroupMeta(group="B01001", label="x", concept="SEX BY AGE", universe=None, variables={})
    variable = CensusVariableMeta(name="B01001_002E", label="")
    assert derive_stat_name("B01001_002E", variable, group) == "Sex By Age"


def test_infer_stat_type():
    assert infer_stat_type(CensusVariableMeta(name="a", label="Percent below poverty")) == "percent"
    assert infer_stat_type(CensusVariableMeta(name="a", label="Share (%)")) == "percent"
    assert infer_stat_type(CensusVariableMeta(name="a", label="Median age", predicate_type="float")) == "rate"
    assert infer_stat_type(CensusVariableMeta(name="a", label="Total", predicate_type="int")) == "count"


def test_rows_to_records_pads_short_rows_and_skips_junk():
    payload = [["NAME", "B1", "zip code tabulation area"], ["ZCTA5 73102", "5", "73102"], ["short"], "junk"]
    assert rows_to_records(payload) == [
        {"NAME": "ZCTA5 73102", "B1": "5", "zip code tabulation area": "73102"},
        {"NAME": "short", "B1": None, "zip code tabulation area": None},
    ]
    assert rows_to_records(None) == []
    assert rows_to_records([]) == []


def test_request_json_sends_api_key_and_parses_body():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[["NAME"], ["x"]])

    config = CensusApiConfig(api_key="secret")
    with _client(handler) as client:
        payload = request_json(
            client,
            "https://api.census.gov/data/2022/acs/acs5",
            params={"get": "NAME"},
            stage="zip_data:B19013:2022",
            config=config,
        )

    assert payload == [["NAME"], ["x"]]
    assert seen[0].url.params["key"] == "secret"
    assert seen[0].url.params["get"] == "NAME"


def test_request_json_returns_none_for_empty_response():
    with _client(lambda request: httpx.Response(204)) as client:
        assert request_json(client, "https://x.test", params=None, stage="s", config=CensusApiConfig()) is None


def test_request_json_does_not_retry_by_default():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(503, text="unavailable")

    with _client(handler) as client:
        with pytest.raises(UpstreamAPIError) as excinfo:
            request_json(client, "https://x.test", params=None, stage="zip_data:G:2022", config=CensusApiConfig())

    assert calls["n"] == 1
    assert excinfo.value.stage == "zip_data:G:2022"
    assert "HTTP 503" in excinfo.value.message


def test_request_json_retries_when_configured(monkeypatch):
    monkeypatch.setattr(census_service.time, "sleep", lambda seconds: None)
    responses = [httpx.Response(503, text="busy"), httpx.Response(200, json={"ok": True})]

    with _client(lambda request: responses.pop(0)) as client:
        payload = request_json(
            client, "https://x.test", params=None, stage="s", config=CensusApiConfig(retries=1)
        )

    assert payload == {"ok": True}


def test_request_json_client_errors_and_bad_json_raise():
    with _client(lambda request: httpx.Response(400, text="error: unknown variable")) as client:
        with pytest.raises(UpstreamAPIError, match="HTTP 400"):
            request_json(client, "https://x.test", params=None, stage="s", config=CensusApiConfig(retries=2))

    with _client(lambda request: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(UpstreamAPIError, match="Invalid JSON"):
            request_json(client, "https://x.test", params=None, stage="s", config=CensusApiConfig())


def test_fetch_group_metadata_reads_variables(fake_census):
    options = CensusOptions(dataset="acs/acs5", group=GROUP, year=2022)
    meta = fetch_group_metadata(None, options, CensusApiConfig())

    assert meta.universe == "Households"
    assert meta.variables[VARIABLE].predicate_type == "int"
    assert fake_census.calls[0]["stage"] == f"group_metadata:{GROUP}:2022"
    assert fake_census.calls[0]["url"].endswith("/2022/acs/acs5/groups/B19013.json")


def test_fetch_records_query_geographies(fake_census):
    options = CensusOptions(dataset="acs/acs5", group=GROUP, year=2022)
    zips = fetch_zip_records(None, options, [VARIABLE], [MOE_VARIABLE], CensusApiConfig())
    counties = fetch_county_records(None, options, [VARIABLE], [], CensusApiConfig())

    assert zips[0]["zip code tabulation area"] == "73102"
    assert counties[0]["county"] == "109"
    zip_call, county_call = fake_census.calls
    assert zip_call["params"] == {
        "get": f"NAME,{VARIABLE},{MOE_VARIABLE}",
        "for": "zip code tabulation area:*",
    }
    assert county_call["params"] == {"get": f"NAME,{VARIABLE}", "for": "county:*", "in": "state:40"}


def test_fetch_records_without_estimates_makes_no_request(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("network should not be touched")

    monkeypatch.setattr(census_service, "request_json", boom)
    options = CensusOptions(dataset="acs/acs5", group=GROUP, year=2022)
    assert fetch_zip_records(None, options, [], [], CensusApiConfig()) == []
    assert fetch_county_records(None, options, [], [], CensusApiConfig()) == []
