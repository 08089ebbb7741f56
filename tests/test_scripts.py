from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "scripts"))
import backfill_points_of_interest as bpoi  # noqa: E402
import backfill_stat_data_summaries as bsum  # noqa: E402
import census_load as cl  # noqa: E402

import backend.app.census_service as census_service  # noqa: E402
from backend.app.census_derived import DerivedWrite  # noqa: E402
from backend.app.census_service import UpstreamAPIError  # noqa: E402
from backend.app.config import CensusApiConfig, MissingConfigurationError, Settings  # noqa: E402

from conftest import GROUP, VARIABLE, make_fake_request_json  # noqa: E402


@pytest.fixture()
def use_store(monkeypatch, store):
    for module in (cl, bpoi, bsum):
        monkeypatch.setattr(module, "open_store", lambda client, settings: store)
    return store


def test_census_load_imports_requested_variable(use_store, fake_census, capsys):
    code = cl.main(["--group", GROUP, "--variable", VARIABLE, "--year", "2022", "--console-logs"])

    assert code == 0
    assert len(use_store.rows("statData")) == 4
    out = capsys.readouterr().out
    assert f"{VARIABLE} -> Median household income in the past 12 months" in out
    assert "2022: zips=3 counties=2 county groups=2" in out
    assert "rows inserted=4 updated=0" in out


def test_census_load_defaults_to_every_estimate_in_group(use_store, fake_census):
    assert cl.main(["--group", GROUP, "--year", "2022"]) == 0
    assert {row["neId"] for row in use_store.rows("stats")} == {f"census:{VARIABLE}"}


def test_census_load_dry_run_writes_nothing(use_store, fake_census, capsys):
    assert cl.main(["--group", GROUP, "--variable", VARIABLE, "--year", "2022", "--dry-run"]) == 0

    assert use_store.rows("stats") == []
    assert use_store.rows("statData") == []
    assert "(dry run)" in capsys.readouterr().out


def test_census_load_upstream_failure_exit_code(use_store, monkeypatch, capsys):
    def unavailable():
        raise UpstreamAPIError(f"county_data:{GROUP}:2022", "HTTP 503: unavailable")

    monkeypatch.setattr(census_service, "request_json", make_fake_request_json({"county_data": unavailable}))

    assert cl.main(["--group", GROUP, "--variable", VARIABLE, "--year", "2022"]) == cl.EXIT_UPSTREAM_FAILURE
    assert "county_data" in capsys.readouterr().err


def test_census_load_unknown_variable_exit_code(use_store, fake_census):
    assert cl.main(["--group", GROUP, "--variable", "B99999_001E", "--year", "2022"]) == cl.EXIT_INVALID_ARGS


@pytest.mark.parametrize("argv", [["--years", "6"], ["--years", "0"], ["--timeout", "0"], ["--retries", "-1"]])
def test_census_load_rejects_invalid_arguments(argv):
    with pytest.raises(SystemExit) as excinfo:
        cl.main(["--group", GROUP, *argv])
    assert excinfo.value.code == 2


def test_census_load_missing_store_credentials(monkeypatch, fake_census):
    for key in ("INSTANT_APP_ID", "VITE_INSTANT_APP_ID", "NEXT_PUBLIC_INSTANT_APP_ID", "INSTANT_APP_ADMIN_TOKEN", "INSTANT_ADMIN_TOKEN"):
        monkeypatch.delenv(key, raising=False)

    assert cl.main(["--group", GROUP, "--variable", VARIABLE]) == cl.EXIT_MISSING_CONFIG


def test_backfill_points_of_interest_cli(use_store, capsys):
    use_store.insert("stats", {"id": "s1", "name": "Empty", "pointsOfInterestEnabled": True})

    assert bpoi.main([]) == 0
    assert "success=1 failed=0" in capsys.readouterr().out


def test_backfill_stat_data_summaries_cli(use_store, capsys):
    use_store.insert(
        "statData",
        {"statId": "s1", "name": "root", "parentArea": "Oklahoma", "boundaryType": "ZIP", "date": "2022", "data": {"73102": 1}},
    )

    assert bsum.main(["--page-size", "10"]) == 0
    assert "Upserted 1 summary rows." in capsys.readouterr().out
    assert len(use_store.rows("statDataSummaries")) == 1


def test_backfill_stat_data_summaries_rejects_bad_page_size():
    with pytest.raises(SystemExit):
        bsum.main(["--page-size", "0"])


def test_open_store_requires_credentials():
    with pytest.raises(MissingConfigurationError):
        cl.open_store(None, Settings(census=CensusApiConfig(), store=None))


def test_census_load_runs_derived_pass_after_imports(use_store, fake_census, monkeypatch, capsys):
    seen: list[dict] = []

    def fake_derived(client, store, request, config, **kwargs):
        seen.append({"request": request, **kwargs})
        return [
            DerivedWrite(
                stat_id="pop",
                stat_name="ethnicity:white",
                series_name="ethnicity:white",
                census_variable="B03002_003E",
                year=2022,
                inserted=2,
            )
        ]

    monkeypatch.setattr(cl, "run_derived_imports", fake_derived)

    assert cl.main(["--group", GROUP, "--variable", VARIABLE, "--year", "2022"]) == 0
    (call,) = seen
    assert call["request"].group == GROUP
    assert call["request"].variables == (VARIABLE,)
    assert call["population_stat_id"] is None
    assert "B03002_003E -> ethnicity:white [ethnicity:white] 2022: rows inserted=2 updated=0" in capsys.readouterr().out


def test_census_load_dry_run_skips_derived_pass(use_store, fake_census, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("derived pass must not run on a dry run")

    monkeypatch.setattr(cl, "run_derived_imports", fail)
    assert cl.main(["--group", GROUP, "--variable", VARIABLE, "--year", "2022", "--dry-run"]) == 0
