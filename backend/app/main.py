from __future__ import annotations

from collections.abc import Iterator
from dataclasses import asdict
from functools import lru_cache

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .census_import import CensusImportRequest, run_census_import
from .census_service import UpstreamAPIError, VariableNotAvailableError
from .config import MissingConfigurationError, Settings
from .logging_config import configure_logging
from .points_of_interest import StatNotFoundError, run_points_of_interest_recompute
from .schemas import (
    CensusImportBody,
    CensusImportResponse,
    ErrorResponse,
    PoiRecomputeBody,
    PoiRecomputeResponse,
)
from .store import InstantAdminStore, Store, StoreError


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def get_http_client() -> Iterator[httpx.Client]:
    with httpx.Client(follow_redirects=True) as client:
        yield client


def get_store(
    settings: Settings = Depends(get_settings),
    client: httpx.Client = Depends(get_http_client),
) -> Store:
    try:
        return InstantAdminStore(client, settings.require_store())
    except MissingConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


settings = get_settings()
configure_logging(json_logs=settings.log_json, level=settings.log_level, service="okstats-api")
log = structlog.get_logger(__name__)

app = FastAPI(title="Oklahoma Stats Ingest API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post(
    "/api/census/import",
    status_code=201,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
def census_import(
    body: CensusImportBody,
    settings: Settings = Depends(get_settings),
    client: httpx.Client = Depends(get_http_client),
    store: Store = Depends(get_store),
) -> dict:
    request = CensusImportRequest(
        group=body.group,
        variable=body.variable,
        dataset=body.dataset,
        year=body.year,
        years=body.years,
        include_moe=body.include_moe,
        category=body.category,
    )
    try:
        result = run_census_import(client, store, request, settings.census)
    except VariableNotAvailableError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamAPIError as exc:
        log.error("census_import.upstream_failed", stage=exc.stage, error=exc.message)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except StoreError as exc:
        log.error("census_import.store_failed", stage=exc.stage, error=exc.message)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    response = CensusImportResponse(
        stat_id=result.stat_id,
        stat_name=result.stat_name,
        stat_type=result.stat_type,
        years_processed=result.years_processed,
        variable=result.variable,
        dataset=result.dataset,
        group=result.group,
        include_moe=result.include_moe,
        category=result.category,
        rows_inserted=result.rows_inserted,
        rows_updated=result.rows_updated,
    )
    return response.model_dump(by_alias=True)


@app.post(
    "/api/points-of-interest/recompute",
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
def points_of_interest_recompute(
    body: PoiRecomputeBody,
    store: Store = Depends(get_store),
) -> dict:
    try:
        result = run_points_of_interest_recompute(
            store,
            body.stat_id,
            action=body.action,
            force=body.force,
        )
    except StatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        log.error("poi.recompute.store_failed", stat_id=body.stat_id, stage=exc.stage, error=exc.message)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return PoiRecomputeResponse(**asdict(result)).model_dump(by_alias=True)
