from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorResponse(BaseModel):
    detail: str


class CensusImportBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    dataset: str = Field(default="acs/acs5", min_length=1)
    group: str = Field(..., min_length=1, max_length=40)
    variable: str = Field(..., min_length=1, max_length=40)
    year: int | None = Field(default=None, ge=2000, le=2100)
    years: int = Field(default=1)
    include_moe: bool = Field(default=False, alias="includeMoe")
    category: str | None = None

    @field_validator("dataset", "group", "variable")
    @classmethod
    def strip_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("years")
    @classmethod
    def clamp_years(cls, value: int) -> int:
        return max(1, min(5, value))


class CensusImportResponse(BaseModel):
    ok: bool = True
    stat_id: str | None = Field(serialization_alias="statId")
    stat_name: str = Field(serialization_alias="statName")
    stat_type: str = Field(serialization_alias="statType")
    years_processed: list[int] = Field(serialization_alias="yearsProcessed")
    variable: str
    dataset: str
    group: str
    include_moe: bool = Field(serialization_alias="includeMoe")
    category: str
    rows_inserted: int = Field(serialization_alias="rowsInserted")
    rows_updated: int = Field(serialization_alias="rowsUpdated")


class PoiRecomputeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stat_id: str = Field(..., min_length=1, alias="statId")
    action: Literal["recompute", "deactivate"] = "recompute"
    force: bool = False

    @field_validator("stat_id")
    @classmethod
    def strip_stat_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("statId must not be blank")
        return stripped


class PoiRecomputeResponse(BaseModel):
    ok: bool
    action: Literal["recompute", "deactivate"]
    stat_id: str = Field(serialization_alias="statId")
    run_id: str = Field(serialization_alias="runId")
    computed_at: int = Field(serialization_alias="computedAt")
    rows_upserted: int = Field(serialization_alias="rowsUpserted")
    rows_deactivated: int = Field(serialization_alias="rowsDeactivated")
    rows_considered: int = Field(serialization_alias="rowsConsidered")
    skipped: bool = False
    reason: str | None = None
