"""Payloads for submitting material imports."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.services.catalog_matcher import ImportMode


class ImportSubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_label: str = Field(
        "", alias="sourceLabel", max_length=255, description="Supplier or upload name"
    )
    records: list[dict[str, Any]] = Field(
        ..., description="Raw scraped/uploaded rows, one object per product"
    )
    mode: ImportMode = Field(default_factory=ImportMode)


class ImportAccepted(BaseModel):
    job_id: str
    status: str
