"""Wiring for the import job store and query service."""

from datetime import timedelta

from fastapi import Depends

from app.core.config import Settings, get_settings
from app.services.job_query import JobQueryService
from app.services.job_store import JobStore, build_job_store


def get_app_settings() -> Settings:
    return get_settings()


def get_job_store(settings: Settings = Depends(get_app_settings)) -> JobStore:
    return build_job_store(settings)


def get_job_query_service(
    job_store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_app_settings),
) -> JobQueryService:
    return JobQueryService(
        job_store, stall_after=timedelta(seconds=settings.import_stall_after_seconds)
    )
