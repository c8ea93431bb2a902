"""Pytest configuration: isolated SQLite database and inline Celery per test."""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime
from decimal import Decimal
from typing import Any

import pytest

os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")

from app.core.config import get_settings  # noqa: E402
from app.db.session import get_session_factory, init_db, reset_engine  # noqa: E402
from app.services.catalog_store import CatalogMaterial  # noqa: E402
from app.services.job_store import InMemoryJobStore, reset_memory_store  # noqa: E402
from app.services.record_normalizer import MaterialRecord, name_key  # noqa: E402
from app.services.sql_job_store import SqlJobStore  # noqa: E402

OWNER = "user_alice"
OTHER_OWNER = "user_bob"


@pytest.fixture(autouse=True)
def _isolated_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[None]:
    """Point every test at a fresh SQLite file and run imports inline."""

    db_path = tmp_path_factory.mktemp("sqlite-db") / "imports.sqlite"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("CELERY_TASK_ALWAYS_EAGER", "true")
    monkeypatch.setenv("JOB_STORE_BACKEND", "database")
    monkeypatch.delenv("IMPORT_CHUNK_SIZE", raising=False)

    get_settings.cache_clear()
    reset_engine()
    reset_memory_store()
    init_db()
    yield
    reset_engine()
    reset_memory_store()
    get_settings.cache_clear()


class InMemoryCatalog:
    """Catalog store double keyed by (owner, name key)."""

    def __init__(self) -> None:
        self.rows: dict[int, dict[str, Any]] = {}
        self.commits = 0
        self._next_id = 1

    def seed(
        self,
        owner_id: str,
        name: str,
        price: str = "10.00",
        in_stock: bool = True,
        description: str | None = None,
        category: str | None = None,
    ) -> int:
        material_id = self._next_id
        self._next_id += 1
        self.rows[material_id] = {
            "owner_id": owner_id,
            "name": name,
            "price_per_unit": Decimal(price),
            "in_stock": in_stock,
            "description": description,
            "category": category,
        }
        return material_id

    def find_by_owner_and_name(self, owner_id: str, name: str) -> CatalogMaterial | None:
        for material_id, row in self.rows.items():
            if row["owner_id"] == owner_id and name_key(row["name"]) == name_key(name):
                return CatalogMaterial(
                    id=material_id,
                    name=row["name"],
                    price_per_unit=row["price_per_unit"],
                    in_stock=row["in_stock"],
                    description=row["description"],
                    category=row["category"],
                )
        return None

    def insert(self, owner_id: str, record: MaterialRecord, scraped_at: datetime) -> int:
        material_id = self.seed(
            owner_id,
            record.name,
            price=str(record.price_per_unit),
            in_stock=record.in_stock,
            description=record.description,
            category=record.category,
        )
        self.rows[material_id]["last_scraped_at"] = scraped_at
        return material_id

    def update_fields(self, material_id: int, fields: dict[str, Any]) -> None:
        self.rows[material_id].update(fields)

    def commit(self) -> None:
        self.commits += 1

    def names(self, owner_id: str = OWNER) -> list[str]:
        return sorted(row["name"] for row in self.rows.values() if row["owner_id"] == owner_id)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture
def memory_job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def sql_job_store() -> SqlJobStore:
    return SqlJobStore(get_session_factory())


def make_records(count: int, prefix: str = "Treated pine stud", price: str = "12.50") -> list[dict]:
    return [
        {"name": f"{prefix} {index}", "price": price, "unit": "length", "supplier": "bunnings"}
        for index in range(count)
    ]
