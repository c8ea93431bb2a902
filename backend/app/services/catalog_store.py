"""Catalog persistence contract and its SQLAlchemy implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models.material import Material
from app.services.record_normalizer import (
    MaterialRecord,
    generate_sku,
    infer_category,
    name_key,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"price_per_unit", "in_stock", "description", "category", "last_scraped_at"}
)


class CatalogError(Exception):
    """Base class for catalog store failures."""


class CatalogWriteError(CatalogError):
    """A single lookup or write failed; the rest of the import can continue."""


class CatalogUnavailableError(CatalogError):
    """The catalog cannot be reached at all; the import has to stop."""


@dataclass(frozen=True)
class CatalogMaterial:
    """Snapshot of an existing catalog row used for matching."""

    id: int
    name: str
    price_per_unit: Decimal
    in_stock: bool
    description: str | None = None
    category: str | None = None


class CatalogStore(Protocol):
    def find_by_owner_and_name(
        self, owner_id: str, name: str
    ) -> CatalogMaterial | None: ...

    def insert(
        self, owner_id: str, record: MaterialRecord, scraped_at: datetime
    ) -> int: ...

    def update_fields(self, material_id: int, fields: dict[str, Any]) -> None: ...

    def commit(self) -> None: ...


def _translate(exc: SQLAlchemyError, action: str) -> CatalogError:
    if isinstance(exc, (OperationalError, DisconnectionError)):
        return CatalogUnavailableError(f"Catalog unavailable during {action}: {exc}")
    return CatalogWriteError(f"Catalog {action} failed: {exc}")


class SqlCatalogStore:
    """Catalog store backed by the ``materials`` table.

    Each write runs inside a SAVEPOINT so one failing row does not poison the
    surrounding chunk transaction. Writes become durable on :meth:`commit`.
    """

    def __init__(self, session: Session):
        self._session = session

    def find_by_owner_and_name(
        self, owner_id: str, name: str
    ) -> CatalogMaterial | None:
        try:
            with self._session.begin_nested():
                material = self._session.scalar(
                    select(Material).where(
                        Material.owner_id == owner_id,
                        Material.name_key == name_key(name),
                    )
                )
        except SQLAlchemyError as exc:
            raise _translate(exc, "lookup") from exc
        if material is None:
            return None
        return CatalogMaterial(
            id=material.id,
            name=material.name,
            price_per_unit=Decimal(material.price_per_unit),
            in_stock=material.in_stock,
            description=material.description,
            category=material.category,
        )

    def insert(self, owner_id: str, record: MaterialRecord, scraped_at: datetime) -> int:
        material = Material(
            owner_id=owner_id,
            name=record.name,
            name_key=record.match_key,
            description=record.description,
            sku=record.sku or generate_sku(record.name, record.supplier),
            supplier=record.supplier or None,
            unit=record.unit.value,
            price_per_unit=record.price_per_unit,
            gst_inclusive=record.gst_inclusive,
            category=record.category or infer_category(record.name),
            in_stock=record.in_stock,
            notes=record.notes,
            last_scraped_at=scraped_at,
        )
        try:
            with self._session.begin_nested():
                self._session.add(material)
                self._session.flush()
        except SQLAlchemyError as exc:
            raise _translate(exc, "insert") from exc
        return material.id

    def update_fields(self, material_id: int, fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise CatalogWriteError(f"Refusing to overwrite fields: {sorted(unknown)}")
        if not fields:
            return
        try:
            with self._session.begin_nested():
                self._session.execute(
                    update(Material).where(Material.id == material_id).values(**fields)
                )
        except SQLAlchemyError as exc:
            raise _translate(exc, "update") from exc

    def commit(self) -> None:
        """Make the current chunk's writes durable."""
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error(f"Failed to commit catalog chunk: {exc}", exc_info=True)
            raise CatalogUnavailableError(f"Catalog commit failed: {exc}") from exc
