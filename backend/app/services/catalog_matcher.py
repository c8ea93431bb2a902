"""Decide whether a normalized record creates, updates or skips a material."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.services.catalog_store import CatalogMaterial, CatalogStore
from app.services.record_normalizer import MaterialRecord


class ImportMode(BaseModel):
    """Caller-selected policy for new and already-known materials."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    update_existing: bool = Field(True, alias="updateExisting")
    import_new: bool = Field(True, alias="importNew")


class MatchAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class SkipReason(str, enum.Enum):
    NEW_NOT_ALLOWED = "NEW_NOT_ALLOWED"
    UPDATE_NOT_ALLOWED = "UPDATE_NOT_ALLOWED"


@dataclass(frozen=True)
class CreateDecision:
    record: MaterialRecord
    action: MatchAction = field(default=MatchAction.CREATE, init=False)


@dataclass(frozen=True)
class UpdateDecision:
    material_id: int
    changes: dict[str, Any]
    action: MatchAction = field(default=MatchAction.UPDATE, init=False)


@dataclass(frozen=True)
class SkipDecision:
    reason: SkipReason
    action: MatchAction = field(default=MatchAction.SKIP, init=False)


MatchDecision = CreateDecision | UpdateDecision | SkipDecision


def diff_fields(existing: CatalogMaterial, record: MaterialRecord) -> dict[str, Any]:
    """Fields of ``existing`` that the incoming record changes.

    Price and stock always follow the supplier. Description and category are
    user-editable, so they only change when the new record carries a value.
    """
    changes: dict[str, Any] = {}
    if existing.price_per_unit != record.price_per_unit:
        changes["price_per_unit"] = record.price_per_unit
    if existing.in_stock != record.in_stock:
        changes["in_stock"] = record.in_stock
    if record.description and record.description != existing.description:
        changes["description"] = record.description
    if record.category and record.category != existing.category:
        changes["category"] = record.category
    return changes


def match_record(
    record: MaterialRecord,
    owner_id: str,
    mode: ImportMode,
    catalog: CatalogStore,
) -> MatchDecision:
    existing = catalog.find_by_owner_and_name(owner_id, record.name)

    if existing is None:
        if not mode.import_new:
            return SkipDecision(SkipReason.NEW_NOT_ALLOWED)
        return CreateDecision(record)

    if not mode.update_existing:
        return SkipDecision(SkipReason.UPDATE_NOT_ALLOWED)
    return UpdateDecision(existing.id, diff_fields(existing, record))
