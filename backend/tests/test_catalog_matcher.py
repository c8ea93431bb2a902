"""Tests for create/update/skip decisions against the catalog."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import ProgrammingError

from app.db.models.material import Material
from app.db.session import SessionLocal
from app.services.catalog_matcher import (
    CreateDecision,
    ImportMode,
    SkipDecision,
    SkipReason,
    UpdateDecision,
    match_record,
)
from app.services.catalog_store import CatalogWriteError, SqlCatalogStore
from app.services.record_normalizer import MaterialRecord, normalize_record
from conftest import OTHER_OWNER, OWNER


def _record(**overrides) -> MaterialRecord:
    raw = {"name": "Merbau decking 90x19", "price": "14.20", "unit": "LM"}
    raw.update(overrides)
    record = normalize_record(raw)
    assert isinstance(record, MaterialRecord)
    return record


@pytest.mark.parametrize(
    ("existing", "mode", "expected"),
    [
        (False, ImportMode(import_new=True, update_existing=True), CreateDecision),
        (False, ImportMode(import_new=False, update_existing=True), SkipDecision),
        (True, ImportMode(import_new=True, update_existing=False), SkipDecision),
        (True, ImportMode(import_new=False, update_existing=True), UpdateDecision),
    ],
)
def test_decision_table(catalog, existing, mode, expected) -> None:
    if existing:
        catalog.seed(OWNER, "Merbau decking 90x19", price="14.20")

    decision = match_record(_record(), OWNER, mode, catalog)

    assert isinstance(decision, expected)


def test_skip_reasons(catalog) -> None:
    new_blocked = match_record(_record(), OWNER, ImportMode(import_new=False), catalog)
    catalog.seed(OWNER, "Merbau decking 90x19")
    update_blocked = match_record(
        _record(), OWNER, ImportMode(update_existing=False), catalog
    )

    assert new_blocked == SkipDecision(SkipReason.NEW_NOT_ALLOWED)
    assert update_blocked == SkipDecision(SkipReason.UPDATE_NOT_ALLOWED)


def test_match_is_case_and_whitespace_insensitive_but_not_fuzzy(catalog) -> None:
    catalog.seed(OWNER, "merbau  DECKING 90x19")

    exact = match_record(_record(name="  Merbau decking 90x19 "), OWNER, ImportMode(), catalog)
    variant = match_record(_record(name="Merbau deck 90x19"), OWNER, ImportMode(), catalog)

    assert isinstance(exact, UpdateDecision)
    assert isinstance(variant, CreateDecision)


def test_match_is_scoped_to_owner(catalog) -> None:
    catalog.seed(OTHER_OWNER, "Merbau decking 90x19")

    decision = match_record(_record(), OWNER, ImportMode(), catalog)

    assert isinstance(decision, CreateDecision)


def test_update_diff_only_touches_supplier_fields(catalog) -> None:
    material_id = catalog.seed(
        OWNER,
        "Merbau decking 90x19",
        price="13.00",
        in_stock=True,
        description="Customer note kept",
        category="Decking",
    )

    decision = match_record(
        _record(price="14.20", inStock=False), OWNER, ImportMode(), catalog
    )

    assert decision == UpdateDecision(
        material_id, {"price_per_unit": Decimal("14.20"), "in_stock": False}
    )


def test_update_diff_takes_non_empty_description_and_category(catalog) -> None:
    catalog.seed(OWNER, "Merbau decking 90x19", price="14.20", description="old")

    decision = match_record(
        _record(description="Kiln dried", category="Hardwood"), OWNER, ImportMode(), catalog
    )

    assert isinstance(decision, UpdateDecision)
    assert decision.changes == {"description": "Kiln dried", "category": "Hardwood"}


def test_round_trip_against_sql_catalog() -> None:
    session = SessionLocal()
    try:
        store = SqlCatalogStore(session)
        record = _record(price="19.99", supplier="blacktown")
        now = datetime.now(timezone.utc)

        first = match_record(record, OWNER, ImportMode(), store)
        assert isinstance(first, CreateDecision)
        material_id = store.insert(OWNER, first.record, now)
        store.commit()

        second = match_record(record, OWNER, ImportMode(), store)
        assert second == UpdateDecision(material_id, {})

        stored = session.get(Material, material_id)
        assert stored.name_key == "merbau decking 90x19"
        assert stored.supplier == "Blacktown Building Supplies"
        assert stored.category == "Decking"
        assert stored.sku.startswith("BLA-")
    finally:
        session.close()


def test_sql_catalog_rejects_duplicate_key_per_record() -> None:
    session = SessionLocal()
    try:
        store = SqlCatalogStore(session)
        now = datetime.now(timezone.utc)
        store.insert(OWNER, _record(), now)

        with pytest.raises(CatalogWriteError):
            store.insert(OWNER, _record(name="MERBAU decking 90x19"), now)

        # The failed savepoint leaves the chunk transaction usable.
        store.insert(OWNER, _record(name="Spotted gum decking"), now)
        store.commit()

        count = session.scalar(select(func.count(Material.id)))
        assert count == 2
    finally:
        session.close()


def test_sql_catalog_refuses_protected_fields() -> None:
    session = SessionLocal()
    try:
        store = SqlCatalogStore(session)
        with pytest.raises(CatalogWriteError):
            store.update_fields(1, {"name": "renamed"})
    finally:
        session.close()


def test_sql_catalog_lookup_failure_keeps_chunk_writes(monkeypatch: pytest.MonkeyPatch) -> None:
    session = SessionLocal()
    try:
        store = SqlCatalogStore(session)
        now = datetime.now(timezone.utc)
        store.insert(OWNER, _record(), now)
        nested_at_failure = []

        def failing_scalar(*args, **kwargs):
            nested_at_failure.append(session.in_nested_transaction())
            raise ProgrammingError("SELECT materials", {}, Exception("bad lookup"))

        with monkeypatch.context() as patched:
            patched.setattr(session, "scalar", failing_scalar)
            with pytest.raises(CatalogWriteError):
                store.find_by_owner_and_name(OWNER, "Spotted gum decking")

        assert nested_at_failure == [True]
        store.insert(OWNER, _record(name="Spotted gum decking"), now)
        store.commit()

        assert session.scalar(select(func.count(Material.id))) == 2
    finally:
        session.close()
