"""Turn loosely-typed scraped/uploaded rows into canonical material records."""

from __future__ import annotations

import enum
import math
import re
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import bleach
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError


class MaterialUnit(str, enum.Enum):
    EA = "EA"
    LM = "LM"
    SQM = "SQM"
    KG = "KG"
    L = "L"
    PACK = "PACK"
    BOX = "BOX"
    ROLL = "ROLL"
    SHEET = "SHEET"
    BAG = "BAG"
    HR = "HR"
    DAY = "DAY"


DEFAULT_UNIT = MaterialUnit.EA

# Supplier vocabulary seen on product pages and spreadsheets.
UNIT_ALIASES: dict[str, MaterialUnit] = {
    "each": MaterialUnit.EA,
    "piece": MaterialUnit.EA,
    "pc": MaterialUnit.EA,
    "length": MaterialUnit.LM,
    "lineal metre": MaterialUnit.LM,
    "linear metre": MaterialUnit.LM,
    "linear meter": MaterialUnit.LM,
    "metre": MaterialUnit.LM,
    "meter": MaterialUnit.LM,
    "m": MaterialUnit.LM,
    "square metre": MaterialUnit.SQM,
    "square meter": MaterialUnit.SQM,
    "m2": MaterialUnit.SQM,
    "m²": MaterialUnit.SQM,
    "bundle": MaterialUnit.PACK,
    "pk": MaterialUnit.PACK,
    "kilogram": MaterialUnit.KG,
    "litre": MaterialUnit.L,
    "liter": MaterialUnit.L,
    "hour": MaterialUnit.HR,
}

SUPPLIER_NAMES = {
    "bunnings": "Bunnings",
    "blacktown": "Blacktown Building Supplies",
    "canterbury": "Canterbury Timbers",
    "custom": "Custom Supplier",
}

CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "Framing": ["stud", "plate", "bearer", "joist", "lintel", "beam"],
    "Cladding": ["weatherboard", "hardiplank", "cladding", "villa", "linea"],
    "Decking": ["deck", "decking", "merbau", "spotted gum", "composite"],
    "Sheet Materials": ["plywood", "mdf", "particle", "osb", "hardboard"],
    "Flooring": ["flooring", "tongue and groove", "t&g", "parquet"],
    "Fencing": ["fence", "paling", "plinth", "rail", "post"],
    "Structural": ["lvl", "glulam", "engineered", "hyspan", "h2", "h3"],
    "Pine": ["pine", "radiata", "treated pine", "mgp"],
    "Hardwood": ["hardwood", "oak", "blackbutt", "jarrah", "ironbark"],
    "Mouldings": ["moulding", "architrave", "skirting", "scotia", "quad"],
    "Hardware": ["screw", "nail", "bolt", "bracket", "joist hanger"],
    "Insulation": ["insulation", "batts", "glasswool", "polyester"],
    "Concrete": ["concrete", "cement", "sand", "aggregate", "mesh"],
}
DEFAULT_CATEGORY = "Other"

MAX_PRICE = Decimal("999999.99")
ZERO = Decimal("0.00")
CENTS = Decimal("0.01")

NAME_MAX_LENGTH = 255
SUPPLIER_MAX_LENGTH = 100
CATEGORY_MAX_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 1000
NOTES_MAX_LENGTH = 500
SKU_MAX_LENGTH = 100

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_SKU_DISALLOWED = re.compile(r"[^a-zA-Z0-9\-_]")
_PRICE_NUMBER = re.compile(r"-?\d+(?:\.\d+)?|-?\.\d+")

# Inline formatting a scraped description may keep; other markup is stripped.
_DESCRIPTION_TAGS = {"b", "i", "em", "strong", "br", "p"}

_TRUE_STRINGS = {"true", "yes", "y", "1", "in stock", "instock", "available"}
_FALSE_STRINGS = {"false", "no", "n", "0", "out of stock", "outofstock", "unavailable"}


class NormalizationErrorCode(str, enum.Enum):
    EMPTY_NAME = "EMPTY_NAME"
    INVALID_SHAPE = "INVALID_SHAPE"


@dataclass(frozen=True)
class NormalizationFailure:
    code: NormalizationErrorCode
    message: str


@dataclass(frozen=True)
class MaterialRecord:
    """Canonical material shape consumed by the matcher and catalog."""

    name: str
    supplier: str
    unit: MaterialUnit
    price_per_unit: Decimal
    gst_inclusive: bool = True
    in_stock: bool = True
    description: str | None = None
    sku: str | None = None
    category: str | None = None
    notes: str | None = None

    @property
    def match_key(self) -> str:
        return name_key(self.name)


class RawRecord(BaseModel):
    """Loose input row accepted from scrapers and spreadsheet uploads.

    Values stay untyped here; coercion happens in :func:`normalize_record` so
    that one bad cell degrades to a default instead of rejecting the row.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Any = Field(None, validation_alias=AliasChoices("name", "title", "material"))
    price: Any = Field(
        None, validation_alias=AliasChoices("price_per_unit", "pricePerUnit", "price")
    )
    unit: Any = None
    sku: Any = None
    supplier: Any = None
    category: Any = None
    description: Any = None
    notes: Any = None
    in_stock: Any = Field(
        None, validation_alias=AliasChoices("in_stock", "inStock", "availability")
    )
    gst_inclusive: Any = Field(
        None, validation_alias=AliasChoices("gst_inclusive", "gstInclusive")
    )


def name_key(name: str) -> str:
    """Case-insensitive, whitespace-trimmed key used to match catalog rows."""
    return " ".join(name.split()).casefold()


def sanitize_string(value: Any, max_length: int) -> str:
    """Strip control characters and surrounding whitespace, then truncate."""
    if value is None or isinstance(value, bool):
        return ""
    text = value if isinstance(value, str) else str(value)
    cleaned = _CONTROL_CHARS.sub("", text).strip()
    return cleaned[:max_length]


def sanitize_html(value: Any, max_length: int) -> str:
    """Drop scripts, attributes and non-formatting tags from scraped markup."""
    text = sanitize_string(value, max_length * 4)
    if not text:
        return ""
    cleaned = bleach.clean(text, tags=_DESCRIPTION_TAGS, attributes={}, strip=True)
    return cleaned.strip()[:max_length]


def sanitize_sku(value: Any) -> str:
    return _SKU_DISALLOWED.sub("", sanitize_string(value, 1000))[:SKU_MAX_LENGTH]


def parse_price(value: Any) -> Decimal:
    """Parse a supplier price, falling back to zero for anything unusable."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, float):
        if not math.isfinite(value):
            return ZERO
        text = repr(value)
    elif isinstance(value, (int, Decimal)):
        text = str(value)
    elif isinstance(value, str):
        match = _PRICE_NUMBER.search(value.replace("$", "").replace(",", ""))
        if not match:
            return ZERO
        text = match.group(0)
    else:
        return ZERO

    try:
        price = Decimal(text)
    except InvalidOperation:
        return ZERO
    if not price.is_finite() or price < 0:
        return ZERO
    return min(price, MAX_PRICE).quantize(CENTS, rounding=ROUND_HALF_UP)


def map_unit(value: Any) -> MaterialUnit:
    """Map a supplier unit label onto a known unit, defaulting to each."""
    label = sanitize_string(value, 50)
    if not label:
        return DEFAULT_UNIT
    try:
        return MaterialUnit(label.upper())
    except ValueError:
        return UNIT_ALIASES.get(label.lower(), DEFAULT_UNIT)


def coerce_flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return default


def canonical_supplier(value: Any, fallback: str = "") -> str:
    supplier = sanitize_string(value, SUPPLIER_MAX_LENGTH) or sanitize_string(
        fallback, SUPPLIER_MAX_LENGTH
    )
    return SUPPLIER_NAMES.get(supplier.lower(), supplier)


def infer_category(name: str) -> str:
    """Keyword-based category for new materials that arrive without one."""
    lowered = name.lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def generate_sku(name: str, supplier: str) -> str:
    prefix = (supplier[:3] or "GEN").upper()
    name_part = re.sub(r"[^a-zA-Z0-9]", "", name)[:10].upper()
    suffix = str(time.time_ns() // 1_000_000)[-6:]
    return f"{prefix}-{name_part}-{suffix}"


def normalize_record(
    raw: Any, default_supplier: str = ""
) -> MaterialRecord | NormalizationFailure:
    """Normalize one raw row.

    Only a missing name (or a row that is not a mapping at all) is a failure;
    every other irregularity degrades to a default value.
    """
    try:
        row = RawRecord.model_validate(raw)
    except ValidationError:
        return NormalizationFailure(
            NormalizationErrorCode.INVALID_SHAPE,
            f"Expected an object, got {type(raw).__name__}",
        )

    name = " ".join(sanitize_string(row.name, NAME_MAX_LENGTH * 2).split())[
        :NAME_MAX_LENGTH
    ]
    if not name:
        return NormalizationFailure(
            NormalizationErrorCode.EMPTY_NAME, "Record has no name after trimming"
        )

    return MaterialRecord(
        name=name,
        supplier=canonical_supplier(row.supplier, default_supplier),
        unit=map_unit(row.unit),
        price_per_unit=parse_price(row.price),
        gst_inclusive=coerce_flag(row.gst_inclusive, True),
        in_stock=coerce_flag(row.in_stock, True),
        description=sanitize_html(row.description, DESCRIPTION_MAX_LENGTH) or None,
        sku=sanitize_sku(row.sku) or None,
        category=sanitize_string(row.category, CATEGORY_MAX_LENGTH) or None,
        notes=sanitize_string(row.notes, NOTES_MAX_LENGTH) or None,
    )
