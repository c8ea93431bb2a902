"""SQLAlchemy model for a user's material catalog."""

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import DateTime

from app.db.base import Base


class Material(Base):
    __tablename__ = "materials"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    # Lower-cased, whitespace-collapsed name used as the match key.
    name_key = Column(String(255), nullable=False)
    description = Column(Text)
    sku = Column(String(100))
    supplier = Column(String(100))
    unit = Column(String(16), nullable=False, default="EA")
    price_per_unit = Column(Numeric(12, 2), nullable=False, default=0)
    gst_inclusive = Column(Boolean, nullable=False, default=True)
    category = Column(String(50))
    in_stock = Column(Boolean, nullable=False, default=True)
    notes = Column(Text)
    last_scraped_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("owner_id", "name_key", name="uq_materials_owner_name_key"),
    )
