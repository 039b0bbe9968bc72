from __future__ import annotations

from sqlalchemy import Column, Float, Integer, Text

from ..core.clock import utc_now_iso
from ..core.stock_types import UNIT_AVAILABLE
from ..db.session import Base


class EquipmentUnit(Base):
    """A single serialized piece of equipment. Units carry no quantity."""

    __tablename__ = "equipment_units"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Text, nullable=False, unique=True, index=True)
    product_name = Column(Text, nullable=False, index=True)
    variant = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=UNIT_AVAILABLE, index=True)
    lab_id = Column(Text, nullable=False, index=True)
    location = Column(Text, nullable=True)
    assigned_to = Column(Text, nullable=True)
    batch_code = Column(Text, nullable=True)
    vendor = Column(Text, nullable=True)
    unit = Column(Text, nullable=True)
    price_per_unit = Column(Float, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)
    updated_at = Column(Text, nullable=True)
