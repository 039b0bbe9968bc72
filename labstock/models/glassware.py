from __future__ import annotations

from sqlalchemy import CheckConstraint, Column, Float, Integer, Text, UniqueConstraint

from ..core.clock import utc_now_iso
from ..db.session import Base


class GlasswareStock(Base):
    __tablename__ = "glassware_stock"
    __table_args__ = (
        UniqueConstraint("name", "variant", "lab_id", name="uq_glassware_name_variant_lab"),
        CheckConstraint("quantity >= 0", name="ck_glassware_quantity_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(Text, nullable=False, index=True)
    variant = Column(Text, nullable=False, default="")
    lab_id = Column(Text, nullable=False, index=True)
    quantity = Column(Float, nullable=False, default=0)
    unit = Column(Text, nullable=True)
    condition = Column(Text, nullable=True)
    batch_code = Column(Text, nullable=True)
    vendor = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)
