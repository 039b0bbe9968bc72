from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..core.clock import utc_now_iso
from ..db.session import Base


class ChemicalBatch(Base):
    """Master record for one received batch of a chemical.

    ``name`` may carry a ``" - X"`` suffix that distinguishes siblings with
    different expiry dates; ``display_name`` never does.
    """

    __tablename__ = "chemical_batches"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(Text, nullable=False, index=True)
    display_name = Column(Text, nullable=False, index=True)
    vendor = Column(Text, nullable=True)
    unit = Column(Text, nullable=False)
    expiry_date = Column(Date, nullable=True)
    batch_code = Column(Text, nullable=True, index=True)
    quantity = Column(Float, nullable=False, default=0)
    price_per_unit = Column(Float, nullable=True)
    department = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)

    live_rows = relationship("ChemicalLive", back_populates="batch")


class ChemicalLive(Base):
    """Consumable quantity of one batch held at one location."""

    __tablename__ = "chemical_live"
    __table_args__ = (
        UniqueConstraint("batch_id", "lab_id", name="uq_chemical_live_batch_lab"),
        CheckConstraint("quantity >= 0", name="ck_chemical_live_quantity_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("chemical_batches.id"), nullable=False, index=True)
    lab_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False, index=True)
    display_name = Column(Text, nullable=False, index=True)
    name_key = Column(Text, nullable=False, index=True)
    unit = Column(Text, nullable=False)
    expiry_date = Column(Date, nullable=True)
    quantity = Column(Float, nullable=False, default=0)
    original_quantity = Column(Float, nullable=False, default=0)
    is_allocated = Column(Boolean, nullable=False, default=False)
    created_at = Column(Text, nullable=False, default=utc_now_iso)

    batch = relationship("ChemicalBatch", back_populates="live_rows")

    @property
    def vendor(self) -> str | None:
        return self.batch.vendor if self.batch else None

    @property
    def batch_code(self) -> str | None:
        return self.batch.batch_code if self.batch else None


class OutOfStockChemical(Base):
    __tablename__ = "out_of_stock_chemicals"

    id = Column(Integer, primary_key=True, index=True)
    display_name = Column(Text, nullable=False, unique=True, index=True)
    unit = Column(Text, nullable=True)
    last_out_of_stock = Column(Text, nullable=False, default=utc_now_iso)
