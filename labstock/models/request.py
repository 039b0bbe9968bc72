from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Date, Float, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from ..core.clock import utc_now_iso
from ..core.stock_types import KIND_CHEMICAL, KIND_EQUIPMENT, KIND_GLASSWARE, REQUEST_PENDING
from ..db.session import Base
from . import glassware as _glassware  # noqa: F401


class Request(Base):
    """A faculty member's multi-experiment stock request for one lab."""

    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, index=True)
    faculty_id = Column(Text, nullable=False, index=True)
    lab_id = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, default=REQUEST_PENDING, index=True)
    created_by = Column(Text, nullable=True)
    updated_by = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)
    updated_at = Column(Text, nullable=True)

    experiments = relationship(
        "Experiment",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="Experiment.id",
    )
    approvals = relationship(
        "RequestApproval",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestApproval.id",
    )

    def iter_items(self):
        for experiment in self.experiments:
            yield from experiment.items


class RequestApproval(Base):
    __tablename__ = "request_approvals"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    action = Column(Text, nullable=False)
    actor = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)

    request = relationship("Request", back_populates="approvals")


class Experiment(Base):
    __tablename__ = "request_experiments"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    admin_override = Column(Boolean, nullable=False, default=False)
    override_reason = Column(Text, nullable=True)
    override_by = Column(Text, nullable=True)
    override_at = Column(Text, nullable=True)
    allocation_reason_type = Column(Text, nullable=True)

    request = relationship("Request", back_populates="experiments")
    items = relationship(
        "RequestItem",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="RequestItem.id",
    )

    def items_of(self, kind: str) -> list["RequestItem"]:
        return [item for item in self.items if item.kind == kind]


class RequestItem(Base):
    """One requested line. Concrete kinds are mapped on the same table."""

    __tablename__ = "request_items"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("request_experiments.id"), nullable=False, index=True)
    kind = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    variant = Column(Text, nullable=True)
    unit = Column(Text, nullable=True)
    quantity = Column(Float, nullable=False)
    original_quantity = Column(Float, nullable=True)
    allocated_quantity = Column(Float, nullable=False, default=0)
    is_allocated = Column(Boolean, nullable=False, default=False)
    is_disabled = Column(Boolean, nullable=False, default=False)
    disabled_reason = Column(Text, nullable=True)
    was_disabled = Column(Boolean, nullable=False, default=False)

    experiment = relationship("Experiment", back_populates="items")
    history = relationship(
        "AllocationHistory",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="AllocationHistory.id",
    )

    __mapper_args__ = {"polymorphic_on": kind, "polymorphic_identity": "item"}


class ChemicalItem(RequestItem):
    __mapper_args__ = {"polymorphic_identity": KIND_CHEMICAL}

    @property
    def chemical_name(self) -> str:
        return self.name


class GlasswareItem(RequestItem):
    glassware_id = Column(Integer, ForeignKey("glassware_stock.id"), nullable=True)

    glassware = relationship("GlasswareStock")

    __mapper_args__ = {"polymorphic_identity": KIND_GLASSWARE}


class EquipmentItem(RequestItem):
    item_ids = Column(JSON, nullable=True)

    __mapper_args__ = {"polymorphic_identity": KIND_EQUIPMENT}


ITEM_CLASSES: dict[str, type[RequestItem]] = {
    KIND_CHEMICAL: ChemicalItem,
    KIND_GLASSWARE: GlasswareItem,
    KIND_EQUIPMENT: EquipmentItem,
}


class AllocationHistory(Base):
    __tablename__ = "allocation_history"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("request_items.id"), nullable=False, index=True)
    quantity = Column(Float, nullable=False)
    unit_ids = Column(JSON, nullable=True)
    allocated_by = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)

    item = relationship("RequestItem", back_populates="history")
