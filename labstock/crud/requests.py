"""Persistence helpers for requests, experiments and their items."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from ..core.clock import as_date, utc_now_iso
from ..core.errors import NotFoundError, ValidationError
from ..core.stock_types import ITEM_KINDS, KIND_EQUIPMENT, KIND_GLASSWARE, REQUEST_PENDING
from ..models.glassware import GlasswareStock
from ..models.request import (
    ITEM_CLASSES,
    AllocationHistory,
    Experiment,
    Request,
    RequestApproval,
    RequestItem,
)


def get_request(db: Session, request_id: int) -> Request:
    request = db.get(Request, request_id)
    if request is None:
        raise NotFoundError("request", request_id)
    return request


def list_requests(
    db: Session,
    *,
    status: str | None = None,
    lab_id: str | None = None,
    faculty_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Request]:
    stmt = select(Request)
    if status:
        stmt = stmt.where(Request.status == status)
    if lab_id:
        stmt = stmt.where(Request.lab_id == lab_id)
    if faculty_id:
        stmt = stmt.where(Request.faculty_id == faculty_id)
    stmt = stmt.order_by(desc(Request.id)).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def find_experiment(request: Request, experiment_id: int) -> Experiment:
    for experiment in request.experiments:
        if experiment.id == experiment_id:
            return experiment
    raise NotFoundError("experiment", experiment_id)


def find_item(experiment: Experiment, item_id: int) -> RequestItem:
    for item in experiment.items:
        if item.id == item_id:
            return item
    raise NotFoundError("request_item", item_id)


def _build_item(payload: Mapping[str, Any]) -> RequestItem:
    kind = payload.get("kind")
    if kind not in ITEM_KINDS:
        raise ValidationError(f"Unknown item kind {kind!r}", details={"allowed": list(ITEM_KINDS)})
    quantity = payload.get("quantity")
    if quantity is None or float(quantity) <= 0:
        raise ValidationError("Item quantity must be positive", details={"name": payload.get("name")})
    fields: dict[str, Any] = {
        "name": (payload.get("name") or payload.get("chemical_name") or "").strip(),
        "variant": payload.get("variant"),
        "unit": payload.get("unit"),
        "quantity": float(quantity),
        "original_quantity": float(quantity),
    }
    if kind == KIND_GLASSWARE:
        if payload.get("glassware_id") is None:
            raise ValidationError("glassware_id is required for glassware items")
        fields["glassware_id"] = payload["glassware_id"]
    elif kind == KIND_EQUIPMENT:
        fields["item_ids"] = list(payload.get("item_ids") or [])
    if not fields["name"] and kind != KIND_GLASSWARE:
        raise ValidationError("Item name is required")
    return ITEM_CLASSES[kind](**fields)


def _name_from_stock(db: Session, item: RequestItem) -> None:
    row = db.get(GlasswareStock, item.glassware_id)
    if row is None:
        raise NotFoundError("glassware_stock", item.glassware_id)
    item.name = item.name or row.name
    item.variant = item.variant or (row.variant or None)
    item.unit = item.unit or row.unit


def create_request(
    db: Session,
    *,
    faculty_id: str,
    lab_id: str,
    experiments: Iterable[Mapping[str, Any]],
    created_by: str | None = None,
) -> Request:
    request = Request(
        faculty_id=faculty_id,
        lab_id=lab_id,
        status=REQUEST_PENDING,
        created_by=created_by,
        updated_by=created_by,
        created_at=utc_now_iso(),
    )
    for payload in experiments:
        exp_date = as_date(payload.get("date"))
        if exp_date is None:
            raise ValidationError("Experiment date is required", details={"experiment": payload.get("name")})
        experiment = Experiment(name=(payload.get("name") or "").strip() or "Experiment", date=exp_date)
        for item_payload in payload.get("items") or []:
            item = _build_item(item_payload)
            if isinstance(item, ITEM_CLASSES[KIND_GLASSWARE]):
                _name_from_stock(db, item)
            experiment.items.append(item)
        request.experiments.append(experiment)
    db.add(request)
    db.commit()
    db.refresh(request)
    return request


def add_approval(db: Session, request: Request, action: str, actor: str | None, reason: str | None = None) -> RequestApproval:
    approval = RequestApproval(action=action, actor=actor, reason=(reason or "").strip() or None, created_at=utc_now_iso())
    request.approvals.append(approval)
    return approval


def record_allocation_history(
    db: Session,
    item: RequestItem,
    quantity: float,
    *,
    allocated_by: str | None,
    unit_ids: list[str] | None = None,
) -> AllocationHistory:
    entry = AllocationHistory(quantity=quantity, unit_ids=unit_ids, allocated_by=allocated_by, created_at=utc_now_iso())
    item.history.append(entry)
    return entry


def touch(request: Request, actor: str | None) -> None:
    request.updated_by = actor
    request.updated_at = utc_now_iso()
