"""Request lifecycle: submission, approval and allocation across experiments.

A request moves ``pending -> approved -> partially_fulfilled -> fulfilled ->
completed`` (or ``pending -> rejected``). Allocation statuses are never set
by hand; they are recomputed from the ``is_allocated`` flags of every item
after each allocation pass.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.clock import utc_now_iso
from ..core.errors import (
    DateRestrictionError,
    InvalidTransitionError,
    LabStockError,
    NotFoundError,
    OverrideNotNeededError,
    PermissionDeniedError,
    ValidationError,
)
from ..core.logging import log_event
from ..core.stock_types import (
    KIND_CHEMICAL,
    KIND_EQUIPMENT,
    KIND_GLASSWARE,
    REQUEST_APPROVED,
    REQUEST_COMPLETED,
    REQUEST_FULFILLED,
    REQUEST_PARTIALLY_FULFILLED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    UNIT_ASSIGNED,
    UNIT_AVAILABLE,
    next_request_statuses,
)
from ..crud import requests as request_crud
from ..crud import stock
from ..models.equipment import EquipmentUnit
from ..models.glassware import GlasswareStock
from ..models.request import Experiment, Request, RequestItem
from ..settings import settings
from . import allocation, dategate
from .lab_directory import LabDirectory

logger = logging.getLogger("labstock.fulfillment")

OUTCOME_NONE = "none"
OUTCOME_PARTIAL = "partial"
OUTCOME_FULL = "full"

EDITABLE_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_PARTIALLY_FULFILLED)
ALLOCATING_STATUSES = (REQUEST_APPROVED, REQUEST_PARTIALLY_FULFILLED)


@dataclass
class AllocationIssue:
    category: str
    message: str
    code: str
    experiment_id: int | None = None
    item_id: int | None = None
    name: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UnifiedAllocationResult:
    request_id: int
    status: str
    outcome: str
    errors: list[AllocationIssue] = field(default_factory=list)
    chemicals: list[allocation.ItemAllocationResult] = field(default_factory=list)
    glassware: list[allocation.GlasswareAllocationResult] = field(default_factory=list)
    equipment: list[allocation.EquipmentAllocationResult] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status,
            "outcome": self.outcome,
            "errors": [issue.as_dict() for issue in self.errors],
            "chemicals": [result.as_dict() for result in self.chemicals],
            "glassware": [result.as_dict() for result in self.glassware],
            "equipment": [result.as_dict() for result in self.equipment],
        }


@dataclass
class EditOutcome:
    processed: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


# ----- status


def _all_active_allocated(items: list) -> bool:
    """Every enabled item is allocated and at least one item was handed out.

    Disabled items were withdrawn from the request, so they never hold it
    open. A request whose items are all disabled is not fulfilled.
    """

    if not items:
        return True
    active = [item for item in items if not item.is_disabled]
    return all(item.is_allocated for item in active) and any(item.is_allocated for item in items)


def recompute_status(request: Request) -> str:
    """Derive the allocation status from item flags without touching the request."""

    items = list(request.iter_items())
    if _all_active_allocated(items):
        return REQUEST_FULFILLED
    if any(item.is_allocated for item in items):
        return REQUEST_PARTIALLY_FULFILLED
    return request.status


def allocation_outcome(request: Request) -> str:
    items = list(request.iter_items())
    if items and _all_active_allocated(items):
        return OUTCOME_FULL
    if any(item.is_allocated for item in items):
        return OUTCOME_PARTIAL
    return OUTCOME_NONE


def transition(request: Request, target: str, actor: str | None = None) -> Request:
    if target not in next_request_statuses(request.status):
        raise InvalidTransitionError(request.status, target)
    request.status = target
    request_crud.touch(request, actor)
    return request


def _apply_recomputed_status(request: Request, actor: str | None) -> None:
    if request.status not in ALLOCATING_STATUSES:
        request_crud.touch(request, actor)
        return
    target = recompute_status(request)
    if target != request.status:
        transition(request, target, actor)
    else:
        request_crud.touch(request, actor)


# ----- lifecycle


def submit_request(
    db: Session,
    *,
    faculty_id: str,
    lab_id: str,
    experiments: Iterable[Mapping[str, Any]],
    actor: str | None = None,
    lab_directory: LabDirectory,
) -> Request:
    if not faculty_id:
        raise ValidationError("faculty_id is required")
    lab_directory.require(lab_id)
    payloads = list(experiments)
    if not payloads:
        raise ValidationError("At least one experiment is required")
    for payload in payloads:
        if not payload.get("items"):
            raise ValidationError(
                "Every experiment needs at least one item",
                details={"experiment": payload.get("name")},
            )
    request = request_crud.create_request(
        db,
        faculty_id=faculty_id,
        lab_id=lab_id,
        experiments=payloads,
        created_by=actor or faculty_id,
    )
    logger.info(
        "request.submitted",
        extra={"extra_data": {"request_id": request.id, "lab_id": lab_id, "experiments": len(payloads)}},
    )
    return request


def _decide(db: Session, request_id: int, target: str, actor: str | None, reason: str | None) -> Request:
    request = request_crud.get_request(db, request_id)
    if request.status != REQUEST_PENDING:
        raise InvalidTransitionError(request.status, target)
    transition(request, target, actor)
    request_crud.add_approval(db, request, target, actor, reason)
    db.commit()
    db.refresh(request)
    log_event(logger, f"request.{target}", request_id=request_id, actor=actor)
    return request


def approve_request(db: Session, request_id: int, actor: str | None = None, reason: str | None = None) -> Request:
    return _decide(db, request_id, REQUEST_APPROVED, actor, reason)


def reject_request(db: Session, request_id: int, actor: str | None = None, reason: str | None = None) -> Request:
    return _decide(db, request_id, REQUEST_REJECTED, actor, reason)


def complete_request(db: Session, request_id: int, actor: str | None = None) -> Request:
    request = request_crud.get_request(db, request_id)
    transition(request, REQUEST_COMPLETED, actor)
    db.commit()
    db.refresh(request)
    log_event(logger, "request.completed", request_id=request_id, actor=actor)
    return request


# ----- allocation


def _remaining(item: RequestItem) -> float:
    return max(0.0, float(item.quantity) - float(item.allocated_quantity or 0))


def _mark_allocated(db: Session, item: RequestItem, amount: float, actor: str | None, unit_ids: list[str] | None = None) -> None:
    item.allocated_quantity = float(item.allocated_quantity or 0) + amount
    item.is_allocated = stock.is_exhausted(float(item.quantity) - item.allocated_quantity)
    request_crud.record_allocation_history(db, item, amount, allocated_by=actor, unit_ids=unit_ids)
    db.commit()


def _allocate_chemical(db, request, experiment, item, actor, result: UnifiedAllocationResult) -> None:
    outcome = allocation.allocate_chemical_item(
        db, request.lab_id, item.name, _remaining(item), actor=actor, request_id=request.id
    )
    result.chemicals.append(outcome)
    if outcome.success:
        _mark_allocated(db, item, outcome.allocated_quantity, actor)
        return
    result.errors.append(
        AllocationIssue(
            category=KIND_CHEMICAL,
            message=outcome.reason or "Allocation failed",
            code=outcome.error_code or allocation.FAILED,
            experiment_id=experiment.id,
            item_id=item.id,
            name=item.name,
        )
    )


def _allocate_glassware(db, request, experiment, item, actor, result: UnifiedAllocationResult) -> None:
    (outcome,) = allocation.allocate_glassware(
        db,
        [{"glassware_id": item.glassware_id, "quantity": _remaining(item)}],
        request.lab_id,
        actor=actor,
        request_id=request.id,
    )
    result.glassware.append(outcome)
    if outcome.success:
        _mark_allocated(db, item, outcome.allocated_quantity, actor)
        return
    result.errors.append(
        AllocationIssue(
            category=KIND_GLASSWARE,
            message=outcome.reason or "Allocation failed",
            code=outcome.error_code or allocation.FAILED,
            experiment_id=experiment.id,
            item_id=item.id,
            name=outcome.name or item.name,
        )
    )


def _already_allocated_ids(item: RequestItem) -> set[str]:
    return {unit_id for entry in item.history for unit_id in (entry.unit_ids or [])}


def _allocate_equipment(db, request, experiment, item, actor, unit_ids, result: UnifiedAllocationResult) -> None:
    taken = _already_allocated_ids(item)
    candidates = [unit_id for unit_id in (unit_ids or item.item_ids or []) if unit_id not in taken]
    needed = int(round(_remaining(item)))
    candidates = candidates[:needed]
    if not candidates:
        result.errors.append(
            AllocationIssue(
                category=KIND_EQUIPMENT,
                message="No equipment units selected",
                code=ValidationError.code,
                experiment_id=experiment.id,
                item_id=item.id,
                name=item.name,
            )
        )
        return
    (group,) = allocation.allocate_equipment_units(
        db,
        settings.CENTRAL_STORE_ID,
        [{"name": item.name, "variant": item.variant, "item_ids": candidates}],
        actor=actor,
        to_lab_id=request.lab_id,
        assigned_to=request.faculty_id,
        new_status=UNIT_ASSIGNED,
        request_id=request.id,
    )
    result.equipment.append(group)
    allocated_ids = group.allocated_ids
    if allocated_ids:
        item.item_ids = sorted(taken | set(allocated_ids))
        _mark_allocated(db, item, float(len(allocated_ids)), actor, unit_ids=allocated_ids)
    for unit in group.units:
        if unit.success:
            continue
        result.errors.append(
            AllocationIssue(
                category=KIND_EQUIPMENT,
                message=f"{unit.item_id}: {unit.message or unit.status}",
                code=unit.status,
                experiment_id=experiment.id,
                item_id=item.id,
                name=item.name,
            )
        )


def _allocate_item(db, request, experiment, item, actor, unit_ids, result: UnifiedAllocationResult) -> None:
    """Allocate one item; any failure is recorded against it and the pass goes on."""

    kind, item_id, name = item.kind, item.id, item.name
    experiment_id = experiment.id
    try:
        if kind == KIND_CHEMICAL:
            _allocate_chemical(db, request, experiment, item, actor, result)
        elif kind == KIND_GLASSWARE:
            _allocate_glassware(db, request, experiment, item, actor, result)
        elif kind == KIND_EQUIPMENT:
            _allocate_equipment(db, request, experiment, item, actor, unit_ids, result)
    except Exception as exc:
        db.rollback()
        logger.exception(
            "request.item_failed",
            extra={"extra_data": {"request_id": request.id, "item_id": item_id, "kind": kind}},
        )
        result.errors.append(
            AllocationIssue(
                category=kind,
                message=exc.message if isinstance(exc, LabStockError) else (str(exc) or exc.__class__.__name__),
                code=exc.code if isinstance(exc, LabStockError) else "allocation_error",
                experiment_id=experiment_id,
                item_id=item_id,
                name=name,
            )
        )


def _normalize_unit_selection(equipment_unit_ids: Mapping[Any, Iterable[str]] | None) -> dict[int, list[str]]:
    return {int(key): list(value or []) for key, value in (equipment_unit_ids or {}).items()}


def _run_allocation(
    db: Session,
    request: Request,
    *,
    actor: str | None,
    is_admin: bool,
    equipment_unit_ids: Mapping[Any, Iterable[str]] | None,
    today: date | None,
) -> UnifiedAllocationResult:
    selection = _normalize_unit_selection(equipment_unit_ids)
    result = UnifiedAllocationResult(request_id=request.id, status=request.status, outcome=OUTCOME_NONE)

    for experiment in request.experiments:
        try:
            dategate.require_allocation_allowed(experiment, is_admin, today)
        except DateRestrictionError as exc:
            result.errors.append(
                AllocationIssue(
                    category="date",
                    message=exc.message,
                    code=exc.reason,
                    experiment_id=experiment.id,
                    name=experiment.name,
                )
            )
            continue
        for item in list(experiment.items):
            if item.is_allocated or item.is_disabled:
                continue
            _allocate_item(db, request, experiment, item, actor, selection.get(item.id), result)

    for experiment in request.experiments:
        dategate.refresh_experiment_status(experiment, is_admin, today)

    _apply_recomputed_status(request, actor)
    db.commit()
    db.refresh(request)
    result.status = request.status
    result.outcome = allocation_outcome(request)
    logger.info(
        "request.allocated",
        extra={
            "extra_data": {
                "request_id": request.id,
                "status": request.status,
                "outcome": result.outcome,
                "errors": len(result.errors),
            }
        },
    )
    return result


def allocate_unified(
    db: Session,
    request_id: int,
    *,
    actor: str | None = None,
    is_admin: bool = False,
    equipment_unit_ids: Mapping[Any, Iterable[str]] | None = None,
    today: date | None = None,
) -> UnifiedAllocationResult:
    """Allocate every pending item of an approved request.

    Each item succeeds or fails on its own. Experiments whose date no longer
    permits allocation are skipped and reported in ``errors``.
    ``equipment_unit_ids`` maps a request item id to the unit ids to assign;
    without it the ids chosen at submission are used.
    """

    request = request_crud.get_request(db, request_id)
    if request.status != REQUEST_APPROVED:
        raise InvalidTransitionError(request.status, REQUEST_FULFILLED)
    return _run_allocation(
        db, request, actor=actor, is_admin=is_admin, equipment_unit_ids=equipment_unit_ids, today=today
    )


def fulfill_remaining(
    db: Session,
    request_id: int,
    *,
    actor: str | None = None,
    is_admin: bool = False,
    equipment_unit_ids: Mapping[Any, Iterable[str]] | None = None,
    today: date | None = None,
) -> UnifiedAllocationResult:
    request = request_crud.get_request(db, request_id)
    if request.status != REQUEST_PARTIALLY_FULFILLED:
        raise InvalidTransitionError(request.status, REQUEST_FULFILLED)
    return _run_allocation(
        db, request, actor=actor, is_admin=is_admin, equipment_unit_ids=equipment_unit_ids, today=today
    )


# ----- inspection


def available_inventory(db: Session, item: RequestItem) -> float:
    """How much of ``item`` the central store could still hand out."""

    if item.kind == KIND_CHEMICAL:
        return float(sum(row.quantity for row in stock.find_central_batches(db, item.name)))
    if item.kind == KIND_GLASSWARE:
        row = db.get(GlasswareStock, item.glassware_id) if item.glassware_id is not None else None
        if row is None or row.lab_id != settings.CENTRAL_STORE_ID:
            return 0.0
        return float(row.quantity)
    stmt = select(func.count(EquipmentUnit.id)).where(
        EquipmentUnit.product_name == item.name,
        EquipmentUnit.status == UNIT_AVAILABLE,
        EquipmentUnit.lab_id == settings.CENTRAL_STORE_ID,
    )
    if item.variant:
        stmt = stmt.where(EquipmentUnit.variant == item.variant)
    return float(db.execute(stmt).scalar() or 0)


def _item_summary(item: RequestItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "kind": item.kind,
        "name": item.name,
        "variant": item.variant,
        "unit": item.unit,
        "quantity": item.quantity,
        "original_quantity": item.original_quantity,
        "allocated_quantity": item.allocated_quantity,
        "is_allocated": item.is_allocated,
        "is_disabled": item.is_disabled,
        "disabled_reason": item.disabled_reason,
        "was_disabled": item.was_disabled,
    }


def allocation_overview(
    db: Session,
    request_id: int,
    *,
    is_admin: bool = False,
    today: date | None = None,
) -> dict[str, Any]:
    request = request_crud.get_request(db, request_id)
    experiments = []
    for experiment in request.experiments:
        status = dategate.refresh_experiment_status(experiment, is_admin, today)
        decision = dategate.experiment_gate(experiment, is_admin, today)
        experiments.append(
            {
                "experiment_id": experiment.id,
                "name": experiment.name,
                "date": experiment.date,
                "admin_override": bool(experiment.admin_override),
                "override_reason": experiment.override_reason,
                "date_status": decision.as_dict(),
                "allocation_status": status.as_dict(),
                "items": {
                    kind: [_item_summary(item) for item in experiment.items_of(kind)]
                    for kind in (KIND_CHEMICAL, KIND_GLASSWARE, KIND_EQUIPMENT)
                },
            }
        )
    db.commit()
    items = list(request.iter_items())
    return {
        "request_id": request.id,
        "status": request.status,
        "outcome": allocation_outcome(request),
        "experiments": experiments,
        "summary": {
            "total_items": len(items),
            "allocated": sum(1 for item in items if item.is_allocated),
            "disabled": sum(1 for item in items if item.is_disabled),
            "pending": sum(1 for item in items if not item.is_allocated and not item.is_disabled),
        },
    }


def edit_permissions_overview(
    db: Session,
    request_id: int,
    *,
    is_admin: bool = False,
    today: date | None = None,
) -> list[dict[str, Any]]:
    request = request_crud.get_request(db, request_id)
    overview = []
    for experiment in request.experiments:
        decision = dategate.is_allocation_allowed(experiment.date, is_admin, today)
        overview.append(
            {
                "experiment_id": experiment.id,
                "name": experiment.name,
                "date": experiment.date,
                "date_status": decision.as_dict(),
                "items": [
                    {
                        "item_id": item.id,
                        "kind": item.kind,
                        "name": item.name,
                        "permissions": dategate.item_edit_permissions(
                            item, experiment.date, is_admin, available_inventory(db, item), today
                        ).as_dict(),
                    }
                    for item in experiment.items
                ],
            }
        )
    return overview


# ----- admin adjustments


def set_admin_override(
    db: Session,
    request_id: int,
    experiment_id: int,
    *,
    actor: str | None,
    is_admin: bool,
    enable: bool,
    reason: str | None = None,
    today: date | None = None,
) -> Experiment:
    """Let admins allocate for an experiment whose grace period has passed."""

    if not is_admin:
        raise PermissionDeniedError("Only admins can set an allocation override")
    request = request_crud.get_request(db, request_id)
    experiment = request_crud.find_experiment(request, experiment_id)
    reason = (reason or "").strip()
    if enable:
        if not reason:
            raise ValidationError("A reason is required to enable an override")
        if dategate.is_allocation_allowed(experiment.date, True, today).allowed:
            raise OverrideNotNeededError(
                "Override is not needed; allocation is still permitted for this date",
                details={"experiment_id": experiment_id},
            )
        experiment.admin_override = True
        experiment.override_reason = reason
        experiment.override_by = actor
        experiment.override_at = utc_now_iso()
    else:
        experiment.admin_override = False
        experiment.override_reason = None
        experiment.override_by = None
        experiment.override_at = None
    dategate.refresh_experiment_status(experiment, True, today)
    request_crud.touch(request, actor)
    db.commit()
    db.refresh(experiment)
    logger.info(
        "request.override",
        extra={"extra_data": {"request_id": request_id, "experiment_id": experiment_id, "enabled": enable}},
    )
    return experiment


def _set_disabled(item: RequestItem, disabled: bool, reason: str | None) -> None:
    if disabled:
        if item.is_allocated:
            raise ValidationError("Cannot disable an item that is already allocated", details={"item_id": item.id})
        item.is_disabled = True
        item.disabled_reason = (reason or "").strip() or "No reason provided"
    else:
        if item.is_disabled:
            item.was_disabled = True
        item.is_disabled = False
        item.disabled_reason = None


def set_item_disabled(
    db: Session,
    request_id: int,
    updates: Iterable[Mapping[str, Any]],
    *,
    actor: str | None = None,
    is_admin: bool = False,
    today: date | None = None,
) -> EditOutcome:
    request = request_crud.get_request(db, request_id)
    if request.status not in EDITABLE_STATUSES:
        raise ValidationError(f"Items of a {request.status} request cannot be enabled or disabled")
    outcome = EditOutcome()
    for update in updates:
        ref = {"experiment_id": update.get("experiment_id"), "item_id": update.get("item_id")}
        try:
            experiment = request_crud.find_experiment(request, update.get("experiment_id"))
            item = request_crud.find_item(experiment, update.get("item_id"))
            _set_disabled(item, bool(update.get("is_disabled")), update.get("reason"))
        except (ValidationError, NotFoundError) as exc:
            outcome.errors.append({**ref, "error": exc.message, "code": exc.code})
            continue
        outcome.processed.append({**ref, "is_disabled": item.is_disabled, "was_disabled": item.was_disabled})
    for experiment in request.experiments:
        dategate.refresh_experiment_status(experiment, is_admin, today)
    _apply_recomputed_status(request, actor)
    db.commit()
    return outcome


def _apply_quantity(item: RequestItem, new_quantity: float, permissions: dategate.EditPermissions) -> None:
    if new_quantity < 0:
        raise ValidationError("Quantity cannot be negative")
    if new_quantity < float(item.allocated_quantity or 0):
        raise ValidationError(
            "Quantity cannot drop below what is already allocated",
            details={"allocated_quantity": item.allocated_quantity},
        )
    current = float(item.quantity)
    if item.is_allocated:
        if new_quantity < current:
            raise ValidationError("Allocated items cannot be decreased")
        if new_quantity > current:
            if not permissions.can_increase:
                raise ValidationError(permissions.reason or "Insufficient inventory to increase this item")
            if new_quantity - current > permissions.max_increase:
                raise ValidationError(
                    "Increase exceeds available inventory",
                    details={"max_increase": permissions.max_increase},
                )
            # the added amount is allocated by the next fulfil-remaining pass
            item.is_allocated = False
    elif not permissions.can_edit:
        raise ValidationError(permissions.reason or "Item cannot be edited")
    if item.original_quantity is None:
        item.original_quantity = current
    item.quantity = new_quantity


def admin_edit_items(
    db: Session,
    request_id: int,
    edits: Iterable[Mapping[str, Any]],
    *,
    actor: str | None = None,
    is_admin: bool = False,
    today: date | None = None,
) -> EditOutcome:
    """Apply admin quantity changes and disables, one edit at a time.

    Edits are checked against ``dategate.item_edit_permissions`` using the
    inventory the central store can currently supply. A rejected edit is
    reported and the rest still apply.
    """

    if not is_admin:
        raise PermissionDeniedError("Only admins can edit requests")
    request = request_crud.get_request(db, request_id)
    if request.status not in EDITABLE_STATUSES:
        raise ValidationError(f"Requests in status {request.status} cannot be edited")

    outcome = EditOutcome()
    for edit in edits:
        ref = {"experiment_id": edit.get("experiment_id"), "item_id": edit.get("item_id")}
        try:
            experiment = request_crud.find_experiment(request, edit.get("experiment_id"))
            decision = dategate.experiment_gate(experiment, is_admin, today)
            if not decision.allowed and decision.reason == dategate.REASON_EXPIRED_COMPLETELY:
                raise ValidationError("Experiment date expired beyond grace period")
            item = request_crud.find_item(experiment, edit.get("item_id"))
            if edit.get("new_quantity") is not None:
                permissions = dategate.item_edit_permissions(
                    item, experiment.date, is_admin, available_inventory(db, item), today
                )
                _apply_quantity(item, float(edit["new_quantity"]), permissions)
            if edit.get("disable_item"):
                if not (edit.get("disable_reason") or "").strip():
                    raise ValidationError("A reason is required to disable an item")
                _set_disabled(item, True, edit.get("disable_reason"))
        except (ValidationError, NotFoundError) as exc:
            outcome.errors.append({**ref, "error": exc.message, "code": exc.code})
            continue
        outcome.processed.append({**ref, **_item_summary(item)})

    for experiment in request.experiments:
        dategate.refresh_experiment_status(experiment, is_admin, today)
    _apply_recomputed_status(request, actor)
    db.commit()
    logger.info(
        "request.edited",
        extra={"extra_data": {"request_id": request_id, "applied": len(outcome.processed), "rejected": len(outcome.errors)}},
    )
    return outcome
