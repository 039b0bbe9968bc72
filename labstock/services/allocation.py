"""Moving stock from the central store (or a lab) to its destination.

Chemicals are consumed FIFO by expiry across the central batches of one
display name. Each batch step is an independent conditional decrement, so a
requested item that cannot be completed is compensated by re-incrementing
what was already taken. One item's failure never affects its siblings.

Equipment is allocated by unit identity and glassware by a single-row
decrement.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Mapping, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..core.batch_names import clean_name, name_key
from ..core.errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    LabStockError,
    NotFoundError,
    UnitStatusConflictError,
    ValidationError,
)
from ..core.stock_types import (
    ENTRY_ALLOCATION,
    ENTRY_ASSIGN,
    ENTRY_ISSUE,
    ENTRY_RETURN,
    ENTRY_ROLLBACK,
    FACULTY_LOCATION,
    KIND_CHEMICAL,
    KIND_EQUIPMENT,
    KIND_GLASSWARE,
    UNIT_ASSIGNED,
    UNIT_AVAILABLE,
    UNIT_ISSUED,
)
from ..crud import ledger, stock
from ..models.chemical import ChemicalLive
from ..settings import settings
from . import out_of_stock

logger = logging.getLogger("labstock.allocation")

SUCCESS = "success"
PARTIAL = "partial"
FAILED = "failed"

UNIT_INVALID = "invalid"
UNIT_UNAVAILABLE = "unavailable"
UNIT_NOT_FOUND = "not_found"

T = TypeVar("T")


# ----- results


@dataclass
class BatchStep:
    central_id: int
    batch_id: int
    name: str
    display_name: str
    amount: float
    expiry_date: date | None
    unit: str
    lab_row_id: int | None = None
    lab_row_created: bool = False


@dataclass
class ItemAllocationResult:
    name: str
    requested: float
    status: str
    allocated_quantity: float = 0.0
    attempted_quantity: float = 0.0
    unit: str | None = None
    expiry_date: date | None = None
    destination_ref: int | None = None
    breakdown: list[dict[str, Any]] = field(default_factory=list)
    reason: str | None = None
    error_code: str | None = None

    @property
    def success(self) -> bool:
        return self.status == SUCCESS

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UnitAllocationResult:
    item_id: str
    status: str
    message: str | None = None

    @property
    def success(self) -> bool:
        return self.status == SUCCESS


@dataclass
class EquipmentAllocationResult:
    name: str
    variant: str | None
    status: str
    units: list[UnitAllocationResult] = field(default_factory=list)

    @property
    def allocated_ids(self) -> list[str]:
        return [unit.item_id for unit in self.units if unit.success]

    @property
    def success(self) -> bool:
        return self.status == SUCCESS

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["allocated_ids"] = self.allocated_ids
        return payload


@dataclass
class GlasswareAllocationResult:
    glassware_id: int
    name: str | None
    requested: float
    status: str
    allocated_quantity: float = 0.0
    destination_ref: int | None = None
    reason: str | None = None
    error_code: str | None = None

    @property
    def success(self) -> bool:
        return self.status == SUCCESS

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def all_succeeded(results: Iterable[Any]) -> bool:
    return all(result.success for result in results)


# ----- retry


_TRANSIENT_MARKERS = ("database is locked", "database is busy", "deadlock detected", "could not serialize")


def is_transient(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def with_retries(
    operation: Callable[[], T],
    *,
    entity: str,
    max_retries: int | None = None,
    backoff_seconds: float | None = None,
    db: Session | None = None,
) -> T:
    """Run ``operation`` until it stops raising ``ConcurrencyConflictError``.

    Lock contention reported by the driver as a transient ``OperationalError``
    is retried the same way after rolling ``db`` back; any other
    ``OperationalError`` propagates at once. The last failure propagates once
    ``max_retries`` attempts are used.
    """

    attempts = max_retries or settings.ALLOCATION_MAX_RETRIES
    backoff = settings.ALLOCATION_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except (ConcurrencyConflictError, OperationalError) as exc:
            if isinstance(exc, OperationalError):
                if not is_transient(exc):
                    raise
                if db is not None:
                    db.rollback()
            logger.warning(
                "allocation.retry",
                extra={
                    "extra_data": {
                        "entity": entity,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": getattr(exc, "message", None) or str(exc),
                    }
                },
            )
            if attempt == attempts:
                raise
            if backoff > 0:
                time.sleep(backoff * attempt)
    raise AssertionError("unreachable")


# ----- chemicals


def _consume_step(db: Session, row_id: int, remaining: float) -> tuple[ChemicalLive, float] | None:
    """Take up to ``remaining`` from one central row, re-reading it on each retry."""

    def attempt() -> tuple[ChemicalLive, float] | None:
        # another caller may have emptied and deleted the row since the walk started
        fresh = stock.reload_live(db, row_id)
        if fresh is None or stock.is_exhausted(fresh.quantity):
            return None
        amount = min(fresh.quantity, remaining)
        return stock.conditional_decrement(db, row_id, amount), amount

    try:
        return with_retries(attempt, entity=f"chemical_live:{row_id}", db=db)
    except ConcurrencyConflictError:
        return None


def _rollback_steps(
    db: Session,
    steps: list[BatchStep],
    *,
    lab_id: str,
    actor: str | None,
    request_id: int | None,
) -> list[int]:
    """Return the stock taken by ``steps`` and return the steps that could not be undone."""

    unrecovered: list[int] = []
    for step in reversed(steps):
        try:
            try:
                stock.increment(db, step.central_id, step.amount)
            except NotFoundError:
                stock.increment_or_create(
                    db,
                    step.batch_id,
                    settings.CENTRAL_STORE_ID,
                    step.amount,
                    {
                        "name": step.name,
                        "display_name": step.display_name,
                        "name_key": name_key(step.display_name),
                        "unit": step.unit,
                        "expiry_date": step.expiry_date,
                    },
                )
            if step.lab_row_id is not None:
                lab_row = stock.revert_credit(db, step.lab_row_id, step.amount)
                if step.lab_row_created and stock.is_exhausted(lab_row.quantity):
                    stock.delete_live(db, lab_row)
            ledger.record_ledger_entry(
                db,
                resource_kind=KIND_CHEMICAL,
                entry_type=ENTRY_ROLLBACK,
                resource_name=step.name,
                resource_ref=step.batch_id,
                from_location=lab_id,
                to_location=settings.CENTRAL_STORE_ID,
                amount=step.amount,
                unit=step.unit,
                performed_by=actor,
                request_id=request_id,
                note="Compensation for incomplete allocation",
            )
        except LabStockError:
            db.rollback()
            logger.exception(
                "allocation.rollback_step_failed",
                extra={"extra_data": {"central_id": step.central_id, "amount": step.amount}},
            )
            unrecovered.append(step.central_id)
    return unrecovered


def allocate_chemical_item(
    db: Session,
    lab_id: str,
    name: str,
    quantity: float,
    *,
    actor: str | None = None,
    request_id: int | None = None,
) -> ItemAllocationResult:
    """Move ``quantity`` of ``name`` from the central store to ``lab_id``."""

    display = clean_name(name)
    result = ItemAllocationResult(name=display, requested=quantity, status=FAILED)
    if not display or quantity is None or quantity <= 0:
        result.reason = "Name and a positive quantity are required"
        result.error_code = ValidationError.code
        return result

    steps: list[BatchStep] = []
    remaining = float(quantity)
    try:
        batches = stock.find_central_batches(db, display)
        if not batches:
            raise InsufficientStockError(display, quantity, 0)
        result.unit = batches[0].unit
        batch_ids = [row.id for row in batches]

        for central_id in batch_ids:
            if stock.is_exhausted(remaining):
                break
            consumed = _consume_step(db, central_id, remaining)
            if consumed is None:
                continue
            central_after, amount = consumed
            step = BatchStep(
                central_id=central_after.id,
                batch_id=central_after.batch_id,
                name=central_after.name,
                display_name=central_after.display_name,
                amount=amount,
                expiry_date=central_after.expiry_date,
                unit=central_after.unit,
            )
            steps.append(step)

            lab_row, created = stock.increment_or_create(
                db,
                central_after.batch_id,
                lab_id,
                amount,
                {
                    "name": central_after.name,
                    "display_name": central_after.display_name,
                    "name_key": central_after.name_key,
                    "unit": central_after.unit,
                    "expiry_date": central_after.expiry_date,
                },
            )
            step.lab_row_id = lab_row.id
            step.lab_row_created = created
            ledger.record_ledger_entry(
                db,
                resource_kind=KIND_CHEMICAL,
                entry_type=ENTRY_ALLOCATION,
                resource_name=central_after.name,
                resource_ref=central_after.batch_id,
                from_location=settings.CENTRAL_STORE_ID,
                to_location=lab_id,
                amount=amount,
                unit=central_after.unit,
                performed_by=actor,
                request_id=request_id,
            )
            remaining -= amount

        if not stock.is_exhausted(remaining):
            raise InsufficientStockError(display, quantity, quantity - remaining)
    except Exception as exc:
        db.rollback()
        attempted = sum(step.amount for step in steps)
        if isinstance(exc, LabStockError):
            result.reason = exc.message
            result.error_code = exc.code
        else:
            logger.exception("allocation.step_failed", extra={"extra_data": {"name": display, "lab_id": lab_id}})
            result.reason = str(exc) or exc.__class__.__name__
            result.error_code = "allocation_error"
        result.attempted_quantity = attempted
        if steps:
            unrecovered = _rollback_steps(db, steps, lab_id=lab_id, actor=actor, request_id=request_id)
            logger.warning(
                "allocation.rollback",
                extra={
                    "extra_data": {
                        "name": display,
                        "lab_id": lab_id,
                        "requested": quantity,
                        "attempted": attempted,
                        "steps": len(steps),
                        "unrecovered": unrecovered,
                    }
                },
            )
        return result

    for step in steps:
        central = stock.reload_live(db, step.central_id)
        if central is not None and stock.is_exhausted(central.quantity):
            out_of_stock.on_batch_exhausted(db, central)

    last = steps[-1]
    result.status = SUCCESS
    result.allocated_quantity = float(quantity)
    result.attempted_quantity = float(quantity)
    result.expiry_date = last.expiry_date
    result.destination_ref = last.lab_row_id
    result.breakdown = [
        {"batch_id": step.batch_id, "name": step.name, "quantity": step.amount, "expiry_date": step.expiry_date}
        for step in steps
    ]
    logger.info(
        "allocation.chemical",
        extra={"extra_data": {"name": display, "lab_id": lab_id, "quantity": quantity, "batches": len(steps)}},
    )
    return result


def allocate_chemicals(
    db: Session,
    lab_id: str,
    items: Iterable[Mapping[str, Any]],
    *,
    actor: str | None = None,
    request_id: int | None = None,
) -> list[ItemAllocationResult]:
    """Allocate each ``{"name", "quantity"}`` item independently."""

    return [
        allocate_chemical_item(
            db,
            lab_id,
            item.get("name") or item.get("chemical_name") or "",
            item.get("quantity"),
            actor=actor,
            request_id=request_id,
        )
        for item in items
    ]


# ----- equipment


def _matches(unit_value: str | None, requested: str | None) -> bool:
    if not requested:
        return True
    return clean_name(unit_value).casefold() == clean_name(requested).casefold()


def allocate_equipment_units(
    db: Session,
    from_lab_id: str,
    allocations: Iterable[Mapping[str, Any]],
    *,
    actor: str | None = None,
    to_lab_id: str | None = None,
    assigned_to: str | None = None,
    new_status: str = UNIT_ISSUED,
    request_id: int | None = None,
) -> list[EquipmentAllocationResult]:
    """Transition named units from Available at ``from_lab_id`` to ``new_status``.

    Every unit succeeds or fails on its own; units already transitioned stay
    transitioned when a sibling fails.
    """

    results: list[EquipmentAllocationResult] = []
    location = to_lab_id or FACULTY_LOCATION
    entry_type = ENTRY_ASSIGN if new_status == UNIT_ASSIGNED else ENTRY_ISSUE
    for allocation in allocations:
        name = allocation.get("name") or ""
        variant = allocation.get("variant")
        group = EquipmentAllocationResult(name=name, variant=variant, status=FAILED)
        for item_id in allocation.get("item_ids") or []:
            unit = stock.find_unit(db, item_id)
            if unit is None:
                group.units.append(UnitAllocationResult(item_id, UNIT_NOT_FOUND, "Unit not found"))
                continue
            if not _matches(unit.product_name, name) or not _matches(unit.variant, variant):
                group.units.append(
                    UnitAllocationResult(item_id, UNIT_INVALID, f"Unit is {unit.product_name} {unit.variant or ''}".strip())
                )
                continue
            try:
                stock.transition_unit(
                    db,
                    item_id,
                    UNIT_AVAILABLE,
                    new_status,
                    new_location=location,
                    new_lab_id=to_lab_id,
                    assigned_to=assigned_to,
                    expected_lab_id=from_lab_id,
                )
            except UnitStatusConflictError as exc:
                group.units.append(UnitAllocationResult(item_id, UNIT_UNAVAILABLE, exc.message))
                continue
            except NotFoundError as exc:
                group.units.append(UnitAllocationResult(item_id, UNIT_NOT_FOUND, exc.message))
                continue
            ledger.record_ledger_entry(
                db,
                resource_kind=KIND_EQUIPMENT,
                entry_type=entry_type,
                resource_name=unit.product_name,
                resource_ref=item_id,
                from_location=from_lab_id,
                to_location=location,
                unit=unit.unit,
                performed_by=actor,
                request_id=request_id,
                note=f"Assigned to {assigned_to}" if assigned_to else None,
            )
            group.units.append(UnitAllocationResult(item_id, SUCCESS))

        succeeded = len(group.allocated_ids)
        if group.units and succeeded == len(group.units):
            group.status = SUCCESS
        elif succeeded:
            group.status = PARTIAL
        logger.info(
            "allocation.equipment",
            extra={"extra_data": {"name": name, "from_lab_id": from_lab_id, "allocated": succeeded, "requested": len(group.units)}},
        )
        results.append(group)
    return results


def return_equipment_units(db: Session, item_ids: Iterable[str], *, actor: str | None = None) -> list[UnitAllocationResult]:
    """Send issued or assigned units back to the central store as Available."""

    results: list[UnitAllocationResult] = []
    for item_id in item_ids:
        unit = stock.find_unit(db, item_id)
        if unit is None:
            results.append(UnitAllocationResult(item_id, UNIT_NOT_FOUND, "Unit not found"))
            continue
        if unit.status not in (UNIT_ISSUED, UNIT_ASSIGNED):
            results.append(UnitAllocationResult(item_id, UNIT_INVALID, f"Unit is {unit.status}"))
            continue
        from_location = unit.location
        try:
            stock.transition_unit(
                db,
                item_id,
                unit.status,
                UNIT_AVAILABLE,
                new_location=settings.CENTRAL_STORE_ID,
                new_lab_id=settings.CENTRAL_STORE_ID,
                assigned_to=None,
            )
        except UnitStatusConflictError as exc:
            results.append(UnitAllocationResult(item_id, UNIT_UNAVAILABLE, exc.message))
            continue
        ledger.record_ledger_entry(
            db,
            resource_kind=KIND_EQUIPMENT,
            entry_type=ENTRY_RETURN,
            resource_name=unit.product_name,
            resource_ref=item_id,
            from_location=from_location,
            to_location=settings.CENTRAL_STORE_ID,
            performed_by=actor,
        )
        results.append(UnitAllocationResult(item_id, SUCCESS))
    return results


# ----- glassware


def allocate_glassware(
    db: Session,
    allocations: Iterable[Mapping[str, Any]],
    to_lab_id: str,
    *,
    actor: str | None = None,
    request_id: int | None = None,
) -> list[GlasswareAllocationResult]:
    """Decrement each referenced central glassware row and credit ``to_lab_id``."""

    results: list[GlasswareAllocationResult] = []
    for allocation in allocations:
        stock_id = allocation.get("glassware_id")
        quantity = allocation.get("quantity")
        result = GlasswareAllocationResult(glassware_id=stock_id, name=None, requested=quantity or 0, status=FAILED)
        results.append(result)
        try:
            if stock_id is None or quantity is None or quantity <= 0:
                raise ValidationError("glassware_id and a positive quantity are required")
            row = stock.get_glassware(db, stock_id)
            result.name = row.name
            if row.lab_id != settings.CENTRAL_STORE_ID:
                raise ValidationError(f"{row.name} is not held by the central store", details={"lab_id": row.lab_id})

            def attempt():
                db.refresh(row)
                if row.quantity < quantity:
                    raise InsufficientStockError(row.name, quantity, row.quantity)
                return stock.conditional_decrement_glassware(db, stock_id, quantity)

            try:
                with_retries(attempt, entity=f"glassware_stock:{stock_id}", db=db)
            except ConcurrencyConflictError:
                db.refresh(row)
                raise InsufficientStockError(row.name, quantity, row.quantity)

            lab_row, _ = stock.increment_glassware_or_create(
                db,
                row.name,
                row.variant,
                to_lab_id,
                quantity,
                {"unit": row.unit, "condition": row.condition, "batch_code": row.batch_code, "vendor": row.vendor},
            )
            ledger.record_ledger_entry(
                db,
                resource_kind=KIND_GLASSWARE,
                entry_type=ENTRY_ALLOCATION,
                resource_name=row.name,
                resource_ref=stock_id,
                from_location=settings.CENTRAL_STORE_ID,
                to_location=to_lab_id,
                amount=quantity,
                unit=row.unit,
                performed_by=actor,
                request_id=request_id,
            )
        except LabStockError as exc:
            result.reason = exc.message
            result.error_code = exc.code
            continue
        result.status = SUCCESS
        result.allocated_quantity = quantity
        result.destination_ref = lab_row.id
    return results
