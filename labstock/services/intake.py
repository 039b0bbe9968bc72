"""Receiving new stock into the central store."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.batch_names import clean_name
from ..core.clock import as_date
from ..core.errors import LabStockError, ValidationError
from ..core.stock_types import (
    ENTRY_INTAKE,
    ENTRY_REGISTER,
    KIND_CHEMICAL,
    KIND_EQUIPMENT,
    KIND_GLASSWARE,
    UNIT_AVAILABLE,
)
from ..crud import ledger, stock
from ..models.chemical import ChemicalBatch
from ..models.equipment import EquipmentUnit
from ..models.glassware import GlasswareStock
from ..settings import settings
from . import naming, out_of_stock

logger = logging.getLogger("labstock.intake")


@dataclass
class IntakeError:
    index: int
    name: str | None
    code: str
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"index": self.index, "name": self.name, "code": self.code, "message": self.message}


@dataclass
class ChemicalIntakeResult:
    batch_code: str
    resolutions: list[naming.IntakeResolution] = field(default_factory=list)
    errors: list[IntakeError] = field(default_factory=list)


def generate_batch_code(on: date | None = None) -> str:
    on = on or datetime.utcnow().date()
    return f"BATCH-{on:%Y%m%d}-{random.randint(0, 999):03d}"


def last_batch_code(db: Session) -> str | None:
    stmt = (
        select(ChemicalBatch.batch_code)
        .where(ChemicalBatch.batch_code.is_not(None))
        .order_by(desc(ChemicalBatch.id))
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def _parse_expiry(value: Any) -> date | None:
    try:
        return as_date(value)
    except (TypeError, ValueError):
        logger.warning("intake.invalid_expiry", extra={"extra_data": {"value": str(value)}})
        return None


def add_chemical_intake(
    db: Session,
    batches: Iterable[Mapping[str, Any]],
    *,
    batch_code: str | None = None,
    use_previous_batch_code: bool = False,
    actor: str | None = None,
) -> ChemicalIntakeResult:
    """Receive chemicals into the central store.

    Each entry is resolved independently; a rejected entry is reported and
    the rest are still received. An unparseable expiry is treated as none.
    """

    entries = list(batches)
    if not entries:
        raise ValidationError("No chemicals provided")
    if not batch_code and use_previous_batch_code:
        batch_code = last_batch_code(db)
    batch_code = batch_code or generate_batch_code()
    result = ChemicalIntakeResult(batch_code=batch_code)

    for index, entry in enumerate(entries):
        name = clean_name(entry.get("name") or entry.get("chemical_name"))
        try:
            if not name or not entry.get("quantity") or not entry.get("unit"):
                raise ValidationError("name, quantity and unit are required")
            resolution = naming.resolve_on_intake(
                db,
                name=name,
                unit=entry["unit"],
                quantity=float(entry["quantity"]),
                vendor=entry.get("vendor"),
                expiry=_parse_expiry(entry.get("expiry_date")),
                batch_code=batch_code,
                price_per_unit=entry.get("price_per_unit"),
                department=entry.get("department"),
            )
        except LabStockError as exc:
            result.errors.append(IntakeError(index=index, name=name or None, code=exc.code, message=exc.message))
            logger.warning(
                "intake.rejected",
                extra={"extra_data": {"name": name, "code": exc.code, "error": exc.message}},
            )
            continue

        ledger.record_ledger_entry(
            db,
            resource_kind=KIND_CHEMICAL,
            entry_type=ENTRY_INTAKE,
            resource_name=resolution.batch.name,
            resource_ref=resolution.batch.id,
            from_location=settings.CENTRAL_STORE_ID,
            to_location=settings.CENTRAL_STORE_ID,
            amount=float(entry["quantity"]),
            unit=entry["unit"],
            performed_by=actor,
            note=f"{resolution.action} ({batch_code})",
        )
        out_of_stock.on_restock(db, resolution.batch.display_name)
        result.resolutions.append(resolution)

    logger.info(
        "intake.chemicals",
        extra={
            "extra_data": {
                "batch_code": batch_code,
                "received": len(result.resolutions),
                "rejected": len(result.errors),
            }
        },
    )
    return result


def register_equipment_units(
    db: Session,
    units: Iterable[Mapping[str, Any]],
    *,
    lab_id: str | None = None,
    actor: str | None = None,
) -> tuple[list[EquipmentUnit], list[IntakeError]]:
    """Create Available units at ``lab_id`` (the central store by default)."""

    lab_id = lab_id or settings.CENTRAL_STORE_ID
    created: list[EquipmentUnit] = []
    errors: list[IntakeError] = []
    for index, payload in enumerate(units):
        item_id = (payload.get("item_id") or "").strip()
        product_name = clean_name(payload.get("product_name") or payload.get("name"))
        if not item_id or not product_name:
            errors.append(IntakeError(index, product_name or None, ValidationError.code, "item_id and product_name are required"))
            continue
        unit = EquipmentUnit(
            item_id=item_id,
            product_name=product_name,
            variant=payload.get("variant"),
            status=UNIT_AVAILABLE,
            lab_id=lab_id,
            location=lab_id,
            batch_code=payload.get("batch_code"),
            vendor=payload.get("vendor"),
            unit=payload.get("unit"),
            price_per_unit=payload.get("price_per_unit"),
        )
        db.add(unit)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            errors.append(IntakeError(index, product_name, ValidationError.code, f"Unit {item_id} already exists"))
            continue
        db.refresh(unit)
        ledger.record_ledger_entry(
            db,
            resource_kind=KIND_EQUIPMENT,
            entry_type=ENTRY_REGISTER,
            resource_name=product_name,
            resource_ref=item_id,
            to_location=lab_id,
            performed_by=actor,
        )
        created.append(unit)
    return created, errors


def add_glassware(
    db: Session,
    items: Iterable[Mapping[str, Any]],
    *,
    lab_id: str | None = None,
    actor: str | None = None,
) -> list[GlasswareStock]:
    lab_id = lab_id or settings.CENTRAL_STORE_ID
    rows: list[GlasswareStock] = []
    for payload in items:
        name = clean_name(payload.get("name"))
        quantity = payload.get("quantity")
        if not name or not quantity or quantity <= 0:
            raise ValidationError("name and a positive quantity are required", details={"name": name})
        row, _ = stock.increment_glassware_or_create(
            db,
            name,
            payload.get("variant"),
            lab_id,
            quantity,
            {
                "unit": payload.get("unit"),
                "condition": payload.get("condition"),
                "vendor": payload.get("vendor"),
                "batch_code": payload.get("batch_code"),
            },
        )
        ledger.record_ledger_entry(
            db,
            resource_kind=KIND_GLASSWARE,
            entry_type=ENTRY_INTAKE,
            resource_name=name,
            resource_ref=row.id,
            to_location=lab_id,
            amount=quantity,
            unit=payload.get("unit"),
            performed_by=actor,
        )
        rows.append(row)
    return rows
