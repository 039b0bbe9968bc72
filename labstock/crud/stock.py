"""Quantity and unit-status mutations for live stock rows.

Every function that changes a quantity or a unit status goes through a
single ``UPDATE ... WHERE <guard>`` statement and inspects ``rowcount`` so
that two concurrent callers can never both succeed against the same stock.
Callers pair each mutation with a ledger entry.
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.batch_names import clean_name, name_key
from ..core.clock import utc_now_iso
from ..core.errors import ConcurrencyConflictError, NotFoundError, UnitStatusConflictError, ValidationError
from ..models.chemical import ChemicalLive
from ..models.equipment import EquipmentUnit
from ..models.glassware import GlasswareStock
from ..settings import settings

QUANTITY_EPSILON = 1e-9


def is_exhausted(quantity: float | None) -> bool:
    return (quantity or 0) <= QUANTITY_EPSILON


def _clamped(column, amount: float):
    # float residue inside the epsilon guard must not go negative
    return case((column - amount < 0, 0), else_=column - amount)


def _by_expiry(stmt):
    return stmt.order_by(
        ChemicalLive.expiry_date.is_(None),
        ChemicalLive.expiry_date.asc(),
        ChemicalLive.id.asc(),
    )


def find_central_batches(db: Session, display_name: str, lab_id: str | None = None) -> list[ChemicalLive]:
    """Return in-stock live rows for ``display_name`` in FIFO-by-expiry order.

    Lookup tries the exact display name, then the canonical ``name_key`` and
    finally a case-insensitive match on the display name. Rows without an
    expiry date come after every dated row.
    """

    lab_id = lab_id or settings.CENTRAL_STORE_ID
    cleaned = clean_name(display_name)
    base = select(ChemicalLive).where(ChemicalLive.lab_id == lab_id, ChemicalLive.quantity > QUANTITY_EPSILON)

    rows = db.execute(_by_expiry(base.where(ChemicalLive.display_name == cleaned))).scalars().all()
    if rows:
        return list(rows)
    rows = db.execute(_by_expiry(base.where(ChemicalLive.name_key == name_key(cleaned)))).scalars().all()
    if rows:
        return list(rows)
    stmt = base.where(func.lower(ChemicalLive.display_name) == cleaned.lower())
    return list(db.execute(_by_expiry(stmt)).scalars().all())


def list_live(db: Session, lab_id: str, *, include_empty: bool = False) -> list[ChemicalLive]:
    stmt = select(ChemicalLive).where(ChemicalLive.lab_id == lab_id)
    if not include_empty:
        stmt = stmt.where(ChemicalLive.quantity > QUANTITY_EPSILON)
    stmt = stmt.order_by(ChemicalLive.display_name, ChemicalLive.expiry_date.is_(None), ChemicalLive.expiry_date, ChemicalLive.id)
    return list(db.execute(stmt).scalars().all())


def get_live(db: Session, live_id: int) -> ChemicalLive:
    row = db.get(ChemicalLive, live_id)
    if row is None:
        raise NotFoundError("chemical_live", live_id)
    return row


def reload_live(db: Session, live_id: int) -> ChemicalLive | None:
    """Re-read a live row, bypassing the identity map; ``None`` once it was deleted."""

    stmt = select(ChemicalLive).where(ChemicalLive.id == live_id).execution_options(populate_existing=True)
    return db.execute(stmt).scalars().first()


def find_live_for_batch(db: Session, batch_id: int, lab_id: str) -> ChemicalLive | None:
    stmt = select(ChemicalLive).where(ChemicalLive.batch_id == batch_id, ChemicalLive.lab_id == lab_id)
    return db.execute(stmt).scalars().first()


def conditional_decrement(db: Session, live_id: int, amount: float) -> ChemicalLive:
    """Subtract ``amount`` only while the row still holds at least that much.

    Raises ``ConcurrencyConflictError`` when the guard matches no row, which
    means another caller consumed the stock since it was read.
    """

    if amount <= 0:
        raise ValidationError("Decrement amount must be positive", details={"amount": amount})
    stmt = (
        update(ChemicalLive)
        .where(ChemicalLive.id == live_id, ChemicalLive.quantity >= amount - QUANTITY_EPSILON)
        .values(quantity=_clamped(ChemicalLive.quantity, amount))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.rollback()
        raise ConcurrencyConflictError("chemical_live", live_id)
    db.commit()
    row = db.get(ChemicalLive, live_id)
    db.refresh(row)
    return row


def increment(db: Session, live_id: int, amount: float) -> ChemicalLive:
    stmt = (
        update(ChemicalLive)
        .where(ChemicalLive.id == live_id)
        .values(quantity=ChemicalLive.quantity + amount)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError("chemical_live", live_id)
    db.commit()
    row = db.get(ChemicalLive, live_id)
    db.refresh(row)
    return row


def increment_or_create(
    db: Session,
    batch_id: int,
    lab_id: str,
    amount: float,
    defaults: Mapping[str, Any],
) -> tuple[ChemicalLive, bool]:
    """Add ``amount`` to the (batch, lab) row, creating it when absent.

    New lab-side rows start allocated with ``original_quantity`` equal to the
    amount; central rows start unallocated. Returns ``(row, created)``.
    """

    existing = find_live_for_batch(db, batch_id, lab_id)
    if existing is None:
        row = ChemicalLive(
            batch_id=batch_id,
            lab_id=lab_id,
            quantity=amount,
            original_quantity=amount,
            is_allocated=lab_id != settings.CENTRAL_STORE_ID,
            **dict(defaults),
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # another caller created the row first
            db.rollback()
        else:
            db.refresh(row)
            return row, True
        existing = find_live_for_batch(db, batch_id, lab_id)
        if existing is None:
            raise ConcurrencyConflictError("chemical_live", f"{batch_id}@{lab_id}")

    stmt = (
        update(ChemicalLive)
        .where(ChemicalLive.id == existing.id)
        .values(
            quantity=ChemicalLive.quantity + amount,
            original_quantity=ChemicalLive.original_quantity + amount,
        )
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()
    db.refresh(existing)
    return existing, False


def revert_credit(db: Session, live_id: int, amount: float) -> ChemicalLive:
    """Undo an ``increment_or_create`` credit, including its original quantity."""

    stmt = (
        update(ChemicalLive)
        .where(ChemicalLive.id == live_id, ChemicalLive.quantity >= amount - QUANTITY_EPSILON)
        .values(
            quantity=_clamped(ChemicalLive.quantity, amount),
            original_quantity=_clamped(ChemicalLive.original_quantity, amount),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.rollback()
        raise ConcurrencyConflictError("chemical_live", live_id)
    db.commit()
    row = db.get(ChemicalLive, live_id)
    db.refresh(row)
    return row


def rename_live(db: Session, row: ChemicalLive, name: str) -> None:
    row.name = name
    if row.batch is not None and row.lab_id == settings.CENTRAL_STORE_ID:
        row.batch.name = name
    db.commit()


def delete_live(db: Session, row: ChemicalLive) -> None:
    db.delete(row)
    db.commit()


# ----- equipment units


def find_unit(db: Session, item_id: str) -> EquipmentUnit | None:
    stmt = select(EquipmentUnit).where(EquipmentUnit.item_id == item_id)
    return db.execute(stmt).scalars().first()


def transition_unit(
    db: Session,
    item_id: str,
    expected_status: str,
    new_status: str,
    *,
    new_location: str | None = None,
    new_lab_id: str | None = None,
    assigned_to: str | None = None,
    expected_lab_id: str | None = None,
) -> EquipmentUnit:
    """Move a unit to ``new_status`` only if it is currently ``expected_status``.

    ``expected_lab_id`` further restricts the guard to units held by that lab.
    """

    values: dict[str, Any] = {"status": new_status, "updated_at": utc_now_iso(), "assigned_to": assigned_to}
    if new_location is not None:
        values["location"] = new_location
    if new_lab_id is not None:
        values["lab_id"] = new_lab_id

    guard = [EquipmentUnit.item_id == item_id, EquipmentUnit.status == expected_status]
    if expected_lab_id is not None:
        guard.append(EquipmentUnit.lab_id == expected_lab_id)
    stmt = update(EquipmentUnit).where(*guard).values(**values).execution_options(synchronize_session=False)
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.rollback()
        current = find_unit(db, item_id)
        if current is None:
            raise NotFoundError("equipment_unit", item_id)
        actual = current.status
        if expected_lab_id is not None and current.lab_id != expected_lab_id and current.status == expected_status:
            actual = f"{current.status}@{current.lab_id}"
        raise UnitStatusConflictError(item_id, expected_status, actual)
    db.commit()
    unit = find_unit(db, item_id)
    db.refresh(unit)
    return unit


# ----- glassware


def get_glassware(db: Session, stock_id: int) -> GlasswareStock:
    row = db.get(GlasswareStock, stock_id)
    if row is None:
        raise NotFoundError("glassware_stock", stock_id)
    return row


def conditional_decrement_glassware(db: Session, stock_id: int, amount: float) -> GlasswareStock:
    if amount <= 0:
        raise ValidationError("Decrement amount must be positive", details={"amount": amount})
    stmt = (
        update(GlasswareStock)
        .where(GlasswareStock.id == stock_id, GlasswareStock.quantity >= amount - QUANTITY_EPSILON)
        .values(quantity=_clamped(GlasswareStock.quantity, amount))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.rollback()
        raise ConcurrencyConflictError("glassware_stock", stock_id)
    db.commit()
    row = db.get(GlasswareStock, stock_id)
    db.refresh(row)
    return row


def increment_glassware_or_create(
    db: Session,
    name: str,
    variant: str | None,
    lab_id: str,
    amount: float,
    defaults: Mapping[str, Any] | None = None,
) -> tuple[GlasswareStock, bool]:
    variant = variant or ""
    stmt = select(GlasswareStock).where(
        GlasswareStock.name == name,
        GlasswareStock.variant == variant,
        GlasswareStock.lab_id == lab_id,
    )
    existing = db.execute(stmt).scalars().first()
    if existing is None:
        row = GlasswareStock(name=name, variant=variant, lab_id=lab_id, quantity=amount, **dict(defaults or {}))
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
        else:
            db.refresh(row)
            return row, True
        existing = db.execute(stmt).scalars().first()
        if existing is None:
            raise ConcurrencyConflictError("glassware_stock", f"{name}@{lab_id}")

    db.execute(
        update(GlasswareStock)
        .where(GlasswareStock.id == existing.id)
        .values(quantity=GlasswareStock.quantity + amount)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(existing)
    return existing, False


def list_glassware(db: Session, lab_id: str | None = None) -> list[GlasswareStock]:
    stmt = select(GlasswareStock)
    if lab_id:
        stmt = stmt.where(GlasswareStock.lab_id == lab_id)
    stmt = stmt.order_by(GlasswareStock.name, GlasswareStock.variant)
    return list(db.execute(stmt).scalars().all())
