from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.batch_names import base_name
from ..core.clock import utc_now_iso
from ..crud import stock
from ..models.chemical import ChemicalLive, OutOfStockChemical
from ..settings import settings
from . import naming

logger = logging.getLogger("labstock.out_of_stock")


def list_out_of_stock(db: Session) -> list[OutOfStockChemical]:
    stmt = select(OutOfStockChemical).order_by(OutOfStockChemical.display_name)
    return list(db.execute(stmt).scalars().all())


def get_entry(db: Session, display_name: str) -> OutOfStockChemical | None:
    stmt = select(OutOfStockChemical).where(OutOfStockChemical.display_name == display_name)
    return db.execute(stmt).scalars().first()


def mark_out_of_stock(db: Session, display_name: str, unit: str | None) -> OutOfStockChemical:
    """Upsert the out-of-stock entry for ``display_name``; repeated calls keep one row."""

    entry = get_entry(db, display_name)
    if entry is None:
        entry = OutOfStockChemical(display_name=display_name, unit=unit, last_out_of_stock=utc_now_iso())
        db.add(entry)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            entry = get_entry(db, display_name)
    else:
        entry.unit = unit or entry.unit
        entry.last_out_of_stock = utc_now_iso()
        db.commit()
    db.refresh(entry)
    return entry


def on_batch_exhausted(db: Session, live_row: ChemicalLive) -> bool:
    """React to a central row that reached zero.

    With in-stock siblings left the row is deleted and the siblings are
    reindexed; otherwise the display name is recorded as out of stock before
    the row is deleted. Returns ``True`` when the row was handled.
    """

    db.refresh(live_row)
    if live_row.lab_id != settings.CENTRAL_STORE_ID or not stock.is_exhausted(live_row.quantity):
        return False

    display_name = live_row.display_name
    unit = live_row.unit
    siblings = [
        row for row in stock.find_central_batches(db, display_name) if row.id != live_row.id
    ]
    if not siblings:
        mark_out_of_stock(db, display_name, unit)
    stock.delete_live(db, live_row)
    if siblings:
        naming.reindex(db, display_name)
        logger.info(
            "stock.batch_exhausted",
            extra={"extra_data": {"display_name": display_name, "remaining_batches": len(siblings)}},
        )
    else:
        logger.warning("stock.out_of_stock", extra={"extra_data": {"display_name": display_name}})
    return True


def on_restock(db: Session, display_name: str) -> bool:
    """Drop the out-of-stock entry for ``display_name``. Repeated calls are no-ops."""

    name = base_name(display_name)
    entry = get_entry(db, name)
    if entry is None:
        return False
    db.delete(entry)
    db.commit()
    logger.info("stock.restocked", extra={"extra_data": {"display_name": name}})
    return True
