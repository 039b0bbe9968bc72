"""Admin handling of central batches past their expiry date."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.clock import as_date, today as _today
from ..core.errors import ValidationError
from ..core.stock_types import ENTRY_EXPIRED_DELETE, ENTRY_EXPIRED_MERGE, ENTRY_EXPIRY_UPDATE, KIND_CHEMICAL
from ..crud import ledger, stock
from ..models.chemical import ChemicalLive
from ..settings import settings
from . import naming

logger = logging.getLogger("labstock.expired")

ACTION_MERGE = "merge"
ACTION_DELETE = "delete"
ACTION_UPDATE_EXPIRY = "update_expiry"
EXPIRED_ACTIONS = (ACTION_MERGE, ACTION_DELETE, ACTION_UPDATE_EXPIRY)


def list_expired(db: Session, *, today: date | None = None, lab_id: str | None = None) -> list[ChemicalLive]:
    current = today or _today()
    stmt = (
        select(ChemicalLive)
        .where(
            ChemicalLive.lab_id == (lab_id or settings.CENTRAL_STORE_ID),
            ChemicalLive.expiry_date.is_not(None),
            ChemicalLive.expiry_date < current,
        )
        .order_by(ChemicalLive.expiry_date, ChemicalLive.id)
    )
    return list(db.execute(stmt).scalars().all())


def process_expired_action(
    db: Session,
    live_id: int,
    action: str,
    *,
    actor: str | None = None,
    merge_to_id: int | None = None,
    new_expiry_date: date | str | None = None,
    reason: str | None = None,
) -> str:
    """Merge, delete or re-date one live batch and log the outcome.

    Returns a short human-readable summary of what was done.
    """

    if action not in EXPIRED_ACTIONS:
        raise ValidationError(f"Invalid action {action!r}", details={"allowed": list(EXPIRED_ACTIONS)})
    row = stock.get_live(db, live_id)
    display_name = row.display_name
    lab_id = row.lab_id
    quantity = row.quantity
    entry = {
        "resource_kind": KIND_CHEMICAL,
        "resource_name": row.name,
        "resource_ref": row.batch_id,
        "from_location": lab_id,
        "unit": row.unit,
        "performed_by": actor,
    }

    if action == ACTION_MERGE:
        if merge_to_id is None or merge_to_id == live_id:
            raise ValidationError("A different merge target is required")
        target = stock.get_live(db, merge_to_id)
        if target.unit != row.unit:
            raise ValidationError(
                "Merge target uses a different unit",
                details={"unit": row.unit, "target_unit": target.unit},
            )
        if quantity > 0:
            stock.increment(db, target.id, quantity)
        ledger.record_ledger_entry(
            db,
            entry_type=ENTRY_EXPIRED_MERGE,
            to_location=target.lab_id,
            amount=quantity,
            note=reason or f"Merged into {target.name}",
            **entry,
        )
        stock.delete_live(db, row)
        summary = "Merged and deleted expired chemical"
    elif action == ACTION_DELETE:
        ledger.record_ledger_entry(
            db,
            entry_type=ENTRY_EXPIRED_DELETE,
            amount=quantity,
            note=reason or "Deleted expired chemical",
            **entry,
        )
        stock.delete_live(db, row)
        summary = "Deleted expired chemical"
    else:
        new_date = as_date(new_expiry_date)
        if new_date is None:
            raise ValidationError("new_expiry_date is required")
        old_date = row.expiry_date
        row.expiry_date = new_date
        if row.batch is not None and lab_id == settings.CENTRAL_STORE_ID:
            row.batch.expiry_date = new_date
        db.commit()
        ledger.record_ledger_entry(
            db,
            entry_type=ENTRY_EXPIRY_UPDATE,
            note=reason or f"Expiry changed from {old_date} to {new_date}",
            **entry,
        )
        summary = "Expiry date updated"

    if lab_id == settings.CENTRAL_STORE_ID:
        naming.reindex(db, display_name)
    logger.info(
        "expired.action",
        extra={"extra_data": {"live_id": live_id, "action": action, "display_name": display_name}},
    )
    return summary
