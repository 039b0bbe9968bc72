"""Append-only ledger of stock movements."""

from __future__ import annotations

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from ..core.clock import utc_now_iso
from ..models.ledger import LedgerEntry


def record_ledger_entry(
    db: Session,
    *,
    resource_kind: str,
    entry_type: str,
    resource_name: str,
    resource_ref: object | None = None,
    from_location: str | None = None,
    to_location: str | None = None,
    amount: float | None = None,
    unit: str | None = None,
    performed_by: str | None = None,
    request_id: int | None = None,
    note: str | None = None,
) -> LedgerEntry:
    entry = LedgerEntry(
        resource_kind=resource_kind,
        entry_type=entry_type,
        resource_name=resource_name,
        resource_ref=str(resource_ref) if resource_ref is not None else None,
        from_location=from_location,
        to_location=to_location,
        amount=amount,
        unit=unit,
        performed_by=performed_by,
        request_id=request_id,
        note=(note or "").strip() or None,
        created_at=utc_now_iso(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def list_ledger_entries(
    db: Session,
    *,
    resource_kind: str | None = None,
    entry_type: str | None = None,
    resource_ref: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[LedgerEntry]:
    """Fetch a page of ledger entries, newest first."""

    stmt = select(LedgerEntry)
    if resource_kind:
        stmt = stmt.where(LedgerEntry.resource_kind == resource_kind)
    if entry_type:
        stmt = stmt.where(LedgerEntry.entry_type == entry_type)
    if resource_ref:
        stmt = stmt.where(LedgerEntry.resource_ref == resource_ref)
    stmt = stmt.order_by(desc(LedgerEntry.id)).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())
