from __future__ import annotations

from sqlalchemy import Column, Float, Integer, Text

from ..core.clock import utc_now_iso
from ..db.session import Base


class LedgerEntry(Base):
    """Append-only record of one stock movement.

    Rows are written once and never updated or deleted; compensation for a
    failed allocation is recorded as a new ``rollback`` entry.
    """

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    resource_kind = Column(Text, nullable=False, index=True)
    entry_type = Column(Text, nullable=False, index=True)
    resource_ref = Column(Text, nullable=True, index=True)
    resource_name = Column(Text, nullable=False)
    from_location = Column(Text, nullable=True)
    to_location = Column(Text, nullable=True)
    amount = Column(Float, nullable=True)
    unit = Column(Text, nullable=True)
    performed_by = Column(Text, nullable=True)
    request_id = Column(Integer, nullable=True, index=True)
    note = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)
