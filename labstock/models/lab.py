from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, Text

from ..core.clock import utc_now_iso
from ..db.session import Base


class Lab(Base):
    """A lab that can hold stock. The central store needs no row."""

    __tablename__ = "labs"

    id = Column(Integer, primary_key=True, index=True)
    lab_id = Column(Text, nullable=False, unique=True, index=True)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Text, nullable=False, default=utc_now_iso)
