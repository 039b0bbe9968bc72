from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.errors import ValidationError
from ..models.lab import Lab


def list_labs(db: Session, *, active_only: bool = True) -> list[Lab]:
    stmt = select(Lab)
    if active_only:
        stmt = stmt.where(Lab.is_active.is_(True))
    stmt = stmt.order_by(Lab.lab_id)
    return list(db.execute(stmt).scalars().all())


def get_lab(db: Session, lab_id: str) -> Lab | None:
    stmt = select(Lab).where(Lab.lab_id == lab_id)
    return db.execute(stmt).scalars().first()


def create_lab(db: Session, lab_id: str, name: str, *, is_active: bool = True) -> Lab:
    lab_id = (lab_id or "").strip()
    if not lab_id:
        raise ValidationError("lab_id is required")
    if get_lab(db, lab_id) is not None:
        raise ValidationError(f"Lab {lab_id} already exists", details={"lab_id": lab_id})
    lab = Lab(lab_id=lab_id, name=(name or "").strip() or lab_id, is_active=is_active)
    db.add(lab)
    db.commit()
    db.refresh(lab)
    return lab
