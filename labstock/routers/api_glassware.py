from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..crud import stock
from ..db.session import get_db
from ..deps.auth import AuthContext, require_api_or_jwt, require_staff
from ..deps.labs import lab_directory
from ..schemas.chemical import GlasswareIntakeRequest, GlasswareOut
from ..services import intake
from ..services.lab_directory import LabDirectory

router = APIRouter(prefix="/api/v1/glassware", tags=["glassware"], dependencies=[Depends(require_api_or_jwt)])


@router.post("/intake", response_model=list[GlasswareOut], status_code=201)
def api_glassware_intake(
    payload: GlasswareIntakeRequest,
    auth: AuthContext = Depends(require_staff),
    directory: LabDirectory = Depends(lab_directory),
    db: Session = Depends(get_db),
):
    lab_id = directory.require(payload.lab_id) if payload.lab_id else None
    return intake.add_glassware(db, [item.model_dump() for item in payload.items], lab_id=lab_id, actor=auth.subject)


@router.get("", response_model=list[GlasswareOut])
def api_list_glassware(lab_id: Optional[str] = None, db: Session = Depends(get_db)):
    return stock.list_glassware(db, lab_id)
