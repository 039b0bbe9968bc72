from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..db.session import get_db
from ..deps.auth import AuthContext, require_api_or_jwt, require_staff
from ..deps.labs import lab_directory
from ..schemas.equipment import (
    EquipmentAllocationRequest,
    EquipmentAllocationResponse,
    EquipmentRegisterRequest,
    EquipmentRegisterResponse,
    EquipmentReturnRequest,
    EquipmentReturnResponse,
)
from ..services import allocation, intake
from ..services.lab_directory import LabDirectory
from ..settings import settings

router = APIRouter(prefix="/api/v1/equipment", tags=["equipment"], dependencies=[Depends(require_api_or_jwt)])


@router.post("/register", response_model=EquipmentRegisterResponse, status_code=201)
def api_register_units(
    payload: EquipmentRegisterRequest,
    auth: AuthContext = Depends(require_staff),
    directory: LabDirectory = Depends(lab_directory),
    db: Session = Depends(get_db),
):
    lab_id = directory.require(payload.lab_id) if payload.lab_id else None
    created, errors = intake.register_equipment_units(
        db, [unit.model_dump() for unit in payload.units], lab_id=lab_id, actor=auth.subject
    )
    return {"created": created, "errors": [error.as_dict() for error in errors]}


@router.post("/allocate", response_model=EquipmentAllocationResponse)
def api_allocate_units(
    payload: EquipmentAllocationRequest,
    auth: AuthContext = Depends(require_staff),
    directory: LabDirectory = Depends(lab_directory),
    db: Session = Depends(get_db),
):
    from_lab_id = directory.require(payload.from_lab_id or settings.CENTRAL_STORE_ID)
    to_lab_id = directory.require(payload.to_lab_id) if payload.to_lab_id else None
    results = allocation.allocate_equipment_units(
        db,
        from_lab_id,
        [group.model_dump() for group in payload.allocations],
        actor=auth.subject,
        to_lab_id=to_lab_id,
        assigned_to=payload.assigned_to,
        new_status=payload.target_status,
    )
    success = allocation.all_succeeded(results)
    body = {"success": success, "results": [group.as_dict() for group in results]}
    if not success:
        return JSONResponse(status_code=400, content=jsonable_encoder(body))
    return body


@router.post("/return", response_model=EquipmentReturnResponse)
def api_return_units(
    payload: EquipmentReturnRequest,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    results = allocation.return_equipment_units(db, payload.item_ids, actor=auth.subject)
    return {
        "success": allocation.all_succeeded(results),
        "results": [{"item_id": r.item_id, "status": r.status, "message": r.message} for r in results],
    }
