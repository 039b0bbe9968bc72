from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..core.stock_types import KIND_CHEMICAL
from ..crud import ledger, stock
from ..db.session import get_db
from ..deps.auth import AuthContext, require_admin, require_api_or_jwt, require_staff
from ..deps.labs import lab_directory
from ..schemas.chemical import (
    ChemicalAllocationRequest,
    ChemicalAllocationResponse,
    ChemicalIntakeRequest,
    ChemicalIntakeResponse,
    ChemicalLiveOut,
    ExpiredAction,
    IntakeErrorOut,
    IntakeResolutionOut,
    LedgerEntryOut,
    OutOfStockOut,
)
from ..services import allocation, expired, intake, out_of_stock
from ..services.lab_directory import LabDirectory
from ..settings import settings

router = APIRouter(prefix="/api/v1/chemicals", tags=["chemicals"], dependencies=[Depends(require_api_or_jwt)])


@router.post("/intake", response_model=ChemicalIntakeResponse, status_code=201)
def api_chemical_intake(
    payload: ChemicalIntakeRequest,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    result = intake.add_chemical_intake(
        db,
        [item.model_dump() for item in payload.chemicals],
        batch_code=payload.batch_code,
        use_previous_batch_code=payload.use_previous_batch_code,
        actor=auth.subject,
    )
    return ChemicalIntakeResponse(
        batch_code=result.batch_code,
        batches=[
            IntakeResolutionOut(
                batch_id=resolution.batch.id,
                name=resolution.batch.name,
                display_name=resolution.batch.display_name,
                action=resolution.action,
                quantity=resolution.batch.quantity,
                expiry_date=resolution.batch.expiry_date,
                renamed=resolution.renamed,
            )
            for resolution in result.resolutions
        ],
        errors=[IntakeErrorOut(**error.as_dict()) for error in result.errors],
    )


@router.post("/allocate", response_model=ChemicalAllocationResponse)
def api_allocate_chemicals(
    payload: ChemicalAllocationRequest,
    auth: AuthContext = Depends(require_staff),
    directory: LabDirectory = Depends(lab_directory),
    db: Session = Depends(get_db),
):
    lab_id = directory.require(payload.lab_id)
    results = allocation.allocate_chemicals(
        db,
        lab_id,
        [item.model_dump() for item in payload.allocations],
        actor=auth.subject,
    )
    success = allocation.all_succeeded(results)
    body = {"success": success, "results": [result.as_dict() for result in results]}
    if not success:
        return JSONResponse(status_code=400, content=jsonable_encoder(body))
    return body


@router.get("/central", response_model=list[ChemicalLiveOut])
def api_central_stock(include_empty: bool = False, db: Session = Depends(get_db)):
    return stock.list_live(db, settings.CENTRAL_STORE_ID, include_empty=include_empty)


@router.get("/labs/{lab_id}", response_model=list[ChemicalLiveOut])
def api_lab_stock(
    lab_id: str,
    directory: LabDirectory = Depends(lab_directory),
    db: Session = Depends(get_db),
):
    return stock.list_live(db, directory.require(lab_id))


@router.get("/out-of-stock", response_model=list[OutOfStockOut])
def api_out_of_stock(db: Session = Depends(get_db)):
    return out_of_stock.list_out_of_stock(db)


@router.get("/expired", response_model=list[ChemicalLiveOut])
def api_expired(on: Optional[date] = None, db: Session = Depends(get_db)):
    return expired.list_expired(db, today=on)


@router.post("/expired/{live_id}/action")
def api_expired_action(
    live_id: int,
    payload: ExpiredAction,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    message = expired.process_expired_action(
        db,
        live_id,
        payload.action,
        actor=auth.subject,
        merge_to_id=payload.merge_to_id,
        new_expiry_date=payload.new_expiry_date,
        reason=payload.reason,
    )
    return {"status": "ok", "message": message}


@router.get("/ledger", response_model=list[LedgerEntryOut])
def api_ledger(
    resource_kind: Optional[str] = KIND_CHEMICAL,
    entry_type: Optional[str] = None,
    resource_ref: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return ledger.list_ledger_entries(
        db,
        resource_kind=resource_kind or None,
        entry_type=entry_type,
        resource_ref=resource_ref,
        limit=limit,
        offset=offset,
    )
