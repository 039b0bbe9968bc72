from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..core.errors import PermissionDeniedError
from ..crud import requests as request_crud
from ..db.session import get_db
from ..deps.auth import AuthContext, require_admin, require_api_or_jwt, require_staff
from ..deps.labs import lab_directory
from ..schemas.request import (
    AllocateIn,
    DecisionIn,
    DisabledUpdatesIn,
    EditOutcomeOut,
    ExperimentOut,
    ItemEditsIn,
    OverrideIn,
    RequestCreate,
    RequestOut,
)
from ..services import fulfillment
from ..services.lab_directory import LabDirectory

router = APIRouter(prefix="/api/v1/requests", tags=["requests"], dependencies=[Depends(require_api_or_jwt)])


def _allocation_response(result: fulfillment.UnifiedAllocationResult):
    body = jsonable_encoder(result.as_dict())
    return JSONResponse(status_code=207 if result.has_errors else 200, content=body)


@router.post("", response_model=RequestOut, status_code=201)
def api_submit_request(
    payload: RequestCreate,
    auth: AuthContext = Depends(require_api_or_jwt),
    directory: LabDirectory = Depends(lab_directory),
    db: Session = Depends(get_db),
):
    faculty_id = payload.faculty_id or auth.subject
    if faculty_id != auth.subject and not auth.is_staff:
        raise PermissionDeniedError("Faculty can only submit their own requests")
    return fulfillment.submit_request(
        db,
        faculty_id=faculty_id,
        lab_id=payload.lab_id,
        experiments=[experiment.model_dump() for experiment in payload.experiments],
        actor=auth.subject,
        lab_directory=directory,
    )


@router.get("", response_model=list[RequestOut])
def api_list_requests(
    status: Optional[str] = None,
    lab_id: Optional[str] = None,
    faculty_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return request_crud.list_requests(
        db, status=status, lab_id=lab_id, faculty_id=faculty_id, limit=limit, offset=offset
    )


@router.get("/{request_id}", response_model=RequestOut)
def api_get_request(request_id: int, db: Session = Depends(get_db)):
    return request_crud.get_request(db, request_id)


@router.post("/{request_id}/approve", response_model=RequestOut)
def api_approve(
    request_id: int,
    payload: Optional[DecisionIn] = None,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return fulfillment.approve_request(db, request_id, auth.subject, payload.reason if payload else None)


@router.post("/{request_id}/reject", response_model=RequestOut)
def api_reject(
    request_id: int,
    payload: Optional[DecisionIn] = None,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return fulfillment.reject_request(db, request_id, auth.subject, payload.reason if payload else None)


@router.post("/{request_id}/allocate")
def api_allocate(
    request_id: int,
    payload: Optional[AllocateIn] = None,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    result = fulfillment.allocate_unified(
        db,
        request_id,
        actor=auth.subject,
        is_admin=auth.is_admin,
        equipment_unit_ids=payload.equipment_unit_ids if payload else None,
    )
    return _allocation_response(result)


@router.post("/{request_id}/fulfill-remaining")
def api_fulfill_remaining(
    request_id: int,
    payload: Optional[AllocateIn] = None,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    result = fulfillment.fulfill_remaining(
        db,
        request_id,
        actor=auth.subject,
        is_admin=auth.is_admin,
        equipment_unit_ids=payload.equipment_unit_ids if payload else None,
    )
    return _allocation_response(result)


@router.post("/{request_id}/complete", response_model=RequestOut)
def api_complete(request_id: int, auth: AuthContext = Depends(require_staff), db: Session = Depends(get_db)):
    return fulfillment.complete_request(db, request_id, auth.subject)


@router.get("/{request_id}/allocation-status")
def api_allocation_status(
    request_id: int,
    auth: AuthContext = Depends(require_api_or_jwt),
    db: Session = Depends(get_db),
):
    return fulfillment.allocation_overview(db, request_id, is_admin=auth.is_admin)


@router.post("/{request_id}/experiments/{experiment_id}/override", response_model=ExperimentOut)
def api_set_override(
    request_id: int,
    experiment_id: int,
    payload: OverrideIn,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return fulfillment.set_admin_override(
        db,
        request_id,
        experiment_id,
        actor=auth.subject,
        is_admin=auth.is_admin,
        enable=payload.enable,
        reason=payload.reason,
    )


@router.put("/{request_id}/items/disabled", response_model=EditOutcomeOut)
def api_set_disabled(
    request_id: int,
    payload: DisabledUpdatesIn,
    auth: AuthContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    outcome = fulfillment.set_item_disabled(
        db,
        request_id,
        [update.model_dump() for update in payload.updates],
        actor=auth.subject,
        is_admin=auth.is_admin,
    )
    return {"processed": outcome.processed, "errors": outcome.errors}


@router.put("/{request_id}/items/edit", response_model=EditOutcomeOut)
def api_edit_items(
    request_id: int,
    payload: ItemEditsIn,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    outcome = fulfillment.admin_edit_items(
        db,
        request_id,
        [edit.model_dump() for edit in payload.edits],
        actor=auth.subject,
        is_admin=auth.is_admin,
    )
    return {"processed": outcome.processed, "errors": outcome.errors}


@router.get("/{request_id}/edit-permissions")
def api_edit_permissions(
    request_id: int,
    auth: AuthContext = Depends(require_api_or_jwt),
    db: Session = Depends(get_db),
):
    return {
        "request_id": request_id,
        "experiments": fulfillment.edit_permissions_overview(db, request_id, is_admin=auth.is_admin),
    }
