"""Typed errors for the stock engine and the JSON envelope they render to.

Every domain error carries a machine-readable ``code`` and the HTTP status
the API layer should answer with. Service code raises these; routers never
translate messages by hand because ``labstock_error_handler`` does it.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException


class LabStockError(Exception):
    code: str = "labstock_error"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LabStockError):
    """Missing or malformed input, rejected before any mutation."""

    code = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST


class InvalidTransitionError(ValidationError):
    code = "invalid_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move request from {current} to {target}",
            details={"current_status": current, "target_status": target},
        )


class SuffixExhaustedError(ValidationError):
    code = "suffix_exhausted"

    def __init__(self, base_name: str) -> None:
        self.base_name = base_name
        super().__init__(
            f"All batch suffixes A-Z are in use for {base_name!r}",
            details={"base_name": base_name},
        )


class OverrideNotNeededError(ValidationError):
    code = "override_not_needed"


class NotFoundError(LabStockError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: object) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} {identifier!s} not found",
            details={"resource": resource, "id": str(identifier)},
        )


class PermissionDeniedError(LabStockError):
    code = "permission_denied"
    http_status = status.HTTP_403_FORBIDDEN


class InsufficientStockError(LabStockError):
    """Reported per requested item; never fails a whole call."""

    code = "insufficient_stock"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, name: str, requested: float, available: float) -> None:
        self.name = name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {name}: requested {requested:g}, available {available:g}",
            details={"name": name, "requested": requested, "available": available},
        )


class ConcurrencyConflictError(LabStockError):
    """A conditional update matched no row because the read was stale."""

    code = "concurrency_conflict"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"Conditional update on {entity} {entity_id!s} did not apply",
            details={"entity": entity, "id": str(entity_id)},
        )


class UnitStatusConflictError(ConcurrencyConflictError):
    code = "unit_status_conflict"

    def __init__(self, item_id: str, expected_status: str, actual_status: str | None) -> None:
        super().__init__("equipment_unit", item_id)
        self.item_id = item_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.message = (
            f"Unit {item_id} is {actual_status or 'unknown'}, expected {expected_status}"
        )
        self.args = (self.message,)
        self.details.update({"expected_status": expected_status, "actual_status": actual_status})


class DateRestrictionError(LabStockError):
    code = "date_restricted"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: str, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.reason = reason
        payload = {"reason": reason}
        payload.update(details or {})
        super().__init__(message, details=payload)


class ErrorEnvelope(JSONResponse):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"code": code, "message": message}
        if details is not None:
            payload["details"] = details
        super().__init__(payload, status_code=status_code, headers=headers)


async def labstock_error_handler(request: Request, exc: LabStockError):
    return ErrorEnvelope(
        status_code=exc.http_status,
        code=exc.code,
        message=exc.message,
        details=exc.details or None,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Error"
    details = detail if isinstance(detail, (dict, list)) else None
    return ErrorEnvelope(
        status_code=exc.status_code,
        code="http_error",
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return ErrorEnvelope(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="request_validation_error",
        message="Validation failed",
        details={"errors": jsonable_encoder(exc.errors())},
    )
