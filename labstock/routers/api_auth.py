from __future__ import annotations

import hmac

from fastapi import APIRouter, Header, HTTPException, status

from ..core.security import issue_access_token
from ..core.stock_types import ROLES
from ..schemas.auth import TokenRequest, TokenResponse
from ..settings import settings

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/token", response_model=TokenResponse, summary="Exchange API key for an access token")
async def exchange_token(
    payload: TokenRequest,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
):
    configured_key = (settings.API_KEY or "").strip()
    if not configured_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="API key authentication is disabled")
    provided = payload.api_key or (x_api_key or "")
    if not provided or not hmac.compare_digest(provided.strip(), configured_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    if payload.role not in ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role {payload.role}")
    token = issue_access_token(payload.subject, role=payload.role, lab_id=payload.lab_id)
    return TokenResponse(**token.model_dump())
