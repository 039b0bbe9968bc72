from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security.utils import get_authorization_scheme_param

from ..core.errors import PermissionDeniedError
from ..core.security import decode_token
from ..core.stock_types import ROLE_ADMIN, ROLE_FACULTY, ROLE_LAB_ASSISTANT
from ..middlewares import actor_role_ctx_var, principal_ctx_var
from ..settings import settings


class AuthContext:
    def __init__(self, *, subject: str, scheme: str, role: str = ROLE_FACULTY, lab_id: str | None = None) -> None:
        self.subject = subject
        self.scheme = scheme
        self.role = role
        self.lab_id = lab_id

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_LAB_ASSISTANT)


def _unauthorized(detail: str = "Unauthorized") -> None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _set_principal(request: Request, principal: str, role: str) -> None:
    principal_ctx_var.set(principal)
    actor_role_ctx_var.set(role)
    request.state.principal = principal


async def require_api_or_jwt(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    """Authenticate via API key (acts as admin) or a bearer JWT with a role claim."""

    api_key = settings.API_KEY
    provided_key = (x_api_key or "").strip()
    if api_key and provided_key and hmac.compare_digest(api_key, provided_key):
        _set_principal(request, "api-key", ROLE_ADMIN)
        return AuthContext(subject="api-key", scheme="api_key", role=ROLE_ADMIN)

    if authorization:
        scheme, credentials = get_authorization_scheme_param(authorization)
        if scheme.lower() == "bearer" and credentials:
            try:
                payload = decode_token(credentials, verify_type="access")
            except ValueError as exc:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
            subject = f"jwt:{payload.sub}"
            _set_principal(request, subject, payload.role)
            request.state.token_payload = payload
            return AuthContext(subject=payload.sub, scheme="jwt", role=payload.role, lab_id=payload.lab_id)

    if not api_key:
        _set_principal(request, "anonymous", ROLE_ADMIN)
        return AuthContext(subject="anonymous", scheme="open", role=ROLE_ADMIN)

    if provided_key:
        _unauthorized("Invalid API key")
    _unauthorized("Authorization required")


async def require_staff(auth: AuthContext = Depends(require_api_or_jwt)) -> AuthContext:
    if not auth.is_staff:
        raise PermissionDeniedError("Lab staff role required", details={"role": auth.role})
    return auth


async def require_admin(auth: AuthContext = Depends(require_api_or_jwt)) -> AuthContext:
    if not auth.is_admin:
        raise PermissionDeniedError("Admin role required", details={"role": auth.role})
    return auth
