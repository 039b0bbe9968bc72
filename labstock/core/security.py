"""Role-bearing access tokens for faculty, lab assistants and admins."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError, field_validator

from ..settings import settings
from .stock_types import ROLE_FACULTY, ROLES

ALGORITHM = "HS256"
AUDIENCE = "labstock-clients"
ISSUER = "labstock"
ACCESS_TOKEN = "access"


class AccessToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class TokenPayload(BaseModel):
    sub: str
    exp: datetime
    iat: datetime
    typ: str
    aud: str
    iss: str
    role: str = ROLE_FACULTY
    lab_id: str | None = None

    @field_validator("role")
    @classmethod
    def known_role(cls, value: str) -> str:
        if value not in ROLES:
            raise ValueError(f"unknown role {value!r}")
        return value


def issue_access_token(subject: str, role: str = ROLE_FACULTY, lab_id: str | None = None) -> AccessToken:
    """Sign a short-lived access token carrying the actor's role and home lab."""

    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    issued = datetime.now(tz=timezone.utc)
    ttl = timedelta(minutes=settings.JWT_ACCESS_TTL_MIN)
    claims: dict[str, Any] = {
        "sub": subject,
        "iat": int(issued.timestamp()),
        "exp": int((issued + ttl).timestamp()),
        "typ": ACCESS_TOKEN,
        "aud": AUDIENCE,
        "iss": ISSUER,
        "role": role,
    }
    if lab_id:
        claims["lab_id"] = lab_id
    return AccessToken(
        access_token=jwt.encode(claims, settings.JWT_SECRET, algorithm=ALGORITHM),
        expires_in=int(ttl.total_seconds()),
    )


def decode_token(token: str, *, verify_type: str | None = None) -> TokenPayload:
    """Verify signature, audience and issuer; raise ``ValueError`` on any failure."""

    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM], audience=AUDIENCE, issuer=ISSUER)
        payload = TokenPayload.model_validate(claims)
    except (JWTError, ValidationError) as exc:
        raise ValueError("Invalid token") from exc
    if verify_type and payload.typ != verify_type:
        raise ValueError("Invalid token type")
    return payload
