from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..core.stock_types import ROLE_FACULTY


class TokenRequest(BaseModel):
    api_key: str = Field(..., alias="apiKey", min_length=1)
    subject: str = Field(..., min_length=1)
    role: str = ROLE_FACULTY
    lab_id: Optional[str] = None

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {"apiKey": "super-secret-key", "subject": "dr-rao", "role": "faculty", "lab_id": "LAB01"}
        },
    }


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
