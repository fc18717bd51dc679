"""Pydantic models describing request and response payloads."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class CredentialResponse(BaseModel):
    """Successful ephemeral credential handed to the browser."""

    success: bool = True
    token: str = Field(..., description="Ephemeral token name, e.g. auth_tokens/xxx")
    expiry: int = Field(..., description="Requested token lifetime in minutes")
    expire_time: str = Field(..., alias="expireTime", description="Absolute UTC expiry")

    model_config = {"populate_by_name": True}


class CredentialErrorResponse(BaseModel):
    """Failure payload; mirrors the issuer's status and body when available."""

    success: bool = False
    error: str
    http_code: Optional[int] = Field(default=None, alias="httpCode")
    response: Optional[Any] = None

    model_config = {"populate_by_name": True}
