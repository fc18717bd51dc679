"""Ephemeral credential endpoint for the browser client."""
from __future__ import annotations

import logging
from typing import Union

from fastapi import APIRouter, Depends
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse

from ..config import settings
from ..models import schemas
from ..services.credentials import CredentialFetcher, IssuanceFailure, format_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credentials", tags=["credentials"])


def get_fetcher(connection: HTTPConnection) -> CredentialFetcher:
    """Build a fetcher on the app's shared HTTP client (if the lifespan created one)."""

    return CredentialFetcher(client=getattr(connection.app.state, "http_client", None))


@router.post(
    "",
    response_model=schemas.CredentialResponse,
    responses={500: {"model": schemas.CredentialErrorResponse}},
)
async def issue_credential(
    fetcher: CredentialFetcher = Depends(get_fetcher),
) -> Union[schemas.CredentialResponse, JSONResponse]:
    """Issue a fresh single-session token so the browser never sees the API key.

    Nothing is cached here; the caller owns reuse and invalidation.
    """

    try:
        credential = await fetcher.issue(
            settings.token_expire_minutes,
            settings.token_new_session_minutes,
            settings.token_uses,
        )
    except IssuanceFailure as exc:
        logger.warning(f"Credential issuance failed ({exc.reason}): {exc.detail}")
        error = schemas.CredentialErrorResponse(
            error=exc.detail,
            http_code=exc.status_code if exc.reason == "status" else None,
            response=exc.body,
        )
        return JSONResponse(status_code=500, content=error.model_dump(by_alias=True, exclude_none=True))

    return schemas.CredentialResponse(
        token=credential.token,
        expiry=credential.lifetime_minutes,
        expire_time=format_timestamp(credential.expires_at),
    )
