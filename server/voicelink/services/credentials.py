"""Ephemeral Gemini credential issuance and caching."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

try:  # pragma: no cover - fallback for script execution contexts
    from ..config import settings
except Exception:  # pragma: no cover
    from voicelink.config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format as UTC with second precision and a literal Z suffix."""

    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class IssuanceFailure(RuntimeError):
    """Uniform failure for credential issuance.

    ``reason`` is one of ``configuration``, ``transport``, ``status`` or
    ``malformed``; callers decide whether to retry.
    """

    def __init__(
        self,
        reason: str,
        detail: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(f"{reason}: {detail}")
        self.reason = reason
        self.detail = detail
        self.status_code = status_code
        self.body = body


@dataclass(slots=True, frozen=True)
class Credential:
    """Short-lived token authorizing one realtime session."""

    token: str
    expires_at: datetime
    new_session_expires_at: datetime
    uses: int
    lifetime_minutes: int

    def is_valid(self, now: datetime, safety_margin: timedelta) -> bool:
        return now < self.expires_at - safety_margin


class CredentialFetcher:
    """Calls the token-issuing endpoint and normalizes its response."""

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._client = client
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._url = url or settings.token_url
        self._timeout = timeout or settings.request_timeout
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def issue(
        self,
        requested_lifetime_minutes: Optional[int] = None,
        new_session_grace_minutes: Optional[int] = None,
        use_budget: Optional[int] = None,
    ) -> Credential:
        """Request a fresh credential, raising ``IssuanceFailure`` on any error."""

        if not self._api_key:
            raise IssuanceFailure("configuration", "GEMINI_API_KEY environment variable not set.")

        lifetime = requested_lifetime_minutes or settings.token_expire_minutes
        grace = new_session_grace_minutes or settings.token_new_session_minutes
        uses = settings.token_uses if use_budget is None else use_budget

        now = self._clock()
        expires_at = now + timedelta(minutes=lifetime)
        new_session_expires_at = now + timedelta(minutes=grace)
        payload = {
            "expireTime": format_timestamp(expires_at),
            "newSessionExpireTime": format_timestamp(new_session_expires_at),
            "uses": uses,
        }
        headers = {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

        logger.info(f"Requesting ephemeral token (lifetime={lifetime}m, uses={uses})")
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(f"Token request transport error: {exc}")
            raise IssuanceFailure("transport", str(exc) or type(exc).__name__) from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code != 200:
            body = data if data is not None else resp.text
            logger.error(f"Token issuer returned HTTP {resp.status_code}: {body}")
            raise IssuanceFailure(
                "status",
                f"API error (HTTP {resp.status_code})",
                status_code=resp.status_code,
                body=body,
            )

        name = data.get("name") if isinstance(data, dict) else None
        if not isinstance(name, str) or not name:
            logger.error(f"Token issuer response missing name: {data if data is not None else resp.text}")
            raise IssuanceFailure(
                "malformed",
                "Invalid response format",
                status_code=resp.status_code,
                body=data if data is not None else resp.text,
            )

        return Credential(
            token=name,
            expires_at=expires_at,
            new_session_expires_at=new_session_expires_at,
            uses=uses,
            lifetime_minutes=lifetime,
        )


class CredentialCache:
    """Holds at most one credential and decides between reuse and refresh.

    Owned by whatever opens connections; sessions call ``invalidate`` when
    they close since a credential is single-session.
    """

    def __init__(
        self,
        fetcher: CredentialFetcher,
        *,
        safety_margin_seconds: Optional[int] = None,
        clock: Clock = utcnow,
    ) -> None:
        margin = settings.token_safety_margin_seconds if safety_margin_seconds is None else safety_margin_seconds
        self._fetcher = fetcher
        self._safety_margin = timedelta(seconds=margin)
        self._clock = clock
        self._cached: Optional[Credential] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[Credential]:
        return self._cached

    def is_valid(self) -> bool:
        cached = self._cached
        return cached is not None and cached.is_valid(self._clock(), self._safety_margin)

    def invalidate(self) -> None:
        if self._cached is not None:
            logger.info("Invalidating cached Gemini token")
        self._cached = None

    async def get(self, force_refresh: bool = False) -> Credential:
        """Return a usable credential, fetching a new one when needed."""

        async with self._lock:
            cached = self._cached
            if not force_refresh and cached is not None and cached.is_valid(self._clock(), self._safety_margin):
                logger.info("Using cached Gemini token")
                return cached

            logger.info("Fetching new Gemini token")
            credential = await self._fetcher.issue()
            self._cached = credential
            return credential

    async def fetch_credential(self, force_refresh: bool = False) -> Optional[Credential]:
        """Like ``get`` but logs failures and returns ``None`` instead of raising."""

        try:
            return await self.get(force_refresh=force_refresh)
        except IssuanceFailure as exc:
            logger.error(f"Error fetching Gemini token: {exc}")
            if exc.body is not None:
                logger.error(f"Server response: {exc.body}")
            return None
