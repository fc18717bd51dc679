from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from voicelink.services.credentials import (
    Credential,
    CredentialCache,
    CredentialFetcher,
    IssuanceFailure,
    format_timestamp,
)

START = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def _run(coro):  # noqa: ANN001
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeFetcher:
    def __init__(self, clock: FakeClock, lifetime_minutes: int = 5) -> None:
        self.clock = clock
        self.lifetime_minutes = lifetime_minutes
        self.calls = 0
        self.fail_with: IssuanceFailure | None = None

    async def issue(self, *args, **kwargs) -> Credential:  # noqa: ANN002, ANN003
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        now = self.clock()
        return Credential(
            token=f"auth_tokens/{self.calls}",
            expires_at=now + timedelta(minutes=self.lifetime_minutes),
            new_session_expires_at=now + timedelta(minutes=1),
            uses=1,
            lifetime_minutes=self.lifetime_minutes,
        )


def _fetcher_for(handler, **kwargs) -> CredentialFetcher:  # noqa: ANN001, ANN003
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("api_key", "test-key")
    return CredentialFetcher(client=client, url="https://issuer.test/auth_tokens", clock=FakeClock(), **kwargs)


def test_format_timestamp_is_utc_seconds_with_z():
    moment = datetime(2024, 1, 1, 2, 5, 0, 999_999, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(moment) == "2024-01-01T00:05:00Z"


def test_issue_posts_absolute_expiry_and_api_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "auth_tokens/abc"})

    credential = _run(_fetcher_for(handler).issue(5, 1, 1))

    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["x-goog-api-key"] == "test-key"
    assert json.loads(request.content) == {
        "expireTime": "2024-01-01T00:05:00Z",
        "newSessionExpireTime": "2024-01-01T00:01:00Z",
        "uses": 1,
    }
    assert credential.token == "auth_tokens/abc"
    assert credential.expires_at == START + timedelta(minutes=5)
    assert credential.new_session_expires_at == START + timedelta(minutes=1)
    assert credential.lifetime_minutes == 5


def test_issue_non_200_carries_status_and_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"message": "API key not valid"}})

    with pytest.raises(IssuanceFailure) as excinfo:
        _run(_fetcher_for(handler).issue(5, 1, 1))

    assert excinfo.value.reason == "status"
    assert excinfo.value.status_code == 403
    assert excinfo.value.body == {"error": {"message": "API key not valid"}}


def test_issue_missing_name_is_malformed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"token": "nope"})

    with pytest.raises(IssuanceFailure) as excinfo:
        _run(_fetcher_for(handler).issue(5, 1, 1))

    assert excinfo.value.reason == "malformed"


def test_issue_non_json_success_is_malformed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(IssuanceFailure) as excinfo:
        _run(_fetcher_for(handler).issue(5, 1, 1))

    assert excinfo.value.reason == "malformed"
    assert excinfo.value.body == "<html>gateway</html>"


def test_issue_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("name resolution failed", request=request)

    with pytest.raises(IssuanceFailure) as excinfo:
        _run(_fetcher_for(handler).issue(5, 1, 1))

    assert excinfo.value.reason == "transport"
    assert "name resolution failed" in excinfo.value.detail


def test_issue_timeout_is_a_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(IssuanceFailure) as excinfo:
        _run(_fetcher_for(handler).issue(5, 1, 1))

    assert excinfo.value.reason == "transport"
    assert excinfo.value.status_code is None


def test_issue_without_api_key_makes_no_request():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"name": "auth_tokens/abc"})

    with pytest.raises(IssuanceFailure) as excinfo:
        _run(_fetcher_for(handler, api_key="").issue(5, 1, 1))

    assert excinfo.value.reason == "configuration"
    assert calls == []


def test_is_valid_respects_safety_margin():
    clock = FakeClock()
    cache = CredentialCache(FakeFetcher(clock), safety_margin_seconds=30, clock=clock)
    assert cache.is_valid() is False

    credential = _run(cache.get())
    expiry = credential.expires_at

    clock.now = expiry - timedelta(seconds=31)
    assert cache.is_valid() is True
    clock.now = expiry - timedelta(seconds=30)
    assert cache.is_valid() is False
    clock.now = expiry + timedelta(seconds=1)
    assert cache.is_valid() is False


def test_get_reuses_valid_credential_without_fetching():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    cache = CredentialCache(fetcher, safety_margin_seconds=30, clock=clock)

    async def scenario():
        first = await cache.get()
        second = await cache.get(force_refresh=False)
        return first, second

    first, second = _run(scenario())

    assert fetcher.calls == 1
    assert second is first


def test_force_refresh_always_fetches_once():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    cache = CredentialCache(fetcher, clock=clock)

    async def scenario():
        await cache.get()
        return await cache.get(force_refresh=True)

    refreshed = _run(scenario())

    assert fetcher.calls == 2
    assert refreshed.token == "auth_tokens/2"
    assert cache.cached is refreshed


def test_expired_credential_is_refreshed():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    cache = CredentialCache(fetcher, safety_margin_seconds=30, clock=clock)

    async def scenario():
        await cache.get()
        clock.now = START + timedelta(minutes=4, seconds=45)
        return await cache.get()

    credential = _run(scenario())

    assert fetcher.calls == 2
    assert credential.token == "auth_tokens/2"


def test_failed_refresh_leaves_cache_untouched():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    cache = CredentialCache(fetcher, clock=clock)

    async def scenario():
        original = await cache.get()
        fetcher.fail_with = IssuanceFailure("status", "API error (HTTP 500)", status_code=500)
        with pytest.raises(IssuanceFailure):
            await cache.get(force_refresh=True)
        return original

    original = _run(scenario())

    assert cache.cached is original


def test_invalidate_then_get_fetches_exactly_once():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    cache = CredentialCache(fetcher, clock=clock)

    async def scenario():
        await cache.get()
        cache.invalidate()
        assert cache.is_valid() is False
        await cache.get()

    _run(scenario())

    assert fetcher.calls == 2


def test_concurrent_gets_share_one_fetch():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    cache = CredentialCache(fetcher, clock=clock)

    async def scenario():
        return await asyncio.gather(cache.get(), cache.get(), cache.get())

    results = _run(scenario())

    assert fetcher.calls == 1
    assert len({credential.token for credential in results}) == 1


def test_fetch_credential_returns_none_on_failure():
    clock = FakeClock()
    fetcher = FakeFetcher(clock)
    fetcher.fail_with = IssuanceFailure("transport", "timed out")
    cache = CredentialCache(fetcher, clock=clock)

    assert _run(cache.fetch_credential()) is None
    assert cache.cached is None
