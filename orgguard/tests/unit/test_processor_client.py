from __future__ import annotations

import hashlib
import hmac
from urllib.parse import parse_qs

import httpx
import pytest

from orgguard.core.config import get_settings
from orgguard.core.errors import (
    ConfigurationError,
    InvalidSignatureError,
    PaymentProcessorError,
    PaymentProcessorNotConfiguredError,
)
from orgguard.services.payments import (
    PaymentProcessorClient,
    build_processor_signature,
    verify_processor_event,
    verify_processor_signature,
)
from orgguard.services.resilience import RetryPolicy, retry_async


_FAST_RETRY = RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1)


def _client(handler, *, secret_key: str | None = "sk_test_123") -> PaymentProcessorClient:
    return PaymentProcessorClient(
        secret_key=secret_key,
        base_url="https://processor.test",
        timeout_s=1.0,
        transport=httpx.MockTransport(handler),
        retry_policy=_FAST_RETRY,
    )


def test_build_processor_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"status":"active"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_processor_signature(secret, payload) == expected
    assert verify_processor_signature(secret, payload, expected) is True
    assert verify_processor_signature(secret, payload, "deadbeef") is False
    assert verify_processor_signature(secret, payload, None) is False


def test_verify_processor_event_requires_configured_secret(monkeypatch) -> None:
    monkeypatch.delenv("PROCESSOR_EVENT_SECRET", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ConfigurationError):
        verify_processor_event(b"{}", "sig")

    monkeypatch.setenv("PROCESSOR_EVENT_SECRET", "whsec_test")
    get_settings.cache_clear()
    with pytest.raises(InvalidSignatureError):
        verify_processor_event(b"{}", "sig")
    verify_processor_event(b"{}", build_processor_signature("whsec_test", b"{}"))


@pytest.mark.asyncio
async def test_checkout_session_posts_form_with_bearer_auth() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["form"] = parse_qs(request.content.decode("utf-8"))
        return httpx.Response(200, json={"id": "cs_123", "url": "https://checkout.test/cs_123"})

    checkout = await _client(handler).create_checkout_session(
        customer_ref="cus_1",
        price_ref="price_pro_monthly",
        quantity=3,
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        organisation_id="org-1",
        plan_id="plan-pro",
        interval="monthly",
        trial_days=7,
    )

    assert checkout.session_id == "cs_123"
    assert checkout.url == "https://checkout.test/cs_123"
    assert seen["path"] == "/v1/checkout/sessions"
    assert seen["auth"] == "Bearer sk_test_123"
    form = seen["form"]
    assert form["line_items[0][quantity]"] == ["3"]
    assert form["subscription_data[trial_period_days]"] == ["7"]
    assert form["metadata[organisation_id]"] == ["org-1"]


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_raised() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(502, json={"error": "bad gateway"})

    with pytest.raises(PaymentProcessorError):
        await _client(handler).create_portal_session(customer_ref="cus_1", return_url="https://app.test")
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, json={"error": "bad request"})

    with pytest.raises(PaymentProcessorError):
        await _client(handler).create_customer(organisation_id="org-1", name="Acme", email=None)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_unconfigured_client_never_calls_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("processor should not be called")

    client = _client(handler, secret_key=None)
    assert client.configured is False
    with pytest.raises(PaymentProcessorNotConfiguredError):
        await client.create_customer(organisation_id="org-1", name="Acme", email=None)


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(flaky, policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1))
    assert result == "ok"
    assert calls["count"] == 2
