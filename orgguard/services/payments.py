from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import logging
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.core.errors import (
    ConfigurationError,
    InvalidSignatureError,
    PaymentProcessorError,
    PaymentProcessorNotConfiguredError,
)
from orgguard.domain.results import OperationResult, invalid_argument, not_found, success, unavailable
from orgguard.persistence.repos import organisations as organisations_repo
from orgguard.services import plan_catalog
from orgguard.services.entitlements import BILLING_INTERVALS, INTERVAL_ANNUAL
from orgguard.services.resilience import RetryPolicy, default_retry_policy, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    url: str
    session_id: str


def build_processor_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the raw request body.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_processor_signature(secret: str, payload: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    expected = build_processor_signature(secret, payload)
    return hmac.compare_digest(expected, signature.strip())


def verify_processor_event(payload: bytes, signature: str | None) -> None:
    secret = get_settings().processor_event_secret
    if not secret:
        raise ConfigurationError("processor_event_secret is not configured")
    if not verify_processor_signature(secret, payload, signature):
        raise InvalidSignatureError("Processor event signature is missing or invalid")


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class PaymentProcessorClient:
    """Minimal client for a Stripe-compatible REST API.

    Only the calls needed to hand an organisation off to hosted checkout and
    the billing portal are implemented. Subscription state comes back through
    signed processor events, not through this client.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        base_url: str,
        timeout_s: float,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport
        self._retry_policy = retry_policy

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    async def _post(self, path: str, form: dict[str, str]) -> dict[str, Any]:
        if not self._secret_key:
            raise PaymentProcessorNotConfiguredError("Payment processor secret key is not configured")
        headers = {"Authorization": f"Bearer {self._secret_key}"}

        async def _call() -> dict[str, Any]:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
            ) as client:
                response = await client.post(path, data=form, headers=headers)
            if response.status_code >= 400:
                raise PaymentProcessorError(
                    f"Processor responded with status {response.status_code}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise PaymentProcessorError("Processor returned a non-JSON body") from exc

        return await retry_async(
            _call,
            policy=self._retry_policy or default_retry_policy(),
            retryable=_retryable,
        )

    async def create_customer(self, *, organisation_id: str, name: str, email: str | None) -> str:
        form = {"name": name, "metadata[organisation_id]": organisation_id}
        if email:
            form["email"] = email
        payload = await self._post("/v1/customers", form)
        customer_id = payload.get("id")
        if not customer_id:
            raise PaymentProcessorError("Processor customer response is missing an id")
        return str(customer_id)

    async def create_checkout_session(
        self,
        *,
        customer_ref: str,
        price_ref: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        organisation_id: str,
        plan_id: str,
        interval: str,
        trial_days: int | None,
    ) -> CheckoutSession:
        form = {
            "mode": "subscription",
            "customer": customer_ref,
            "line_items[0][price]": price_ref,
            "line_items[0][quantity]": str(quantity),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata[organisation_id]": organisation_id,
            "metadata[plan_id]": plan_id,
            "metadata[billing_interval]": interval,
            "subscription_data[metadata][organisation_id]": organisation_id,
            "subscription_data[metadata][plan_id]": plan_id,
        }
        if trial_days:
            form["subscription_data[trial_period_days]"] = str(trial_days)
        payload = await self._post("/v1/checkout/sessions", form)
        if not payload.get("url") or not payload.get("id"):
            raise PaymentProcessorError("Processor checkout response is missing url or id")
        return CheckoutSession(url=str(payload["url"]), session_id=str(payload["id"]))

    async def create_portal_session(self, *, customer_ref: str, return_url: str) -> str:
        payload = await self._post(
            "/v1/billing_portal/sessions",
            {"customer": customer_ref, "return_url": return_url},
        )
        if not payload.get("url"):
            raise PaymentProcessorError("Processor portal response is missing url")
        return str(payload["url"])


_payment_client: PaymentProcessorClient | None = None


def get_payment_client() -> PaymentProcessorClient:
    # Reuse one configured client per process.
    global _payment_client
    if _payment_client is None:
        settings = get_settings()
        _payment_client = PaymentProcessorClient(
            secret_key=settings.payment_processor_secret_key,
            base_url=settings.payment_processor_base_url,
            timeout_s=settings.payment_processor_timeout_ms / 1000.0,
        )
    return _payment_client


def reset_payment_client() -> None:
    global _payment_client
    _payment_client = None


async def start_checkout(
    session: AsyncSession,
    client: PaymentProcessorClient,
    *,
    organisation_id: str,
    plan_id: str,
    interval: str,
    success_url: str,
    cancel_url: str,
) -> OperationResult[CheckoutSession]:
    if interval not in BILLING_INTERVALS:
        return invalid_argument(f"Unknown billing interval: {interval}", interval=interval)
    try:
        organisation = await organisations_repo.get_organisation(session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        plan = await plan_catalog.get_plan(session, plan_id)
        if plan is None or not plan.is_active:
            return invalid_argument(f"Unknown plan id: {plan_id}", plan_id=plan_id)
        price_ref = (
            plan.processor_price_id_annual if interval == INTERVAL_ANNUAL else plan.processor_price_id_monthly
        )
        if not price_ref:
            return invalid_argument("Plan has no processor price for this interval", plan_id=plan_id)
        seats = await organisations_repo.count_members(session, organisation_id)

        if organisation.processor_customer_ref is None:
            customer_ref = await client.create_customer(
                organisation_id=organisation.id,
                name=organisation.name,
                email=organisation.billing_email or organisation.contact_email,
            )
            organisation.processor_customer_ref = customer_ref
            await session.commit()
            logger.info(
                "processor_customer_created organisation_id=%s customer_ref=%s",
                organisation.id,
                customer_ref,
            )

        # Trial only for organisations that have never had one and pay something.
        trial_days = None
        if organisation.trial_ends_at is None and organisation.discount_percent < 100:
            trial_days = get_settings().trial_period_days
        checkout = await client.create_checkout_session(
            customer_ref=organisation.processor_customer_ref,
            price_ref=price_ref,
            quantity=max(1, seats),
            success_url=success_url,
            cancel_url=cancel_url,
            organisation_id=organisation.id,
            plan_id=plan.id,
            interval=interval,
            trial_days=trial_days,
        )
    except PaymentProcessorNotConfiguredError:
        return unavailable("Payment processor is not configured")
    except (PaymentProcessorError, httpx.HTTPError) as exc:
        logger.error("processor_checkout_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable("Payment processor is unavailable")
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("processor_checkout_storage_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()
    return success(checkout)


async def open_billing_portal(
    session: AsyncSession,
    client: PaymentProcessorClient,
    *,
    organisation_id: str,
    return_url: str,
) -> OperationResult[str]:
    try:
        organisation = await organisations_repo.get_organisation(session, organisation_id)
        if organisation is None:
            return not_found("Organisation", organisation_id)
        if not organisation.processor_customer_ref:
            return invalid_argument("Organisation has no billing account yet")
        url = await client.create_portal_session(
            customer_ref=organisation.processor_customer_ref,
            return_url=return_url,
        )
    except PaymentProcessorNotConfiguredError:
        return unavailable("Payment processor is not configured")
    except (PaymentProcessorError, httpx.HTTPError) as exc:
        logger.error("processor_portal_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable("Payment processor is unavailable")
    except SQLAlchemyError as exc:
        logger.error("processor_portal_storage_failed organisation_id=%s", organisation_id, exc_info=exc)
        return unavailable()
    return success(url)
