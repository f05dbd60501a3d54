from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import stripe

from app.core.errors import AuthenticationFailed, PaymentProcessorError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSessionRequest:
    customer_id: str
    currency: str
    unit_amount_minor: int
    product_name: str
    product_description: str
    success_url: str
    cancel_url: str
    transfer_group: str
    expires_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)
    idempotency_key: str | None = None


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None


@dataclass(frozen=True)
class TransferRequest:
    amount_minor: int
    currency: str
    destination: str
    transfer_group: str
    idempotency_key: str
    source_transaction: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Transfer:
    id: str


class PaymentGateway(Protocol):
    async def create_customer(self, *, email: str | None, user_id: str) -> str: ...

    async def create_checkout_session(self, req: CheckoutSessionRequest) -> CheckoutSession: ...

    async def expire_checkout_session(self, session_id: str) -> str: ...

    async def create_transfer(self, req: TransferRequest) -> Transfer: ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]: ...


def transfer_group_for(listing_id: str) -> str:
    return f"domain_sale_{listing_id}"


def with_session_placeholder(success_url: str) -> str:
    if "{CHECKOUT_SESSION_ID}" in success_url:
        return success_url
    sep = "&" if "?" in success_url else "?"
    return f"{success_url}{sep}session_id={{CHECKOUT_SESSION_ID}}"


class StripeGateway:
    """
    Thin async wrapper over the stripe SDK.

    The SDK is synchronous, so calls run in a worker thread. SDK errors are
    translated to PaymentProcessorError; nothing here retries.
    """

    def __init__(self, *, api_key: str, webhook_secret: str, webhook_tolerance: int = 300):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance
        stripe.set_app_info("DomainVault", version="1.0.0")

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            log.error("stripe call %s failed: %s", getattr(fn, "__qualname__", fn), e)
            raise PaymentProcessorError(
                e.user_message or str(e),
                processor_code=getattr(e, "code", None),
            ) from e

    async def create_customer(self, *, email: str | None, user_id: str) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
        )
        log.info("created processor customer %s for user %s", customer.id, user_id)
        return customer.id

    async def create_checkout_session(self, req: CheckoutSessionRequest) -> CheckoutSession:
        params: dict[str, Any] = {
            "customer": req.customer_id,
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": req.currency,
                        "product_data": {"name": req.product_name, "description": req.product_description},
                        "unit_amount": req.unit_amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": req.success_url,
            "cancel_url": req.cancel_url,
            "expires_at": int(req.expires_at.timestamp()),
            "metadata": req.metadata,
            "payment_intent_data": {
                "transfer_group": req.transfer_group,
                "metadata": req.metadata,
            },
        }
        if req.idempotency_key:
            params["idempotency_key"] = req.idempotency_key

        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session.id, url=session.url)

    async def expire_checkout_session(self, session_id: str) -> str:
        """
        Expire an open session and return its final status: "expired",
        "complete" (buyer already paid) or "open".
        """
        try:
            session = await self._call(stripe.checkout.Session.expire, session_id)
            return session.status
        except PaymentProcessorError as e:
            log.info("checkout session %s not expired: %s", session_id, e.message)
        session = await self._call(stripe.checkout.Session.retrieve, session_id)
        return session.status

    async def create_transfer(self, req: TransferRequest) -> Transfer:
        params: dict[str, Any] = {
            "amount": req.amount_minor,
            "currency": req.currency,
            "destination": req.destination,
            "transfer_group": req.transfer_group,
            "metadata": req.metadata,
            "idempotency_key": req.idempotency_key,
        }
        if req.source_transaction:
            params["source_transaction"] = req.source_transaction
        transfer = await self._call(stripe.Transfer.create, **params)
        return Transfer(id=transfer.id)

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        return verify_stripe_signature(
            payload,
            signature,
            secret=self._webhook_secret,
            tolerance=self._tolerance,
        )


def verify_stripe_signature(payload: bytes, signature: str | None, *, secret: str, tolerance: int = 300) -> dict[str, Any]:
    """
    Check the Stripe-Signature header against the raw body and return the
    decoded event. Raises AuthenticationFailed on any mismatch.
    """
    if not signature:
        raise AuthenticationFailed("No signature found")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationFailed("Webhook payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(text, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationFailed(f"Webhook signature verification failed: {e.user_message or e}") from e

    try:
        event = json.loads(text)
    except ValueError as e:
        raise AuthenticationFailed("Webhook payload is not valid JSON") from e
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise AuthenticationFailed("Webhook payload is not an event")
    return event
