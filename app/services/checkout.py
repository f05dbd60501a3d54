from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.core.config import Settings
from app.core.errors import (
    InvalidOperation,
    NotFound,
    PaymentProcessorError,
    PersistenceFailure,
    PreconditionFailed,
    Unauthorized,
)
from app.core.ids import gen_id
from app.models.sale import SaleRecord
from app.services.auth import BuyerIdentity
from app.services.fees import compute_fee_split, price_to_minor_units
from app.services.payments import (
    CheckoutSessionRequest,
    PaymentGateway,
    transfer_group_for,
    with_session_placeholder,
)
from app.services.store import SettlementStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str | None
    sale_id: str


async def initiate_checkout(
    *,
    store: SettlementStore,
    gateway: PaymentGateway,
    settings: Settings,
    buyer: BuyerIdentity | None,
    domain_id: str,
    success_url: str,
    cancel_url: str,
    now: datetime | None = None,
) -> CheckoutResult:
    """
    Start a purchase: validate the listing and seller, split the fee, open a
    processor checkout session and record the pending sale.

    The sale insert and the listing's available -> pending move happen as one
    unit after the session exists, so a failed session never leaves a listing
    pending without its sale record.
    """
    if buyer is None or not buyer.id:
        raise Unauthorized("Authentication failed or user not found")

    listing = await store.get_available_listing(domain_id)
    if listing is None:
        raise NotFound("Domain not found or not available for sale")

    if listing.seller_id == buyer.id:
        raise InvalidOperation("You cannot purchase your own domain")

    profile = await store.get_seller_payout_profile(listing.seller_id)
    if profile is None or not profile.is_payout_ready:
        log.warning("checkout refused for %s: seller %s not configured for payouts", listing.id, listing.seller_id)
        raise PreconditionFailed("Seller not configured for payouts")

    split = compute_fee_split(
        price_to_minor_units(listing.price),
        fee_bps=settings.marketplace_fee_bps,
        minimum_fee_minor=settings.minimum_fee_minor,
    )
    if not split.is_payable:
        raise PreconditionFailed("Listing price is below the minimum chargeable amount")

    # plain values: the customer-mapping step may roll back and expire ORM rows
    listing_id, listing_name, seller_id = listing.id, listing.name, listing.seller_id
    description = listing.description or f"Purchase of {listing_name} from DomainVault Marketplace"

    customer_id = await store.get_or_create_customer_mapping(
        buyer.id,
        lambda: gateway.create_customer(email=buyer.email, user_id=buyer.id),
    )

    sale_id = gen_id("sale")
    metadata = {
        "sale_id": sale_id,
        "listing_id": listing_id,
        "seller_id": seller_id,
        "buyer_id": buyer.id,
        "sale_price": str(split.price_minor),
        "marketplace_fee": str(split.marketplace_fee_minor),
        "seller_amount": str(split.seller_amount_minor),
    }

    # measured after the customer round-trip
    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=settings.pending_sale_ttl_minutes)
    session = await gateway.create_checkout_session(
        CheckoutSessionRequest(
            customer_id=customer_id,
            currency=settings.currency,
            unit_amount_minor=split.price_minor,
            product_name=listing_name,
            product_description=description,
            success_url=with_session_placeholder(success_url),
            cancel_url=cancel_url,
            transfer_group=transfer_group_for(listing_id),
            expires_at=expires_at,
            metadata=metadata,
            idempotency_key=f"checkout-{sale_id}",
        )
    )

    sale = SaleRecord(
        id=sale_id,
        listing_id=listing_id,
        seller_id=seller_id,
        buyer_id=buyer.id,
        sale_price_minor=split.price_minor,
        marketplace_fee_minor=split.marketplace_fee_minor,
        seller_amount_minor=split.seller_amount_minor,
        currency=settings.currency,
        checkout_session_id=session.id,
        status="pending",
        expires_at=expires_at,
    )
    try:
        await store.create_pending_sale(sale)
    except (NotFound, PersistenceFailure):
        # no sale row means nothing will ever settle this session
        try:
            status = await gateway.expire_checkout_session(session.id)
        except PaymentProcessorError as e:
            status = f"unknown ({e.message})"
        if status != "expired":
            log.error("orphaned checkout session %s for listing %s is %s", session.id, listing_id, status)
        raise

    log.info(
        "created checkout session %s for listing %s (sale %s, fee %d, seller %d)",
        session.id, listing_name, sale_id, split.marketplace_fee_minor, split.seller_amount_minor,
    )
    return CheckoutResult(session_id=session.id, url=session.url, sale_id=sale_id)
