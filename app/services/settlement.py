from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import IntegrityError

from app.core.config import Settings
from app.core.errors import InvalidOperation, NotFound, PaymentProcessorError, PreconditionFailed
from app.models.ledger import LedgerEntry
from app.models.payout import PayoutRecord
from app.models.sale import SaleRecord
from app.services.audit import audit, raise_alert
from app.services.fees import verify_fee_split
from app.services.payments import PaymentGateway, TransferRequest, transfer_group_for
from app.services.store import SellerPayoutProfile, SettlementStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementOutcome:
    # completed | recorded | expired | duplicate | skipped | alert | ignored
    action: str
    sale_id: str | None = None
    detail: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive values
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _is_domain_purchase(obj: dict[str, Any]) -> bool:
    meta = _metadata(obj)
    return bool(meta.get("sale_id") or meta.get("listing_id"))


class SettlementReconciler:
    """
    Applies verified payment-processor events to sale, listing and payout rows.

    Each effect is a status-guarded conditional write, so replays and
    concurrent deliveries of the same event land at most once. Guard misses are
    logged and skipped, never retried. Money problems after the buyer has paid
    become alerts for manual reconciliation; nothing is refunded here.
    """

    def __init__(self, store: SettlementStore, gateway: PaymentGateway, settings: Settings):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[SettlementOutcome]]] = {
            "payment_intent.succeeded": self.on_payment_succeeded,
            "payment_intent.payment_failed": self.on_payment_failed,
            "checkout.session.completed": self.on_checkout_completed,
            "checkout.session.expired": self.on_checkout_expired,
        }

    async def apply(self, event: dict[str, Any]) -> SettlementOutcome:
        handler = self._handlers.get(event.get("type", ""))
        if handler is None:
            log.info("ignoring event %s of type %s", event.get("id"), event.get("type"))
            return SettlementOutcome("ignored")

        obj = (event.get("data") or {}).get("object") or {}
        if not _is_domain_purchase(obj):
            log.info("event %s is not a domain purchase; ignoring", event.get("id"))
            return SettlementOutcome("ignored")
        return await handler(obj)

    async def _locate_sale(self, obj: dict[str, Any], *, by: str) -> SaleRecord | None:
        sale_id = _metadata(obj).get("sale_id")
        if sale_id:
            return await self.store.get_sale(sale_id)
        if by == "payment_intent":
            return await self.store.find_sale_by_payment_intent(obj.get("id", ""))
        return await self.store.find_sale_by_checkout_session(obj.get("id", ""))

    async def _alert(self, reason: str, *, sale_id: str | None, target_id: str, detail: dict | None = None) -> SettlementOutcome:
        await raise_alert(
            self.store.db,
            reason=reason,
            target_type="sale" if sale_id else "event_object",
            target_id=sale_id or target_id,
            detail=detail,
        )
        await self.store.commit()
        return SettlementOutcome("alert", sale_id, reason)

    # payment_intent.succeeded

    def _amount_problems(self, sale: SaleRecord, pi: dict[str, Any]) -> list[str]:
        problems = verify_fee_split(
            price_minor=sale.sale_price_minor,
            marketplace_fee_minor=sale.marketplace_fee_minor,
            seller_amount_minor=sale.seller_amount_minor,
            fee_bps=self.settings.marketplace_fee_bps,
            minimum_fee_minor=self.settings.minimum_fee_minor,
        )

        received = pi.get("amount_received", pi.get("amount"))
        if received is not None and int(received) != sale.sale_price_minor:
            problems.append(f"amount received {received} != sale price {sale.sale_price_minor}")

        currency = (pi.get("currency") or sale.currency).lower()
        if currency != sale.currency.lower():
            problems.append(f"currency {currency} != {sale.currency}")

        # metadata is informational only; the sale record is authoritative
        meta = _metadata(pi)
        for key, authoritative in (
            ("sale_price", sale.sale_price_minor),
            ("marketplace_fee", sale.marketplace_fee_minor),
            ("seller_amount", sale.seller_amount_minor),
        ):
            raw = meta.get(key)
            if raw is None:
                continue
            try:
                claimed = int(raw)
            except (TypeError, ValueError):
                problems.append(f"metadata {key}={raw!r} is not an integer")
                continue
            if claimed != authoritative:
                problems.append(f"metadata {key}={claimed} != recorded {authoritative}")
        return problems

    async def on_payment_succeeded(self, pi: dict[str, Any]) -> SettlementOutcome:
        pi_id = pi.get("id", "")
        sale = await self._locate_sale(pi, by="payment_intent")
        if sale is None:
            return await self._alert("unknown_sale", sale_id=None, target_id=pi_id, detail={"payment_intent_id": pi_id})

        listing_id = _metadata(pi).get("listing_id")
        if listing_id and listing_id != sale.listing_id:
            return await self._alert(
                "listing_mismatch",
                sale_id=sale.id,
                target_id=pi_id,
                detail={"metadata_listing_id": listing_id, "sale_listing_id": sale.listing_id},
            )

        if sale.status == "completed":
            log.info("sale %s already completed; payment %s is a replay", sale.id, pi_id)
            return SettlementOutcome("duplicate", sale.id)
        if sale.status == "failed":
            # buyer paid for a sale we already released
            return await self._alert(
                "payment_for_closed_sale",
                sale_id=sale.id,
                target_id=pi_id,
                detail={"payment_intent_id": pi_id, "failure_reason": sale.failure_reason},
            )

        problems = self._amount_problems(sale, pi)
        if problems:
            await self.store.conditional_update_sale(sale.id, "pending", {"payment_intent_id": pi_id})
            return await self._alert("amount_mismatch", sale_id=sale.id, target_id=pi_id, detail={"problems": problems})

        profile = await self.store.get_seller_payout_profile(sale.seller_id)
        if profile is None or not profile.is_payout_ready:
            # no claim taken, so a redelivery after the seller is fixed can still settle
            await self.store.conditional_update_sale(sale.id, "pending", {"payment_intent_id": pi_id})
            return await self._alert(
                "seller_payout_unavailable",
                sale_id=sale.id,
                target_id=pi_id,
                detail={"seller_id": sale.seller_id},
            )

        sale_id = sale.id
        payout = await self.store.insert_payout_record(
            PayoutRecord(
                seller_id=sale.seller_id,
                sale_id=sale.id,
                amount_minor=sale.seller_amount_minor,
                currency=sale.currency,
                status="initiated",
                attempts=0,
            )
        )
        if payout is None:
            # the failed claim rolled back the session, so only use captured ids
            existing = await self.store.get_payout_for_sale(sale_id)
            if existing is not None and self._claim_is_stuck(existing):
                return await self._alert(
                    "payout_stuck",
                    sale_id=sale_id,
                    target_id=existing.id,
                    detail={"payout_id": existing.id, "updated_at": existing.updated_at.isoformat()},
                )
            log.info("payout for sale %s already claimed; skipping delivery of %s", sale_id, pi_id)
            return SettlementOutcome("duplicate", sale_id)

        return await self._pay_out(sale, payout, profile, payment_intent_id=pi_id, charge_id=pi.get("latest_charge"))

    async def _pay_out(
        self,
        sale: SaleRecord,
        payout: PayoutRecord,
        profile: SellerPayoutProfile,
        *,
        payment_intent_id: str | None,
        charge_id: str | None,
    ) -> SettlementOutcome:
        attempts = (payout.attempts or 0) + 1
        try:
            transfer = await self.gateway.create_transfer(
                TransferRequest(
                    amount_minor=sale.seller_amount_minor,
                    currency=sale.currency,
                    destination=profile.payout_account_id or "",
                    transfer_group=transfer_group_for(sale.listing_id),
                    idempotency_key=f"sale-transfer-{sale.id}",
                    source_transaction=charge_id if isinstance(charge_id, str) else None,
                    metadata={
                        "sale_id": sale.id,
                        "listing_id": sale.listing_id,
                        "seller_id": sale.seller_id,
                        "buyer_id": sale.buyer_id,
                        "payment_intent_id": payment_intent_id or "",
                    },
                )
            )
        except PaymentProcessorError as e:
            await self.store.update_payout(payout.id, {"status": "failed", "attempts": attempts, "last_error": e.message})
            if payment_intent_id:
                await self.store.conditional_update_sale(sale.id, "pending", {"payment_intent_id": payment_intent_id})
            return await self._alert(
                "transfer_failed",
                sale_id=sale.id,
                target_id=payout.id,
                detail={"payout_id": payout.id, "error": e.message, "processor_code": e.processor_code},
            )

        now = _utcnow()
        await self.store.update_payout(
            payout.id,
            {"status": "completed", "transfer_id": transfer.id, "attempts": attempts, "last_error": None, "processed_at": now},
        )

        sale_patch: dict[str, Any] = {"status": "completed", "transfer_id": transfer.id, "completed_at": now}
        if payment_intent_id:
            sale_patch["payment_intent_id"] = payment_intent_id
        if not await self.store.conditional_update_sale(sale.id, "pending", sale_patch):
            await raise_alert(
                self.store.db,
                reason="sale_not_pending_after_transfer",
                target_type="sale",
                target_id=sale.id,
                detail={"transfer_id": transfer.id},
            )

        sold = await self.store.conditional_update_listing(
            sale.listing_id,
            "pending",
            {
                "sale_status": "sold",
                "sold_at": now,
                "buyer_id": sale.buyer_id,
                "is_for_sale": False,
                "is_visible": False,
            },
        )
        if not sold:
            await raise_alert(
                self.store.db,
                reason="listing_not_pending_after_transfer",
                target_type="listing",
                target_id=sale.listing_id,
                detail={"sale_id": sale.id, "transfer_id": transfer.id},
            )

        await self.store.insert_ledger_entry(
            LedgerEntry(
                entry_type="marketplace_fee",
                sale_id=sale.id,
                user_id=sale.buyer_id,
                amount_minor=sale.marketplace_fee_minor,
                currency=sale.currency,
                external_ref=payment_intent_id,
                description=f"Marketplace fee for listing {sale.listing_id}",
            )
        )
        await self.store.commit()

        log.info("settled sale %s: transfer %s of %d to %s", sale.id, transfer.id, sale.seller_amount_minor, profile.payout_account_id)
        return SettlementOutcome("completed", sale.id)

    def _claim_is_stuck(self, payout: PayoutRecord) -> bool:
        """An initiated claim nobody has touched within the configured window."""
        if payout.status != "initiated" or payout.updated_at is None:
            return False
        cutoff = _utcnow() - timedelta(minutes=self.settings.stuck_payout_minutes)
        return _as_utc(payout.updated_at) <= cutoff

    async def retry_payout(self, payout_id: str) -> SettlementOutcome:
        """
        Manual retry of a failed transfer, or of an initiated claim whose worker
        died before finishing. Reuses the sale's idempotency key, so a transfer
        that did reach the processor is returned rather than repeated.
        """
        payout = await self.store.get_payout(payout_id)
        if payout is None:
            raise NotFound("Payout not found")
        if payout.status != "failed" and not self._claim_is_stuck(payout):
            raise InvalidOperation(f"Payout is {payout.status}, only failed or stuck payouts can be retried")

        sale = await self.store.get_sale(payout.sale_id)
        if sale is None or sale.status != "pending":
            raise InvalidOperation("Sale is no longer awaiting settlement")

        profile = await self.store.get_seller_payout_profile(sale.seller_id)
        if profile is None or not profile.is_payout_ready:
            raise PreconditionFailed("Seller not configured for payouts")

        # attempts doubles as the guard so two operators can't both take the retry
        claimed = await self.store.update_payout(
            payout.id,
            {"status": "initiated", "attempts": (payout.attempts or 0) + 1, "last_error": None},
            expected_status=payout.status,
            expected_attempts=payout.attempts,
        )
        if not claimed:
            raise InvalidOperation("Payout retry already in progress")
        await self.store.commit()

        return await self._pay_out(sale, payout, profile, payment_intent_id=sale.payment_intent_id, charge_id=None)

    # payment_intent.payment_failed

    async def on_payment_failed(self, pi: dict[str, Any]) -> SettlementOutcome:
        sale = await self._locate_sale(pi, by="payment_intent")
        error = (pi.get("last_payment_error") or {}).get("message")
        log.info("payment %s failed for sale %s: %s", pi.get("id"), sale.id if sale else None, error)
        await audit(
            self.store.db,
            actor_id="webhook",
            action="payment.failed",
            target_type="sale",
            target_id=sale.id if sale else pi.get("id"),
            detail={"payment_intent_id": pi.get("id"), "error": error},
        )
        await self.store.commit()
        return SettlementOutcome("recorded", sale.id if sale else None, "payment_failed")

    # checkout.session.completed

    async def on_checkout_completed(self, session: dict[str, Any]) -> SettlementOutcome:
        session_id = session.get("id", "")
        sale = await self._locate_sale(session, by="session")
        if sale is None:
            return await self._alert("unknown_sale", sale_id=None, target_id=session_id, detail={"checkout_session_id": session_id})

        if sale.status == "failed":
            log.info("checkout %s completed for sale %s already failed; nothing to record", session_id, sale.id)
            return SettlementOutcome("skipped", sale.id, sale.status)

        now = _utcnow()
        payment_intent_id = session.get("payment_intent") if isinstance(session.get("payment_intent"), str) else None

        if sale.status == "pending":
            sale_patch: dict[str, Any] = {"checkout_completed_at": now}
            if payment_intent_id:
                sale_patch["payment_intent_id"] = payment_intent_id
            if not await self.store.conditional_update_sale(sale.id, "pending", sale_patch):
                return SettlementOutcome("skipped", sale.id)

            # hidden and off the market, but "sold" waits for the transfer
            await self.store.conditional_update_listing(
                sale.listing_id,
                "pending",
                {
                    "buyer_id": sale.buyer_id,
                    "checkout_completed_at": now,
                    "is_for_sale": False,
                    "is_visible": False,
                },
            )
        elif sale.checkout_completed_at is None:
            # payment settled before this event arrived
            await self.store.conditional_update_sale(sale.id, "completed", {"checkout_completed_at": now})
            await self.store.conditional_update_listing(sale.listing_id, "sold", {"checkout_completed_at": now})

        if session.get("payment_status") == "paid":
            await self.store.insert_ledger_entry(
                LedgerEntry(
                    entry_type="sale_payment",
                    sale_id=sale.id,
                    user_id=sale.buyer_id,
                    amount_minor=int(session.get("amount_total") or sale.sale_price_minor),
                    currency=(session.get("currency") or sale.currency).lower(),
                    external_ref=payment_intent_id,
                    description=f"Domain purchase: {sale.listing_id}",
                )
            )

        sale_id = sale.id
        try:
            await self.store.commit()
        except IntegrityError:
            await self.store.rollback()
            log.info("checkout %s for sale %s recorded by a concurrent delivery", session_id, sale_id)
            return SettlementOutcome("duplicate", sale_id)

        log.info("recorded checkout completion %s for sale %s", session_id, sale_id)
        return SettlementOutcome("recorded", sale_id)

    # checkout.session.expired

    async def on_checkout_expired(self, session: dict[str, Any]) -> SettlementOutcome:
        sale = await self._locate_sale(session, by="session")
        if sale is None:
            log.info("expired checkout %s has no sale record", session.get("id"))
            return SettlementOutcome("ignored")

        released = await release_sale(self.store, sale, reason="checkout_expired")
        await self.store.commit()
        return SettlementOutcome("expired" if released else "skipped", sale.id)


async def release_sale(store: SettlementStore, sale: SaleRecord, *, reason: str) -> bool:
    """Fail a pending sale and put its listing back on the market. Caller commits."""
    if not await store.conditional_update_sale(sale.id, "pending", {"status": "failed", "failure_reason": reason}):
        return False
    await store.conditional_update_listing(sale.listing_id, "pending", {"sale_status": "available"})
    log.info("released sale %s (%s); listing %s available again", sale.id, reason, sale.listing_id)
    return True
