from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.errors import InvalidOperation, NotFound
from app.models.audit_log import AuditLog
from app.models.ledger import LedgerEntry
from app.models.listing import Listing
from app.models.payout import PayoutRecord
from app.models.sale import SaleRecord
from app.services.audit import ALERT_ACTION
from app.services.auth import BuyerIdentity
from app.services.checkout import initiate_checkout
from app.services.settlement import SettlementReconciler
from app.services.store import SettlementStore

from tests.fixtures_seed import BUYER_ID, SELLER_ACCOUNT, fetch, fetch_all, set_seller_payouts


async def _start_checkout(session_factory, gateway, settings, listing_id, *, now=None):
    async with session_factory() as db:
        result = await initiate_checkout(
            store=SettlementStore(db),
            gateway=gateway,
            settings=settings,
            buyer=BuyerIdentity(id=BUYER_ID, email="buyer@example.com"),
            domain_id=listing_id,
            success_url="https://vault.test/ok",
            cancel_url="https://vault.test/cancel",
            now=now,
        )
    _, req = gateway.last_session()
    return result, dict(req.metadata)


def _payment_succeeded(metadata, *, event_id="evt_pi_1", amount=None, pi_id="pi_1"):
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": pi_id,
                "object": "payment_intent",
                "amount": int(metadata["sale_price"]),
                "amount_received": int(metadata["sale_price"]) if amount is None else amount,
                "currency": "usd",
                "latest_charge": "ch_1",
                "metadata": metadata,
            }
        },
    }


def _checkout_event(event_type, session_id, metadata, **extra):
    return {
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {"object": {"id": session_id, "object": "checkout.session", "metadata": metadata, **extra}},
    }


async def _apply(session_factory, gateway, settings, event):
    async with session_factory() as db:
        return await SettlementReconciler(SettlementStore(db), gateway, settings).apply(event)


async def _alerts(session_factory):
    rows = await fetch_all(session_factory, select(AuditLog).where(AuditLog.action == ALERT_ACTION))
    return [r.detail["reason"] for r in rows]


@pytest.mark.asyncio
async def test_payment_succeeded_settles_sale(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.action == "completed"
    assert outcome.sale_id == result.sale_id

    assert len(gateway.transfers) == 1
    transfer_id, req = gateway.transfers[0]
    assert req.amount_minor == 1_485_000
    assert req.destination == SELLER_ACCOUNT
    assert req.transfer_group == f"domain_sale_{listing_id}"
    assert req.idempotency_key == f"sale-transfer-{result.sale_id}"
    assert req.source_transaction == "ch_1"

    sale = await fetch(session_factory, SaleRecord, result.sale_id)
    assert sale.status == "completed"
    assert sale.transfer_id == transfer_id
    assert sale.payment_intent_id == "pi_1"

    listing = await fetch(session_factory, Listing, listing_id)
    assert listing.sale_status == "sold"
    assert listing.buyer_id == BUYER_ID
    assert listing.is_for_sale is False
    assert listing.sold_at is not None

    payouts = await fetch_all(session_factory, select(PayoutRecord))
    assert len(payouts) == 1
    assert payouts[0].status == "completed"
    assert payouts[0].amount_minor == 1_485_000
    assert payouts[0].attempts == 1

    fees = await fetch_all(session_factory, select(LedgerEntry).where(LedgerEntry.entry_type == "marketplace_fee"))
    assert [f.amount_minor for f in fees] == [15_000]


@pytest.mark.asyncio
async def test_replayed_payment_does_not_pay_twice(session_factory, gateway, settings, listing_id):
    _, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    event = _payment_succeeded(meta)

    assert (await _apply(session_factory, gateway, settings, event)).action == "completed"
    second = await _apply(session_factory, gateway, settings, {**event, "id": "evt_pi_2"})
    assert second.action == "duplicate"

    assert gateway.transfer_calls == 1
    assert len(await fetch_all(session_factory, select(PayoutRecord))) == 1


@pytest.mark.asyncio
async def test_existing_claim_blocks_transfer(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    async with session_factory() as db:
        db.add(PayoutRecord(seller_id=meta["seller_id"], sale_id=result.sale_id, amount_minor=1_485_000, status="initiated"))
        await db.commit()

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.action == "duplicate"
    assert gateway.transfer_calls == 0


@pytest.mark.asyncio
async def test_transfer_failure_raises_alert_and_can_be_retried(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    gateway.transfer_error = "Insufficient available balance"

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.action == "alert"
    assert outcome.detail == "transfer_failed"
    assert await _alerts(session_factory) == ["transfer_failed"]

    payout = (await fetch_all(session_factory, select(PayoutRecord)))[0]
    assert payout.status == "failed"
    assert payout.last_error == "Insufficient available balance"

    sale = await fetch(session_factory, SaleRecord, result.sale_id)
    assert sale.status == "pending"
    assert sale.payment_intent_id == "pi_1"
    assert (await fetch(session_factory, Listing, listing_id)).sale_status == "pending"

    gateway.transfer_error = None
    async with session_factory() as db:
        retried = await SettlementReconciler(SettlementStore(db), gateway, settings).retry_payout(payout.id)
    assert retried.action == "completed"

    payout = await fetch(session_factory, PayoutRecord, payout.id)
    assert payout.status == "completed"
    assert payout.attempts == 2
    assert len(gateway.transfers) == 1
    assert (await fetch(session_factory, Listing, listing_id)).sale_status == "sold"


@pytest.mark.asyncio
async def test_retry_payout_rejects_unknown_or_settled(session_factory, gateway, settings, listing_id):
    _, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    payout = (await fetch_all(session_factory, select(PayoutRecord)))[0]

    async with session_factory() as db:
        reconciler = SettlementReconciler(SettlementStore(db), gateway, settings)
        with pytest.raises(NotFound):
            await reconciler.retry_payout("pay_missing")
        with pytest.raises(InvalidOperation):
            await reconciler.retry_payout(payout.id)


@pytest.mark.asyncio
async def test_amount_mismatch_alerts_without_transfer(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta, amount=100))
    assert outcome.action == "alert"
    assert outcome.detail == "amount_mismatch"
    assert gateway.transfer_calls == 0
    assert await fetch_all(session_factory, select(PayoutRecord)) == []
    assert (await fetch(session_factory, SaleRecord, result.sale_id)).status == "pending"


@pytest.mark.asyncio
async def test_tampered_metadata_amounts_alert(session_factory, gateway, settings, listing_id):
    _, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    meta["seller_amount"] = "1500000"

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.detail == "amount_mismatch"
    assert gateway.transfer_calls == 0


@pytest.mark.asyncio
async def test_seller_without_payouts_settles_after_fix(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    await set_seller_payouts(session_factory, enabled=False)

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.detail == "seller_payout_unavailable"
    assert await fetch_all(session_factory, select(PayoutRecord)) == []

    await set_seller_payouts(session_factory, enabled=True)
    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta, event_id="evt_pi_redelivered"))
    assert outcome.action == "completed"
    assert (await fetch(session_factory, SaleRecord, result.sale_id)).status == "completed"


@pytest.mark.asyncio
async def test_unknown_sale_alerts(session_factory, gateway, settings):
    meta = {"sale_id": "sale_missing", "listing_id": "lst_missing", "sale_price": "1000"}
    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.action == "alert"
    assert outcome.detail == "unknown_sale"
    assert gateway.transfer_calls == 0


@pytest.mark.asyncio
async def test_listing_mismatch_alerts(session_factory, gateway, settings, listing_id):
    _, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    meta["listing_id"] = "lst_someone_else"

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.detail == "listing_mismatch"
    assert gateway.transfer_calls == 0


@pytest.mark.asyncio
async def test_events_without_domain_metadata_are_ignored(session_factory, gateway, settings):
    event = {
        "id": "evt_other",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_subscription", "amount_received": 999, "metadata": {}}},
    }
    assert (await _apply(session_factory, gateway, settings, event)).action == "ignored"

    unknown = {"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
    assert (await _apply(session_factory, gateway, settings, unknown)).action == "ignored"


@pytest.mark.asyncio
async def test_checkout_completed_hides_listing_until_paid_out(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)

    event = _checkout_event(
        "checkout.session.completed",
        result.session_id,
        meta,
        payment_intent="pi_1",
        payment_status="paid",
        amount_total=1_500_000,
        currency="usd",
    )
    outcome = await _apply(session_factory, gateway, settings, event)
    assert outcome.action == "recorded"

    listing = await fetch(session_factory, Listing, listing_id)
    assert listing.sale_status == "pending"
    assert listing.is_visible is False
    assert listing.is_for_sale is False
    assert listing.buyer_id == BUYER_ID
    assert listing.checkout_completed_at is not None

    sale = await fetch(session_factory, SaleRecord, result.sale_id)
    assert sale.status == "pending"
    assert sale.payment_intent_id == "pi_1"
    assert sale.checkout_completed_at is not None

    payments = await fetch_all(session_factory, select(LedgerEntry).where(LedgerEntry.entry_type == "sale_payment"))
    assert [p.amount_minor for p in payments] == [1_500_000]
    assert gateway.transfer_calls == 0

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.action == "completed"
    assert (await fetch(session_factory, Listing, listing_id)).sale_status == "sold"


@pytest.mark.asyncio
async def test_checkout_expired_releases_listing(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)

    outcome = await _apply(
        session_factory, gateway, settings, _checkout_event("checkout.session.expired", result.session_id, meta)
    )
    assert outcome.action == "expired"

    sale = await fetch(session_factory, SaleRecord, result.sale_id)
    assert sale.status == "failed"
    assert sale.failure_reason == "checkout_expired"
    assert (await fetch(session_factory, Listing, listing_id)).sale_status == "available"

    # a late payment for the released sale is never paid out automatically
    late = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert late.detail == "payment_for_closed_sale"
    assert gateway.transfer_calls == 0


@pytest.mark.asyncio
async def test_payment_failed_is_recorded_only(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    event = {
        "id": "evt_failed",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_1", "metadata": meta, "last_payment_error": {"message": "card declined"}}},
    }

    outcome = await _apply(session_factory, gateway, settings, event)
    assert outcome.action == "recorded"

    rows = await fetch_all(session_factory, select(AuditLog).where(AuditLog.action == "payment.failed"))
    assert rows[0].target_id == result.sale_id
    assert rows[0].detail["error"] == "card declined"
    assert (await fetch(session_factory, SaleRecord, result.sale_id)).status == "pending"
    assert (await fetch(session_factory, Listing, listing_id)).sale_status == "pending"


class _RacingStore(SettlementStore):
    """Misses the existing claim on read, as a concurrent delivery would."""

    async def get_payout_for_sale(self, sale_id):
        return None


@pytest.mark.asyncio
async def test_concurrent_claim_loses_on_unique_sale(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    event = _payment_succeeded(meta)

    assert (await _apply(session_factory, gateway, settings, event)).action == "completed"

    # second delivery passed the pending check before the first one committed
    async with session_factory() as db:
        await db.execute(
            SaleRecord.__table__.update().where(SaleRecord.id == result.sale_id).values(status="pending")
        )
        await db.commit()
        outcome = await SettlementReconciler(_RacingStore(db), gateway, settings).apply({**event, "id": "evt_pi_2"})

    assert outcome.action == "duplicate"
    assert outcome.sale_id == result.sale_id
    assert gateway.transfer_calls == 1
    assert len(await fetch_all(session_factory, select(PayoutRecord))) == 1


@pytest.mark.asyncio
async def test_checkout_completed_after_payment_is_still_recorded(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    assert (await _apply(session_factory, gateway, settings, _payment_succeeded(meta))).action == "completed"

    event = _checkout_event(
        "checkout.session.completed",
        result.session_id,
        meta,
        payment_intent="pi_1",
        payment_status="paid",
        amount_total=1_500_000,
        currency="usd",
    )
    outcome = await _apply(session_factory, gateway, settings, event)
    assert outcome.action == "recorded"

    payments = await fetch_all(session_factory, select(LedgerEntry).where(LedgerEntry.entry_type == "sale_payment"))
    assert [p.amount_minor for p in payments] == [1_500_000]

    sale = await fetch(session_factory, SaleRecord, result.sale_id)
    assert sale.status == "completed"
    assert sale.checkout_completed_at is not None

    listing = await fetch(session_factory, Listing, listing_id)
    assert listing.sale_status == "sold"
    assert listing.checkout_completed_at is not None
    assert gateway.transfer_calls == 1


async def _seed_claim(session_factory, meta, sale_id, *, age: timedelta) -> str:
    async with session_factory() as db:
        payout = PayoutRecord(
            seller_id=meta["seller_id"],
            sale_id=sale_id,
            amount_minor=1_485_000,
            status="initiated",
            updated_at=datetime.now(timezone.utc) - age,
        )
        db.add(payout)
        await db.commit()
        return payout.id


@pytest.mark.asyncio
async def test_abandoned_claim_alerts_and_can_be_retried(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    payout_id = await _seed_claim(session_factory, meta, result.sale_id, age=timedelta(hours=1))

    outcome = await _apply(session_factory, gateway, settings, _payment_succeeded(meta))
    assert outcome.action == "alert"
    assert outcome.detail == "payout_stuck"
    assert await _alerts(session_factory) == ["payout_stuck"]
    assert gateway.transfer_calls == 0

    async with session_factory() as db:
        retried = await SettlementReconciler(SettlementStore(db), gateway, settings).retry_payout(payout_id)
    assert retried.action == "completed"
    assert gateway.transfer_calls == 1

    payout = await fetch(session_factory, PayoutRecord, payout_id)
    assert payout.status == "completed"
    assert payout.attempts == 1
    assert (await fetch(session_factory, SaleRecord, result.sale_id)).status == "completed"


@pytest.mark.asyncio
async def test_fresh_claim_cannot_be_retried(session_factory, gateway, settings, listing_id):
    result, meta = await _start_checkout(session_factory, gateway, settings, listing_id)
    payout_id = await _seed_claim(session_factory, meta, result.sale_id, age=timedelta(0))

    async with session_factory() as db:
        with pytest.raises(InvalidOperation):
            await SettlementReconciler(SettlementStore(db), gateway, settings).retry_payout(payout_id)
    assert gateway.transfer_calls == 0
