from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.errors import PaymentProcessorError
from app.services.audit import audit
from app.services.payments import PaymentGateway
from app.services.settlement import release_sale
from app.services.store import SettlementStore

log = logging.getLogger(__name__)


async def expire_stale_sales(
    store: SettlementStore,
    gateway: PaymentGateway,
    *,
    now: datetime | None = None,
    batch_size: int = 100,
) -> int:
    """
    Put listings stuck in a pending sale back on the market.

    A sale is stale once its checkout window has passed without the processor
    reporting a completed checkout. The processor session is expired first; if
    the buyer has in fact paid ("complete"), the sale is left for the webhooks.
    """
    now = now or datetime.now(timezone.utc)
    stale = await store.list_stale_pending_sales(now=now, limit=batch_size)

    released = 0
    for sale in stale:
        try:
            status = await gateway.expire_checkout_session(sale.checkout_session_id)
        except PaymentProcessorError as e:
            log.warning("stale sale %s: could not reach processor: %s", sale.id, e.message)
            continue
        if status != "expired":
            log.warning("stale sale %s kept: checkout session %s is %s", sale.id, sale.checkout_session_id, status)
            continue

        if await release_sale(store, sale, reason="expired"):
            await audit(
                store.db,
                actor_id="sweeper",
                action="sale.expired",
                target_type="sale",
                target_id=sale.id,
                detail={"listing_id": sale.listing_id, "checkout_session_id": sale.checkout_session_id},
            )
            released += 1
        await store.commit()

    if stale:
        log.info("expiry sweep: %d stale, %d released", len(stale), released)
    return released
