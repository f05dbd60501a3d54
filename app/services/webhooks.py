from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.errors import PersistenceFailure
from app.models.webhook_event import WebhookEvent
from app.services.payments import PaymentGateway
from app.services.settlement import SettlementOutcome, SettlementReconciler
from app.services.store import SettlementStore

log = logging.getLogger(__name__)

DONE_STATUSES = ("processed", "ignored")


async def record_event(db: AsyncSession, event: dict[str, Any]) -> tuple[WebhookEvent, bool]:
    """
    Store a verified event in the inbox.
    Returns (row, is_new); duplicates of an existing id return the stored row.
    """
    existing = await db.get(WebhookEvent, event["id"])
    if existing:
        return existing, False

    row = WebhookEvent(id=event["id"], event_type=event["type"], payload=event, status="received", attempts=0)
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        # same event delivered twice at once
        await db.rollback()
        existing = await db.get(WebhookEvent, event["id"])
        if existing is None:
            raise PersistenceFailure("Failed to record webhook event", detail={"event_id": event["id"]})
        return existing, False
    return row, True


def needs_processing(row: WebhookEvent) -> bool:
    return row.status not in DONE_STATUSES


async def process_webhook_event(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    settings: Settings,
    event_id: str,
    *,
    force: bool = False,
) -> SettlementOutcome | None:
    """
    Run settlement for a stored event in its own session. Failures are stored
    on the inbox row and logged; nothing is retried from here.
    """
    async with session_factory() as db:
        row = await db.get(WebhookEvent, event_id)
        if row is None:
            log.warning("webhook event %s not found", event_id)
            return None
        if not force and not needs_processing(row):
            log.info("webhook event %s already %s", event_id, row.status)
            return None

        event_type = row.event_type
        payload = dict(row.payload)
        reconciler = SettlementReconciler(SettlementStore(db), gateway, settings)
        try:
            outcome = await reconciler.apply(payload)
        except Exception as e:
            await db.rollback()
            log.exception("settlement failed for event %s (%s)", event_id, event_type)
            await _mark(db, event_id, status="failed", last_error=f"{type(e).__name__}: {e}")
            return None

        await _mark(
            db,
            event_id,
            status="ignored" if outcome.action == "ignored" else "processed",
            last_error=outcome.detail if outcome.action == "alert" else None,
        )
        log.info("event %s (%s) -> %s sale=%s", event_id, event_type, outcome.action, outcome.sale_id)
        return outcome


async def _mark(db: AsyncSession, event_id: str, *, status: str, last_error: str | None) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(
            status=status,
            attempts=WebhookEvent.attempts + 1,
            last_error=last_error,
            processed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
