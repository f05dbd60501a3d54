import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from worker.celery_app import celery
from app.core.config import settings
import app.models  # noqa: F401  # ensures Models are registered
from app.services.expiry import expire_stale_sales as run_expiry_sweep
from app.services.payments import StripeGateway
from app.services.store import SettlementStore
from app.services.webhooks import process_webhook_event

log = logging.getLogger(__name__)


def _gateway() -> StripeGateway:
    return StripeGateway(
        api_key=settings.stripe_secret_key.get_secret_value(),
        webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
        webhook_tolerance=settings.webhook_tolerance_seconds,
    )


async def _expire_stale_sales(batch_size: int) -> int:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with Session() as db:
            return await run_expiry_sweep(SettlementStore(db), _gateway(), batch_size=batch_size)
    finally:
        await engine.dispose()


async def _replay_webhook_event(event_id: str) -> str | None:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    try:
        outcome = await process_webhook_event(Session, _gateway(), settings, event_id, force=True)
    finally:
        await engine.dispose()
    return outcome.action if outcome else None


@celery.task(name="worker.tasks.expire_stale_sales")
def expire_stale_sales(batch_size: int = 100) -> int:
    released = asyncio.run(_expire_stale_sales(batch_size))
    if released:
        log.info("released %d stale pending sales", released)
    return released


@celery.task(name="worker.tasks.replay_webhook_event")
def replay_webhook_event(event_id: str) -> str | None:
    return asyncio.run(_replay_webhook_event(event_id))
