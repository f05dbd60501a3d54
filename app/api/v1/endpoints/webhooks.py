import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.errors import AuthenticationFailed
from app.schemas.webhook import WebhookAck
from app.services.webhooks import needs_processing, process_webhook_event, record_event

log = logging.getLogger(__name__)

router = APIRouter()


@router.options("/webhooks/stripe", status_code=204)
async def stripe_webhook_preflight() -> Response:
    return Response(status_code=204)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    services = request.app.state.services
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    # nothing is written before this check passes
    try:
        event = services.payments.verify_webhook(payload, signature)
    except AuthenticationFailed as e:
        log.warning(
            "security: rejected webhook from %s: %s",
            request.client.host if request.client else "unknown",
            e.message,
        )
        raise

    row, is_new = await record_event(db, event)
    if not is_new and not needs_processing(row):
        log.info("duplicate delivery of %s (%s); already %s", row.id, row.event_type, row.status)
        return WebhookAck()

    # acknowledge now, settle after the response is sent
    background.add_task(
        process_webhook_event,
        services.session_factory,
        services.payments,
        request.app.state.settings,
        event["id"],
    )
    return WebhookAck()
