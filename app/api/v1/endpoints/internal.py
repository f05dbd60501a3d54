from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.models.audit_log import AuditLog
from app.schemas.internal import AlertOut, ExpireStaleOut, SettlementOutcomeOut
from app.services.audit import ALERT_ACTION
from app.services.expiry import expire_stale_sales
from app.services.internal_admin import require_internal_admin
from app.services.settlement import SettlementReconciler
from app.services.store import SettlementStore
from app.services.webhooks import process_webhook_event

router = APIRouter(prefix="/internal", dependencies=[Depends(require_internal_admin)])


@router.post("/sales/expire-stale", response_model=ExpireStaleOut)
async def internal_expire_stale_sales(request: Request, db: AsyncSession = Depends(get_db)) -> ExpireStaleOut:
    count = await expire_stale_sales(SettlementStore(db), request.app.state.services.payments)
    return ExpireStaleOut(expired=count)


@router.post("/webhook-events/{event_id}/replay", response_model=SettlementOutcomeOut)
async def internal_replay_webhook_event(event_id: str, request: Request) -> SettlementOutcomeOut:
    services = request.app.state.services
    outcome = await process_webhook_event(
        services.session_factory,
        services.payments,
        request.app.state.settings,
        event_id,
        force=True,
    )
    if outcome is None:
        raise HTTPException(status_code=409, detail="Event not found or settlement failed; see logs")
    return SettlementOutcomeOut(action=outcome.action, sale_id=outcome.sale_id, detail=outcome.detail)


@router.post("/payouts/{payout_id}/retry", response_model=SettlementOutcomeOut)
async def internal_retry_payout(payout_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> SettlementOutcomeOut:
    reconciler = SettlementReconciler(SettlementStore(db), request.app.state.services.payments, request.app.state.settings)
    outcome = await reconciler.retry_payout(payout_id)
    return SettlementOutcomeOut(action=outcome.action, sale_id=outcome.sale_id, detail=outcome.detail)


@router.get("/alerts", response_model=list[AlertOut])
async def internal_list_alerts(limit: int = 100, db: AsyncSession = Depends(get_db)) -> list[AlertOut]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.action == ALERT_ACTION)
        .order_by(AuditLog.created_at.desc())
        .limit(min(max(limit, 1), 500))
    )
    rows = (await db.execute(stmt)).scalars().all()
    return [
        AlertOut(id=r.id, target_type=r.target_type, target_id=r.target_id, detail=r.detail, created_at=r.created_at)
        for r in rows
    ]
