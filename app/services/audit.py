from __future__ import annotations
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from app.models.audit_log import AuditLog

log = logging.getLogger(__name__)

ALERT_ACTION = "settlement.alert"


async def audit(
    db: AsyncSession,
    *,
    actor_id: str | None,
    action: str,
    target_type: str | None = None,
    target_id: str | None = None,
    detail: dict | None = None,
) -> None:
    db.add(AuditLog(
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        detail=detail or {},
    ))


async def raise_alert(
    db: AsyncSession,
    *,
    reason: str,
    target_type: str,
    target_id: str,
    detail: dict | None = None,
    actor_id: str = "webhook",
) -> None:
    """Record a condition that needs manual reconciliation. Caller commits."""
    log.error("settlement alert [%s] %s %s: %s", reason, target_type, target_id, detail or {})
    await audit(
        db,
        actor_id=actor_id,
        action=ALERT_ACTION,
        target_type=target_type,
        target_id=target_id,
        detail={"reason": reason, **(detail or {})},
    )
