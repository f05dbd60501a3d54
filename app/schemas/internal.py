from datetime import datetime

from pydantic import BaseModel


class ExpireStaleOut(BaseModel):
    expired: int


class SettlementOutcomeOut(BaseModel):
    action: str
    sale_id: str | None
    detail: str | None


class AlertOut(BaseModel):
    id: str
    target_type: str | None
    target_id: str | None
    detail: dict
    created_at: datetime
