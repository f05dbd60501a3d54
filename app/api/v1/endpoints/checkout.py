from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.schemas.checkout import DomainPurchaseRequest, DomainPurchaseResponse
from app.schemas.common import ErrorResponse
from app.services.auth import BuyerIdentity, get_buyer
from app.services.checkout import initiate_checkout
from app.services.store import SettlementStore

router = APIRouter()


@router.post(
    "/checkout/domain-purchase",
    response_model=DomainPurchaseResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def create_domain_purchase(
    payload: DomainPurchaseRequest,
    request: Request,
    buyer: BuyerIdentity = Depends(get_buyer),
    db: AsyncSession = Depends(get_db),
) -> DomainPurchaseResponse:
    result = await initiate_checkout(
        store=SettlementStore(db),
        gateway=request.app.state.services.payments,
        settings=request.app.state.settings,
        buyer=buyer,
        domain_id=payload.domain_id,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return DomainPurchaseResponse(sessionId=result.session_id, url=result.url)
