from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.core.ids import gen_id
from app.models.listing import Listing
from app.models.seller import Seller

SELLER_ID = "usr_seller"
BUYER_ID = "usr_buyer"
SELLER_ACCOUNT = "acct_seller_1"


async def seed_listing(
    session_factory,
    *,
    price: Decimal = Decimal("15000.00"),
    seller_id: str = SELLER_ID,
    payout_enabled: bool = True,
    payout_account_id: str | None = SELLER_ACCOUNT,
    **listing_fields,
) -> str:
    async with session_factory() as db:
        seller = await db.get(Seller, seller_id)
        if seller is None:
            db.add(Seller(
                id=seller_id,
                full_name="Sam Seller",
                payout_account_id=payout_account_id,
                payout_enabled=payout_enabled,
            ))
        fields = {
            "name": f"{gen_id('d')[:12]}.com",
            "description": "Short, brandable domain",
            "verification_status": "verified",
            "is_for_sale": True,
            "sale_status": "available",
            "is_visible": True,
            **listing_fields,
        }
        listing = Listing(seller_id=seller_id, price=price, **fields)
        db.add(listing)
        await db.commit()
        return listing.id


async def fetch(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


async def fetch_all(session_factory, stmt):
    async with session_factory() as db:
        return list((await db.execute(stmt)).scalars().all())


async def set_seller_payouts(session_factory, *, enabled: bool, seller_id: str = SELLER_ID) -> None:
    async with session_factory() as db:
        seller = (await db.execute(select(Seller).where(Seller.id == seller_id))).scalar_one()
        seller.payout_enabled = enabled
        await db.commit()


@pytest_asyncio.fixture
async def listing_id(session_factory):
    return await seed_listing(session_factory)


@pytest.fixture
def buyer_token(identity):
    identity.add("buyer-token", BUYER_ID, "buyer@example.com")
    return "buyer-token"
