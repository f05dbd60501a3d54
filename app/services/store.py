from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, PersistenceFailure
from app.models.customer import CustomerMapping
from app.models.ledger import LedgerEntry
from app.models.listing import Listing
from app.models.payout import PayoutRecord
from app.models.sale import SaleRecord
from app.models.seller import Seller

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SellerPayoutProfile:
    seller_id: str
    payout_account_id: str | None
    payout_enabled: bool

    @property
    def is_payout_ready(self) -> bool:
        return bool(self.payout_enabled and self.payout_account_id)


class SettlementStore:
    """
    Persistence boundary for checkout and settlement.

    Every status transition is a single conditional UPDATE guarded by the
    expected current status; callers branch on the returned bool and never
    assume they are the only writer for a record.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    # listings

    async def get_listing(self, listing_id: str) -> Listing | None:
        stmt = select(Listing).where(Listing.id == listing_id).execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_available_listing(self, listing_id: str) -> Listing | None:
        listing = await self.get_listing(listing_id)
        if listing is None or not listing.is_purchasable:
            return None
        return listing

    async def conditional_update_listing(self, listing_id: str, expected_status: str, patch: dict[str, Any]) -> bool:
        result = await self.db.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.sale_status == expected_status)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        landed = (result.rowcount or 0) == 1
        if not landed:
            log.info("listing %s: skipped update, sale_status is no longer %r", listing_id, expected_status)
        return landed

    # sale records

    async def insert_sale_record(self, sale: SaleRecord) -> SaleRecord:
        self.db.add(sale)
        await self.db.flush()
        return sale

    async def get_sale(self, sale_id: str) -> SaleRecord | None:
        stmt = select(SaleRecord).where(SaleRecord.id == sale_id).execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def find_sale_by_payment_intent(self, payment_intent_id: str) -> SaleRecord | None:
        stmt = (
            select(SaleRecord)
            .where(SaleRecord.payment_intent_id == payment_intent_id)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def find_sale_by_checkout_session(self, checkout_session_id: str) -> SaleRecord | None:
        stmt = (
            select(SaleRecord)
            .where(SaleRecord.checkout_session_id == checkout_session_id)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def conditional_update_sale(self, sale_id: str, expected_status: str, patch: dict[str, Any]) -> bool:
        result = await self.db.execute(
            update(SaleRecord)
            .where(SaleRecord.id == sale_id, SaleRecord.status == expected_status)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        landed = (result.rowcount or 0) == 1
        if not landed:
            log.info("sale %s: skipped update, status is no longer %r", sale_id, expected_status)
        return landed

    async def create_pending_sale(self, sale: SaleRecord) -> SaleRecord:
        """
        Insert the pending sale and move its listing available -> pending as one
        unit. Nothing is left behind if either write fails.
        """
        try:
            moved = await self.conditional_update_listing(sale.listing_id, "available", {"sale_status": "pending"})
            if not moved:
                # another checkout took the listing first
                await self.db.rollback()
                raise NotFound("Domain not found or not available for sale", detail={"listing_id": sale.listing_id})
            await self.insert_sale_record(sale)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log.exception("failed to persist pending sale for listing %s", sale.listing_id)
            raise PersistenceFailure("Failed to create sale record", detail={"listing_id": sale.listing_id}) from e
        return sale

    async def list_stale_pending_sales(self, *, now: datetime, limit: int = 100) -> list[SaleRecord]:
        stmt = (
            select(SaleRecord)
            .where(
                SaleRecord.status == "pending",
                SaleRecord.checkout_completed_at.is_(None),
                SaleRecord.expires_at <= now,
            )
            .order_by(SaleRecord.expires_at.asc())
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    # payouts

    async def get_payout(self, payout_id: str) -> PayoutRecord | None:
        stmt = select(PayoutRecord).where(PayoutRecord.id == payout_id).execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_payout_for_sale(self, sale_id: str) -> PayoutRecord | None:
        stmt = select(PayoutRecord).where(PayoutRecord.sale_id == sale_id).execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def insert_payout_record(self, payout: PayoutRecord) -> PayoutRecord | None:
        """
        Claim the payout for a sale. Returns None when another delivery already
        holds the claim (unique sale_id). Commits on success.
        """
        if await self.get_payout_for_sale(payout.sale_id) is not None:
            return None
        self.db.add(payout)
        try:
            await self.db.commit()
        except IntegrityError:
            # lost the race to a concurrent delivery
            await self.db.rollback()
            return None
        return payout

    async def update_payout(
        self,
        payout_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_attempts: int | None = None,
    ) -> bool:
        stmt = update(PayoutRecord).where(PayoutRecord.id == payout_id)
        if expected_status is not None:
            stmt = stmt.where(PayoutRecord.status == expected_status)
        if expected_attempts is not None:
            stmt = stmt.where(PayoutRecord.attempts == expected_attempts)
        result = await self.db.execute(stmt.values(**patch).execution_options(synchronize_session=False))
        return (result.rowcount or 0) == 1

    # sellers / customers

    async def get_seller_payout_profile(self, seller_id: str) -> SellerPayoutProfile | None:
        seller = (await self.db.execute(select(Seller).where(Seller.id == seller_id))).scalar_one_or_none()
        if not seller:
            return None
        return SellerPayoutProfile(
            seller_id=seller.id,
            payout_account_id=seller.payout_account_id,
            payout_enabled=seller.payout_enabled,
        )

    async def get_customer_mapping(self, user_id: str) -> CustomerMapping | None:
        stmt = select(CustomerMapping).where(
            CustomerMapping.user_id == user_id,
            CustomerMapping.deleted_at.is_(None),
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_or_create_customer_mapping(
        self,
        user_id: str,
        create_customer: Callable[[], Awaitable[str]],
    ) -> str:
        """Return the processor customer id for a user, creating it once."""
        existing = await self.get_customer_mapping(user_id)
        if existing:
            return existing.customer_id

        customer_id = await create_customer()
        self.db.add(CustomerMapping(user_id=user_id, customer_id=customer_id))
        try:
            await self.db.commit()
        except IntegrityError:
            # a parallel checkout for the same buyer stored its mapping first
            await self.db.rollback()
            existing = await self.get_customer_mapping(user_id)
            if existing is None:
                raise PersistenceFailure("Failed to create customer mapping", detail={"user_id": user_id})
            log.info("customer mapping for %s created concurrently; using %s", user_id, existing.customer_id)
            return existing.customer_id
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailure("Failed to create customer mapping", detail={"user_id": user_id}) from e
        return customer_id

    # ledger

    async def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        """Add a ledger line unless one of the same type already exists for the sale."""
        stmt = select(LedgerEntry.id).where(
            LedgerEntry.entry_type == entry.entry_type,
            LedgerEntry.sale_id == entry.sale_id,
        )
        if (await self.db.execute(stmt)).scalar_one_or_none() is not None:
            return False
        self.db.add(entry)
        await self.db.flush()
        return True
