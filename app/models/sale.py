from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from app.core.ids import gen_id
from app.models.base import Base, AuditMixin


class SaleRecord(AuditMixin, Base):
    """
    Authoritative record of one buyer/seller transaction for a listing.

    Created pending by checkout, mutated only by settlement, never deleted.
    All amounts are integer minor units.
    """

    __tablename__ = "sale_records"
    __table_args__ = (
        Index("ix_sale_records_listing", "listing_id"),
        Index("ix_sale_records_status_expires", "status", "expires_at"),
        Index("ix_sale_records_payment_intent", "payment_intent_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sale"))

    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id"), nullable=False)
    seller_id: Mapped[str] = mapped_column(String, ForeignKey("sellers.id"), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String, nullable=False)

    sale_price_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    marketplace_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    seller_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    checkout_session_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # "pending" | "completed" | "failed"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    checkout_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
