from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from app.core.ids import gen_id
from app.models.base import Base, AuditMixin


class Listing(AuditMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_seller", "seller_id"),
        Index("ix_listings_sale_status", "sale_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lst"))

    # domain name, e.g. "example.com"
    name: Mapped[str] = mapped_column(String(253), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)

    seller_id: Mapped[str] = mapped_column(String, ForeignKey("sellers.id"), nullable=False)

    # display price in currency units; settlement works in minor units
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    verification_status: Mapped[str] = mapped_column(String(20), nullable=False, default="unverified")
    is_for_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # "available" | "pending" | "sold"; only settlement code writes this
    sale_status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")

    buyer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    checkout_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_purchasable(self) -> bool:
        return self.is_for_sale and self.sale_status == "available" and self.verification_status == "verified"
