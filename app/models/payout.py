from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from app.core.ids import gen_id
from app.models.base import Base, AuditMixin


class PayoutRecord(AuditMixin, Base):
    __tablename__ = "payout_records"
    __table_args__ = (
        # one payout per sale; inserting the row is the settlement claim
        UniqueConstraint("sale_id", name="uq_payout_sale"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("pay"))
    seller_id: Mapped[str] = mapped_column(String, ForeignKey("sellers.id"), nullable=False)
    sale_id: Mapped[str] = mapped_column(String, ForeignKey("sale_records.id"), nullable=False)

    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    transfer_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # "initiated" | "completed" | "failed"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="initiated")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
