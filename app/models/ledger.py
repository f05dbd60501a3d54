from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.ids import gen_id
from app.models.base import Base, AuditMixin


class LedgerEntry(AuditMixin, Base):
    """Audit line item for money movements tied to a sale."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("entry_type", "sale_id", name="uq_ledger_entry_type_sale"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("led"))

    # "sale_payment" | "marketplace_fee"
    entry_type: Mapped[str] = mapped_column(String(40), nullable=False)
    sale_id: Mapped[str] = mapped_column(String, ForeignKey("sale_records.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)

    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
