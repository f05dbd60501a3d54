from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.ids import gen_id
from app.models.base import Base, AuditMixin


class Seller(AuditMixin, Base):
    """Seller payout profile. Owned by onboarding; read-only for settlement."""

    __tablename__ = "sellers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sel"))
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # connected account on the payment processor (acct_...)
    payout_account_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    payout_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
