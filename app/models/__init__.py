from app.models.base import Base  # noqa: F401

from app.models.seller import Seller  # noqa: F401
from app.models.listing import Listing  # noqa: F401
from app.models.sale import SaleRecord  # noqa: F401
from app.models.payout import PayoutRecord  # noqa: F401
from app.models.customer import CustomerMapping  # noqa: F401
from app.models.ledger import LedgerEntry  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.audit_log import AuditLog  # noqa: F401
