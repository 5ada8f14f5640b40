from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from .subscription import Base


class BillingHistory(Base):
    """
    Paid invoices / orders reported by the providers — bookkeeping only,
    written best-effort after the subscription transition.
    """
    __tablename__ = "billing_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    provider_invoice_id = Column(String(255), nullable=True)
    amount_paid = Column(Integer, nullable=True)              # cents
    currency = Column(String(10), nullable=True)
    status = Column(String(20), default="paid")
    billing_period_start = Column(DateTime, nullable=True)
    billing_period_end = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
