from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Index, UniqueConstraint
from .subscription import Base


class CheckoutSession(Base):
    """
    Checkout intents started by an account. Used by reconciliation to detect
    checkouts that completed at the provider without a webhook reaching us.
    Never read by the subscription write path.
    """
    __tablename__ = "checkout_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(20), nullable=False)
    session_id = Column(String(255), nullable=False)
    account_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="pending")   # pending|completed|expired
    checkout_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "session_id", name="uq_checkout_session_ref"),
        Index("idx_checkout_sessions_status_created", "status", "created_at"),
    )
