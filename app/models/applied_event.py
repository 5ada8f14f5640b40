from datetime import datetime
from sqlalchemy import Column, String, DateTime, Index
from .subscription import Base


class AppliedEvent(Base):
    """
    Idempotency ledger — one row per (provider, event_id) ever processed,
    whether it changed the subscription or was ignored.
    """
    __tablename__ = "applied_events"

    provider = Column(String(20), primary_key=True)
    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(50), nullable=False)           # normalized type
    raw_type = Column(String(100), nullable=True)             # provider event name
    account_id = Column(String(64), nullable=True)
    outcome = Column(String(10), nullable=False)              # applied|ignored
    reason = Column(String(50), nullable=True)                # duplicate|stale|terminal|unhandled|...
    raw_payload_hash = Column(String(64), nullable=True)
    occurred_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_applied_events_account", "account_id", "applied_at"),
    )
