from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, UniqueConstraint, CheckConstraint
from .subscription import Base


class UsageCounter(Base):
    """
    Per-account, per-metric usage counter scoped to one billing period.

    ``limit`` is a snapshot of the plan limit taken when the counter row is
    created, so a mid-period plan change never re-judges usage that was
    already granted. Rows of past periods are archived (read-only).
    """
    __tablename__ = "usage_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    metric = Column(String(30), nullable=False)               # conversations|websites|chatbots
    period_start = Column(DateTime, nullable=False)

    used = Column(BigInteger, nullable=False, default=0)
    limit = Column("usage_limit", BigInteger, nullable=False, comment="-1 = unlimited")
    version = Column(Integer, nullable=False, default=1)
    archived = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "metric", "period_start", name="uq_usage_counter_scope"),
        CheckConstraint("used >= 0", name="ck_usage_counter_used_non_negative"),
    )
