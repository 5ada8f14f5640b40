import hashlib
import secrets
from datetime import datetime
from typing import Tuple

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from .subscription import Base


class GlobalApiKey(Base):
    """
    API key a dashboard or chat backend uses to act for one account.
    Only the SHA-256 of the key is stored; the plain key is shown once.
    """
    __tablename__ = "global_api_keys"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(64), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    hashed_key = Column(String(64), unique=True, index=True, nullable=False)
    prefix = Column(String(16), nullable=False)  # shown in listings
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)

    @staticmethod
    def hash_key(plain_key: str) -> str:
        return hashlib.sha256(plain_key.encode()).hexdigest()

    @classmethod
    def issue(cls, account_id: str, name: str) -> Tuple[str, "GlobalApiKey"]:
        """New key for an account: (plain key, unsaved row)."""
        plain_key = secrets.token_urlsafe(32)
        row = cls(
            account_id=account_id,
            name=name,
            hashed_key=cls.hash_key(plain_key),
            prefix=plain_key[:8],
            is_active=True,
        )
        return plain_key, row
