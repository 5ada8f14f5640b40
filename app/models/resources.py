from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from .subscription import Base


class Website(Base):
    """Website connected to an account (crawling lives elsewhere)."""
    __tablename__ = "websites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    url = Column(String(255), nullable=False)
    title = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Chatbot(Base):
    """Chatbot attached to a website."""
    __tablename__ = "chatbots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    website_id = Column(Integer, nullable=True, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
