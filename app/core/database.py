import logging
from functools import wraps

from dotenv import load_dotenv
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.core.errors import TransientFailure

# Load environment variables from .env
load_dotenv()

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    """Engine for the billing tables; SQLite connections are shared with the worker threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


engine = None
SessionLocal = None
if get_settings().DB_URL:
    engine = make_engine(get_settings().DB_URL)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create missing billing tables. Existing tables are never altered."""
    if engine is None:
        logger.warning("DB_URL not set, skipping table creation")
        return
    from app.models import Base
    Base.metadata.create_all(bind=engine, checkfirst=True)


def get_db():
    if SessionLocal is None:
        raise HTTPException(
            status_code=500,
            detail="Database is not configured. Missing DB_URL environment variable."
        )
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def handle_database_errors(func):
    """Map persistence failures of a sync endpoint to 500, exhausted CAS retries to 503."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TransientFailure as e:
            logger.warning("Retryable failure in %s: %s", func.__name__, e)
            raise HTTPException(status_code=503, detail=str(e))
        except SQLAlchemyError as e:
            logger.error("Database error in %s: %s", func.__name__, e)
            raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    return wrapper
