from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models import GlobalApiKey

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class ApiKeyData:
    """Simple data class to hold API key information without SQLAlchemy session dependency."""
    def __init__(self, id: int, account_id: str, name: str, prefix: str, is_active: bool,
                 created_at: datetime, last_used_at: Optional[datetime]):
        self.id = id
        self.account_id = account_id
        self.name = name
        self.prefix = prefix
        self.is_active = is_active
        self.created_at = created_at
        self.last_used_at = last_used_at


async def get_api_key(
    api_key: Optional[str] = Security(api_key_header),
    db: Session = Depends(get_db),
) -> ApiKeyData:
    """Resolve the X-API-Key header to the account it acts for."""
    if not api_key:
        raise HTTPException(status_code=401, detail="Authentication required")

    key_record = db.query(GlobalApiKey).filter(
        GlobalApiKey.hashed_key == GlobalApiKey.hash_key(api_key),
        GlobalApiKey.is_active == True,
    ).first()
    if not key_record:
        raise HTTPException(status_code=403, detail="Invalid API Key")

    key_record.last_used_at = datetime.utcnow()
    db.commit()

    return ApiKeyData(
        id=key_record.id,
        account_id=key_record.account_id,
        name=key_record.name,
        prefix=key_record.prefix,
        is_active=key_record.is_active,
        created_at=key_record.created_at,
        last_used_at=key_record.last_used_at,
    )
