from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.models import Chatbot, Website


class ResourceRepository:
    """Counts of an account's quota-bound resources (websites, chatbots)."""

    _MODELS = {
        "website": Website,
        "chatbot": Chatbot,
    }

    def __init__(self, db: Session):
        self.db = db

    def count(self, account_id: str, kind: str) -> int:
        model = self._MODELS.get(kind)
        if model is None:
            raise ValidationError(f"'{kind}' is not a countable resource")
        return self.db.execute(
            select(func.count()).select_from(model).where(model.account_id == account_id)
        ).scalar_one()

    def counts(self, account_id: str) -> dict:
        return {kind: self.count(account_id, kind) for kind in self._MODELS}
