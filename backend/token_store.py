import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PersistenceWriteFailed
from .models import Token
from .token_guardian import Credential

logger = logging.getLogger(__name__)

class SqlTokenStore:
    """Token store backed by the ``tokens`` table, keyed by local user id."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, subject: int) -> Optional[Credential]:
        token_entry = self.db.query(Token).filter(Token.user_id == subject).first()
        if not token_entry:
            return None
        return Credential(
            subject=subject,
            access_token=token_entry.access_token,
            refresh_token=token_entry.refresh_token,
            expires_at=token_entry.expires_at,
        )

    def update(self, subject: int, access_token: str, refresh_token: str, expires_at: int) -> None:
        try:
            token_entry = self.db.query(Token).filter(Token.user_id == subject).first()
            if not token_entry:
                raise PersistenceWriteFailed(f"No token row for user {subject}")

            token_entry.access_token = access_token
            token_entry.refresh_token = refresh_token
            token_entry.expires_at = expires_at
            self.db.add(token_entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceWriteFailed(f"Could not store refreshed tokens for user {subject}: {e}") from e

    def upsert(self, subject: int, access_token: str, refresh_token: str, expires_at: int,
               scope: Optional[str] = None) -> None:
        """Insert or overwrite the credential after an authorization-code exchange."""
        token_entry = self.db.query(Token).filter(Token.user_id == subject).first()
        if not token_entry:
            token_entry = Token(user_id=subject)
        token_entry.access_token = access_token
        token_entry.refresh_token = refresh_token
        token_entry.expires_at = expires_at
        token_entry.scope = scope
        self.db.add(token_entry)
        self.db.commit()
