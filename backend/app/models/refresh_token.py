"""Refresh token persistence model."""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import validates

from app.core.clock import utcnow
from app.core.database import Base


class RevokedTokenMutationError(ValueError):
    """Raised when code tries to move a record out of the revoked state."""


class RefreshToken(Base):
    """
    Hashed refresh token record.

    The raw token is never stored. Revocation is terminal: once ``is_revoked``
    is True it cannot be set back to False.
    """

    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(255), unique=True, nullable=False)
    token_family = Column(String(36), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    revoked_reason = Column(String(100), nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_refresh_tokens_user_active", "user_id", "is_revoked", "expires_at"),
    )

    @validates("is_revoked")
    def _validate_is_revoked(self, key, value):
        if self.is_revoked and not value:
            raise RevokedTokenMutationError("Revoked refresh tokens cannot be reactivated")
        return value

    def is_active(self, now=None) -> bool:
        return not self.is_revoked and self.expires_at > (now or utcnow())

    def __repr__(self):
        return (
            f"<RefreshToken(id={self.id}, user_id={self.user_id}, "
            f"family={self.token_family}, revoked={self.is_revoked})>"
        )
