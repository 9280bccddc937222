"""Database models"""

from app.models.user import User
from app.models.refresh_token import RefreshToken
from app.models.audit import AuditEvent

__all__ = ["User", "RefreshToken", "AuditEvent"]
