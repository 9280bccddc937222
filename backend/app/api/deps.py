"""API dependencies - authentication, authorization and client context"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config import settings
from app.core.database import get_db
from app.core.exceptions import AuthorizationError, CredentialInvalidError, ResourceNotFoundError
from app.core.session_context import ClientInfo
from app.models.user import User
from app.services.token_service import token_service
from app.services.user_service import user_service

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme; missing headers are reported as invalid credentials
security = HTTPBearer(auto_error=False)


def get_client_info(request: Request) -> ClientInfo:
    """Client IP and user agent as seen by this service, truncated for storage"""
    return ClientInfo.build(
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Get current authenticated user from the bearer access token

    Raises:
        CredentialInvalidError: Missing/invalid token, or the user is gone or disabled
    """
    if credentials is None:
        raise CredentialInvalidError("missing_access_token")

    claims = token_service.verify_access_token(credentials.credentials)
    if claims is None:
        raise CredentialInvalidError("invalid_access_token")

    user = user_service.get_user_by_id(db, claims.subject_id)
    if not user or not user.is_active:
        logger.info("Access token presented for missing or disabled user %s", claims.subject_id)
        raise CredentialInvalidError("user_inactive")

    return user


def get_current_admin_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if current_user.role != "admin":
        raise AuthorizationError("Admin access required")
    return current_user


def require_identity_bridge(
    x_identity_bridge_key: Optional[str] = Header(None)
) -> None:
    """
    Gate for identity assertions submitted by the OAuth callback layer

    The route is reported as missing when no bridge key is configured.
    """
    expected = settings.IDENTITY_BRIDGE_KEY
    if not expected:
        raise ResourceNotFoundError("Endpoint")
    if not x_identity_bridge_key or not hmac.compare_digest(
        x_identity_bridge_key.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Identity assertion rejected: bad bridge key")
        raise AuthorizationError("Invalid identity bridge key")
