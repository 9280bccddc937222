"""Pydantic schemas for API validation"""

from app.schemas.user import AuthProvider, UserLogin, UserRegister, UserResponse
from app.schemas.auth import (
    TokenResponse,
    RegistrationResponse,
    RefreshTokenRequest,
    LogoutRequest,
    IdentityAssertion,
    OAuthExchangeResponse,
    SessionSummary,
    AuthProvidersResponse,
    RevocationResponse,
)
from app.schemas.audit import AuditEventResponse

__all__ = [
    "AuthProvider", "UserLogin", "UserRegister", "UserResponse",
    "TokenResponse", "RegistrationResponse", "RefreshTokenRequest", "LogoutRequest",
    "IdentityAssertion", "OAuthExchangeResponse", "SessionSummary", "AuthProvidersResponse",
    "RevocationResponse", "AuditEventResponse",
]
