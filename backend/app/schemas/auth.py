"""Token exchange schemas"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.user import AuthProvider, UserResponse


class TokenResponse(BaseModel):
    """Token pair handed to the client"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime
    user: Optional[UserResponse] = None


class RegistrationResponse(TokenResponse):
    is_new_user: bool
    message: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, max_length=4096)


class IdentityAssertion(BaseModel):
    """Identity vouched for by an external provider after a completed OAuth flow"""
    email: str = Field(..., min_length=3, max_length=320)
    provider: AuthProvider
    provider_id: str = Field(..., min_length=1, max_length=255)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    picture: Optional[str] = Field(None, max_length=1024)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("provider")
    @classmethod
    def external_provider_only(cls, v):
        if v == AuthProvider.EMAIL:
            raise ValueError("email is not an external identity provider")
        return v


class OAuthExchangeResponse(TokenResponse):
    is_new_user: bool
    account_linked: bool


class SessionSummary(BaseModel):
    active_sessions: int


class AuthProvidersResponse(BaseModel):
    providers: List[str]
    provider_ids: Dict[str, str]
    has_password: bool


class RevocationResponse(BaseModel):
    success: bool = True
    revoked: int
    message: str
