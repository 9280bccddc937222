"""Authentication routes"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_client_info, get_current_user, require_identity_bridge
from app.config import settings
from app.core.database import get_db
from app.core.session_context import ClientInfo
from app.models.user import User
from app.schemas.auth import (
    AuthProvidersResponse,
    IdentityAssertion,
    LogoutRequest,
    OAuthExchangeResponse,
    RefreshTokenRequest,
    RegistrationResponse,
    RevocationResponse,
    SessionSummary,
    TokenResponse,
)
from app.schemas.user import AuthProvider, UserLogin, UserRegister, UserResponse
from app.services.entitlement_service import entitlement_service
from app.services.identity_service import identity_service
from app.services.rate_limiter import rate_limiter
from app.services.token_service import TokenPair, token_service
from app.services.user_service import user_service

router = APIRouter()


def _token_fields(pair: TokenPair, user: Optional[User] = None) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "token_type": pair.token_type,
        "expires_in": pair.expires_in,
        "expires_at": pair.expires_at,
        "user": UserResponse.model_validate(user) if user is not None else None,
    }


@router.post("/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register(
    data: UserRegister,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """
    Register with email and password

    An existing account that only signs in through an external provider
    gets the password attached instead.
    """
    rate_limiter.enforce(
        "registration",
        client.ip_address or "unknown",
        [(settings.REGISTER_RATE_LIMIT_PER_HOUR, 3600)],
    )

    user, is_new = user_service.register_user(db, data, client)
    if is_new:
        entitlement_service.apply_default_plan(db, user)

    pair = token_service.issue_initial_session(db, user.id, client)
    return RegistrationResponse(
        **_token_fields(pair, user),
        is_new_user=is_new,
        message="Account created" if is_new else "Password added to existing account",
    )


@router.post("/login", response_model=TokenResponse)
def login(
    credentials: UserLogin,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """Authenticate with email and password and start a new session"""
    rate_limiter.enforce(
        "login",
        f"{client.ip_address or 'unknown'}:{credentials.email}",
        [
            (settings.LOGIN_RATE_LIMIT_PER_MINUTE, 60),
            (settings.LOGIN_RATE_LIMIT_PER_HOUR, 3600),
        ],
    )

    user = user_service.authenticate_user(db, credentials.email, credentials.password)
    pair = token_service.issue_initial_session(db, user.id, client)
    return TokenResponse(**_token_fields(pair, user))


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(
    req: RefreshTokenRequest,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """Rotate a refresh token; the presented token stops working"""
    rate_limiter.enforce(
        "refresh",
        client.ip_address or "unknown",
        [
            (settings.REFRESH_RATE_LIMIT_PER_MINUTE, 60),
            (settings.REFRESH_RATE_LIMIT_PER_HOUR, 3600),
        ],
    )

    pair = token_service.rotate(db, req.refresh_token, client)
    return TokenResponse(**_token_fields(pair))


@router.post("/logout", response_model=RevocationResponse)
def logout(
    body: Optional[LogoutRequest] = None,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """End the session behind a refresh token; unknown tokens are not an error"""
    revoked = False
    if body and body.refresh_token:
        revoked = token_service.revoke_session(db, body.refresh_token, client=client)

    return RevocationResponse(
        revoked=1 if revoked else 0,
        message="Logged out successfully",
    )


@router.post("/logout-all", response_model=RevocationResponse)
def logout_everywhere(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Revoke every refresh token of the current user"""
    count = token_service.revoke_all_sessions(db, current_user.id, "logout_everywhere")
    return RevocationResponse(revoked=count, message="Logged out from all devices")


@router.post("/oauth/exchange", response_model=OAuthExchangeResponse, dependencies=[Depends(require_identity_bridge)])
def oauth_exchange(
    assertion: IdentityAssertion,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """Exchange a provider-verified identity for a token pair"""
    resolution = identity_service.resolve(db, assertion, client)
    return OAuthExchangeResponse(
        **_token_fields(resolution.tokens, resolution.user),
        is_new_user=resolution.is_new_user,
        account_linked=resolution.account_linked,
    )


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    return UserResponse.model_validate(current_user)


@router.get("/sessions", response_model=SessionSummary)
def get_active_sessions(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return SessionSummary(active_sessions=token_service.count_active_sessions(db, current_user.id))


@router.get("/providers", response_model=AuthProvidersResponse)
def get_providers(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return AuthProvidersResponse(**identity_service.get_auth_providers(db, current_user.id))


@router.delete("/providers/{provider}", response_model=AuthProvidersResponse)
def unlink_provider(
    provider: AuthProvider,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove a sign-in method; the last one cannot be removed"""
    identity_service.unlink_provider(db, current_user.id, provider.value)
    return AuthProvidersResponse(**identity_service.get_auth_providers(db, current_user.id))
