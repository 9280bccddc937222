"""Security utilities - credential hashing and JWT signing"""

import calendar
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings
from app.core.clock import utcnow
from app.core.exceptions import TokenExpiredError, TokenInvalidError

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


# ---------------------------------------------------------------------------
# Credential hasher
# ---------------------------------------------------------------------------

def _prehash(secret: str) -> bytes:
    # bcrypt only reads 72 bytes; refresh JWTs share a long common prefix.
    return hashlib.sha256(secret.encode("utf-8")).hexdigest().encode("ascii")


def hash_secret(secret: str) -> str:
    """
    Hash a secret (password or refresh token) with bcrypt.

    Deliberately slow. Never call while holding a row lock.

    Args:
        secret: Plain text secret

    Returns:
        str: bcrypt hash
    """
    if not secret or not isinstance(secret, str):
        raise ValueError("Secret must be a non-empty string")
    return bcrypt.hashpw(
        _prehash(secret),
        bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    ).decode("utf-8")


def verify_secret(secret: str, hashed_value: str) -> bool:
    """
    Compare a secret against a stored bcrypt hash in constant time.

    Returns False for empty input or a malformed hash instead of raising.
    """
    if not secret or not hashed_value:
        return False
    try:
        return bcrypt.checkpw(_prehash(secret), hashed_value.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    return verify_secret(plain_password, hashed_password or "")


def get_password_hash(password: str) -> str:
    return hash_secret(password)


# ---------------------------------------------------------------------------
# Token claims
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified access token payload"""
    subject_id: str
    session_id: str
    expires_at: datetime
    email: Optional[str] = None
    role: Optional[str] = None
    plan: Optional[str] = None


@dataclass(frozen=True)
class UntrustedRefreshClaims:
    """
    Refresh token payload read WITHOUT signature verification.

    The only legitimate use is narrowing the candidate search to one user.
    Nothing here may be treated as authoritative.
    """
    claimed_user_id: str


@dataclass(frozen=True)
class RefreshTokenClaims:
    """Verified refresh token payload"""
    subject_id: str
    session_id: str
    token_family: str
    token_id: str
    expires_at: datetime


def _epoch(dt: datetime) -> int:
    return calendar.timegm(dt.utctimetuple())


def _from_epoch(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Access token issuer
# ---------------------------------------------------------------------------

def create_access_token(
    subject_id: str,
    session_id: str,
    expires_delta: Optional[timedelta] = None,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Create a signed, short-lived access token.

    Args:
        subject_id: User id placed in ``sub``
        session_id: Derived session identifier placed in ``sid``
        expires_delta: Token lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES
        extra_claims: Non-authoritative profile claims (email, role, plan)

    Returns:
        str: Encoded JWT
    """
    now = utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode: Dict[str, Any] = dict(extra_claims or {})
    to_encode.update({
        "sub": str(subject_id),
        "sid": session_id,
        "typ": ACCESS_TOKEN_TYPE,
        "iat": _epoch(now),
        "exp": _epoch(expire),
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_access_token(token: str) -> Optional[AccessTokenClaims]:
    """
    Verify an access token.

    Expired, badly signed, malformed and non-access tokens all return None.
    No database access.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"leeway": settings.TOKEN_CLOCK_SKEW_SECONDS},
        )
    except JWTError:
        return None

    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        return None
    subject_id = payload.get("sub")
    session_id = payload.get("sid")
    exp = payload.get("exp")
    if not subject_id or not session_id or exp is None:
        return None

    return AccessTokenClaims(
        subject_id=str(subject_id),
        session_id=str(session_id),
        expires_at=_from_epoch(exp),
        email=payload.get("email"),
        role=payload.get("role"),
        plan=payload.get("plan"),
    )


# ---------------------------------------------------------------------------
# Refresh token signer
# ---------------------------------------------------------------------------

def create_refresh_token(
    subject_id: str,
    session_id: str,
    token_family: str,
    expires_at: datetime,
) -> str:
    """Create a signed refresh token. ``jti`` makes every issued value unique."""
    to_encode = {
        "sub": str(subject_id),
        "sid": session_id,
        "fam": token_family,
        "typ": REFRESH_TOKEN_TYPE,
        "iat": _epoch(utcnow()),
        "exp": _epoch(expires_at),
        "jti": secrets.token_urlsafe(32),
    }
    return jwt.encode(to_encode, settings.REFRESH_SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_untrusted_refresh_token(token: str) -> Optional[UntrustedRefreshClaims]:
    """
    Read the claimed user id from a refresh token without verifying it.

    Returns None when the value is not a structurally valid refresh JWT.
    """
    if not token or not isinstance(token, str):
        return None
    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    if not isinstance(payload, dict):
        return None

    claimed_user_id = payload.get("sub")
    if payload.get("typ") != REFRESH_TOKEN_TYPE or not isinstance(claimed_user_id, str) or not claimed_user_id:
        return None
    return UntrustedRefreshClaims(claimed_user_id=claimed_user_id)


def verify_refresh_token(token: str) -> RefreshTokenClaims:
    """
    Verify refresh token signature and expiry.

    Raises:
        TokenExpiredError: Signature valid but ``exp`` has passed
        TokenInvalidError: Bad signature, wrong type or missing claims
    """
    try:
        payload = jwt.decode(
            token,
            settings.REFRESH_SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"leeway": settings.TOKEN_CLOCK_SKEW_SECONDS},
        )
    except ExpiredSignatureError as exc:
        raise TokenExpiredError("Refresh token expired") from exc
    except JWTError as exc:
        raise TokenInvalidError("Refresh token signature invalid") from exc

    if payload.get("typ") != REFRESH_TOKEN_TYPE:
        raise TokenInvalidError("Not a refresh token")

    try:
        return RefreshTokenClaims(
            subject_id=str(payload["sub"]),
            session_id=str(payload["sid"]),
            token_family=str(payload["fam"]),
            token_id=str(payload["jti"]),
            expires_at=_from_epoch(payload["exp"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalidError("Malformed refresh token claims") from exc
