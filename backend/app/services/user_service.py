"""User service - user directory and password authentication"""

from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional, Tuple
from datetime import timedelta
from app.config import settings
from app.core.clock import utcnow
from app.core.session_context import ClientInfo
from app.models.user import User
from app.schemas.user import AuthProvider, UserRegister
from app.core.security import get_password_hash, verify_password
from app.core.exceptions import (
    InvalidCredentialsError,
    AccountLockedError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError
)
import logging

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "first_name",
    "last_name",
    "profile_picture",
    "auth_providers",
    "provider_ids",
    "is_email_verified",
    "email_verified_at",
    "password_hash",
    "plan",
    "trial_started_at",
    "trial_ends_at",
    "role",
    "is_active",
    "last_login",
}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class UserService:
    """Service for user management"""

    LOCKOUT_DURATION_MINUTES = 15
    MAX_FAILED_ATTEMPTS = 5

    @staticmethod
    def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == str(user_id)).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by email (trimmed, case-insensitive)"""
        normalized = normalize_email(email)
        if not normalized:
            return None
        return db.query(User).filter(func.lower(User.email) == normalized).first()

    @staticmethod
    def is_admin_email(email: str) -> bool:
        return normalize_email(email) in set(settings.ADMIN_EMAILS)

    @staticmethod
    def create_user(db: Session, profile: Dict[str, Any]) -> User:
        """
        Create a user record from a profile dict

        Args:
            db: Database session
            profile: Column values; ``email`` is required

        Returns:
            Created user
        """
        email = normalize_email(profile.get("email", ""))
        if not email:
            raise ValueError("email is required")

        user = User(**{**profile, "email": email})
        if user.role is None:
            user.role = "admin" if UserService.is_admin_email(email) else "user"

        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info("Created user: %s (role: %s)", user.id, user.role)
        return user

    @staticmethod
    def update_user(db: Session, user_id: str, patch: Dict[str, Any]) -> User:
        """Apply a partial update; unknown fields are rejected"""
        unknown = set(patch) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        user = UserService.get_user_by_id(db, user_id)
        if not user:
            raise ResourceNotFoundError("User")

        for field, value in patch.items():
            setattr(user, field, value)

        db.commit()
        db.refresh(user)
        return user

    @staticmethod
    def register_user(
        db: Session,
        data: UserRegister,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[User, bool]:
        """
        Register an email/password account

        An existing account created through an external provider and never
        given a password gets the password attached instead of a conflict.

        Returns:
            Tuple of (user, is_new_user)
        """
        client = client or ClientInfo()
        # Hash before any read so no transaction is open during bcrypt work
        password_hash = get_password_hash(data.password)
        existing = UserService.get_user_by_email(db, data.email)
        if existing:
            if existing.password_hash is None and existing.auth_providers:
                providers = list(existing.auth_providers or [])
                if AuthProvider.EMAIL.value not in providers:
                    providers.append(AuthProvider.EMAIL.value)
                user = UserService.update_user(
                    db,
                    existing.id,
                    {"password_hash": password_hash, "auth_providers": providers},
                )
                logger.info("Linked password sign-in to existing account %s", user.id)
                return user, False
            raise ResourceAlreadyExistsError("User")

        user = UserService.create_user(
            db,
            {
                "email": data.email,
                "password_hash": password_hash,
                "first_name": data.first_name,
                "last_name": data.last_name,
                "auth_providers": [AuthProvider.EMAIL.value],
                "provider_ids": {},
                "is_email_verified": False,
                "registration_ip": client.ip_address,
                "registration_user_agent": client.user_agent,
            },
        )
        return user, True

    @staticmethod
    def authenticate_user(db: Session, email: str, password: str) -> User:
        """
        Authenticate user with account lockout protection

        Args:
            db: Database session
            email: Email address
            password: Password

        Returns:
            Authenticated user
        """
        user = UserService.get_user_by_email(db, email)

        if not user or not user.is_active:
            raise InvalidCredentialsError()

        now = utcnow()

        # Check if account is locked
        if user.locked_until and user.locked_until > now:
            raise AccountLockedError(user.locked_until.isoformat())

        # End the read before the bcrypt compare; user reloads afterwards
        password_hash = user.password_hash
        db.commit()
        if not verify_password(password, password_hash):
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1

            if user.failed_login_attempts >= UserService.MAX_FAILED_ATTEMPTS:
                user.locked_until = now + timedelta(minutes=UserService.LOCKOUT_DURATION_MINUTES)
                db.commit()
                logger.warning("Account locked for user: %s", user.id)
                raise AccountLockedError(user.locked_until.isoformat())

            db.commit()
            raise InvalidCredentialsError()

        # Reset failed attempts on successful login
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = now
        db.commit()

        logger.info("User authenticated: %s", user.id)
        return user

    @staticmethod
    def ensure_admin_user(db: Session, email: str, password: str) -> Optional[User]:
        """Create the bootstrap admin account if it does not exist yet"""
        password_hash = get_password_hash(password)
        if UserService.get_user_by_email(db, email):
            return None
        return UserService.create_user(
            db,
            {
                "email": email,
                "password_hash": password_hash,
                "auth_providers": [AuthProvider.EMAIL.value],
                "provider_ids": {},
                "role": "admin",
                "is_email_verified": True,
                "email_verified_at": utcnow(),
            },
        )


# Singleton instance
user_service = UserService()
