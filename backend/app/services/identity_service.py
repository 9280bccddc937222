"""Identity linking - maps external provider identities onto user accounts"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import (
    BusinessLogicError,
    CredentialInvalidError,
    IdentityConflictError,
    IdentityResolutionError,
    ResourceNotFoundError,
)
from app.core.session_context import ClientInfo
from app.models.user import User
from app.schemas.auth import IdentityAssertion
from app.schemas.user import AuthProvider
from app.services.audit_service import audit_service
from app.services.entitlement_service import entitlement_service
from app.services.token_service import TokenPair, TokenService, token_service
from app.services.user_service import user_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityResolution:
    user: User
    is_new_user: bool
    account_linked: bool
    tokens: TokenPair


def _provider_name(provider: Any) -> str:
    return provider.value if isinstance(provider, AuthProvider) else str(provider)


class IdentityLinkingService:
    """
    Resolves an identity assertion to exactly one user per email.

    A matching account gets the provider linked and empty profile fields
    filled; otherwise a verified account is created. Tokens are issued only
    after the user directory write has committed.
    """

    def __init__(self, token_authority: Optional[TokenService] = None) -> None:
        self.token_authority = token_authority or token_service

    def resolve(
        self,
        db: Session,
        assertion: IdentityAssertion,
        client: Optional[ClientInfo] = None,
    ) -> IdentityResolution:
        """
        Resolve an external identity and start a session for it.

        Raises:
            IdentityConflictError: Account already bound to another id at this provider
            IdentityResolutionError: User directory write failed; no tokens issued
            CredentialInvalidError: Matching account is disabled
        """
        client = client or ClientInfo()
        provider = _provider_name(assertion.provider)

        user = user_service.get_user_by_email(db, assertion.email)
        is_new_user = False
        account_linked = False

        if user is None:
            user = self._create_from_assertion(db, assertion, provider, client)
            if user is None:
                # Lost a creation race for the same email; link to the winner.
                user = user_service.get_user_by_email(db, assertion.email)
                if user is None:
                    raise IdentityResolutionError()
            else:
                is_new_user = True

        if not is_new_user:
            account_linked = self._link_existing(db, user, assertion, provider, client)
        else:
            entitlement_service.apply_default_plan(db, user)

        pair = self.token_authority.issue_initial_session(db, user.id, client)
        logger.info(
            "Resolved %s identity to user %s (new=%s, linked=%s)",
            provider,
            user.id,
            is_new_user,
            account_linked,
        )
        return IdentityResolution(
            user=user,
            is_new_user=is_new_user,
            account_linked=account_linked,
            tokens=pair,
        )

    def _create_from_assertion(
        self,
        db: Session,
        assertion: IdentityAssertion,
        provider: str,
        client: ClientInfo,
    ) -> Optional[User]:
        now = utcnow()
        profile: Dict[str, Any] = {
            "email": assertion.email,
            "first_name": assertion.first_name,
            "last_name": assertion.last_name,
            "profile_picture": assertion.picture,
            "auth_providers": [provider],
            "provider_ids": {provider: assertion.provider_id},
            "is_email_verified": True,
            "email_verified_at": now,
            "last_login": now,
            "registration_ip": client.ip_address,
            "registration_user_agent": client.user_agent,
        }
        try:
            return user_service.create_user(db, profile)
        except IntegrityError:
            db.rollback()
            return None
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("User directory create failed for %s identity: %s", provider, exc.__class__.__name__)
            raise IdentityResolutionError() from exc

    def _link_existing(
        self,
        db: Session,
        user: User,
        assertion: IdentityAssertion,
        provider: str,
        client: ClientInfo,
    ) -> bool:
        if not user.is_active:
            logger.info("Identity resolution for disabled user %s rejected", user.id)
            raise CredentialInvalidError("user_inactive")

        provider_ids = dict(user.provider_ids or {})
        known_id = provider_ids.get(provider)
        if known_id and known_id != assertion.provider_id:
            logger.warning("Provider id mismatch for user %s at %s", user.id, provider)
            audit_service.record_security_event(
                db,
                user_id=user.id,
                action="identity_conflict",
                target_type="auth_provider",
                target_id=provider,
                ip_address=client.ip_address,
            )
            raise IdentityConflictError()

        providers = list(user.auth_providers or [])
        linked = not user.has_provider(provider)
        if linked:
            providers.append(provider)
        provider_ids[provider] = assertion.provider_id

        now = utcnow()
        patch: Dict[str, Any] = {
            "auth_providers": providers,
            "provider_ids": provider_ids,
            "last_login": now,
        }
        # Never overwrite profile data the user already has
        if not user.first_name and assertion.first_name:
            patch["first_name"] = assertion.first_name
        if not user.last_name and assertion.last_name:
            patch["last_name"] = assertion.last_name
        if not user.profile_picture and assertion.picture:
            patch["profile_picture"] = assertion.picture
        if not user.is_email_verified:
            patch["is_email_verified"] = True
            patch["email_verified_at"] = now

        try:
            user_service.update_user(db, user.id, patch)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("User directory update failed for user %s: %s", user.id, exc.__class__.__name__)
            raise IdentityResolutionError() from exc

        if linked:
            audit_service.record_security_event(
                db,
                user_id=user.id,
                action="account_linked",
                target_type="auth_provider",
                target_id=provider,
                ip_address=client.ip_address,
            )
        return linked

    @staticmethod
    def get_auth_providers(db: Session, user_id: str) -> Dict[str, Any]:
        user = user_service.get_user_by_id(db, user_id)
        if not user:
            raise ResourceNotFoundError("User")
        return {
            "providers": list(user.auth_providers or []),
            "provider_ids": dict(user.provider_ids or {}),
            "has_password": user.password_hash is not None,
        }

    @staticmethod
    def unlink_provider(db: Session, user_id: str, provider: str) -> User:
        """
        Remove a sign-in method from an account.

        Unlinking ``email`` also drops the password. The account must keep
        at least one way to sign in.
        """
        provider = _provider_name(provider)
        user = user_service.get_user_by_id(db, user_id)
        if not user:
            raise ResourceNotFoundError("User")

        providers = list(user.auth_providers or [])
        if provider not in providers:
            raise BusinessLogicError(f"Provider '{provider}' is not linked to this account")

        remaining = [p for p in providers if p != provider]
        external_remaining = [p for p in remaining if p != AuthProvider.EMAIL.value]
        keeps_password = user.password_hash is not None and provider != AuthProvider.EMAIL.value
        if not external_remaining and not keeps_password:
            raise BusinessLogicError("Cannot unlink the last sign-in method of this account")

        provider_ids = dict(user.provider_ids or {})
        provider_ids.pop(provider, None)
        patch: Dict[str, Any] = {"auth_providers": remaining, "provider_ids": provider_ids}
        if provider == AuthProvider.EMAIL.value:
            patch["password_hash"] = None

        updated = user_service.update_user(db, user.id, patch)
        audit_service.record_security_event(
            db,
            user_id=user.id,
            action="provider_unlinked",
            target_type="auth_provider",
            target_id=provider,
        )
        logger.info("Unlinked %s from user %s", provider, user.id)
        return updated


identity_service = IdentityLinkingService()
