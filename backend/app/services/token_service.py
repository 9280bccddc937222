"""Token authority: refresh-token issuance, validation, rotation and revocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import utcnow
from app.core.exceptions import (
    AuthorityUnavailableError,
    CredentialInvalidError,
    ResourceNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
)
from app.core.security import (
    AccessTokenClaims,
    create_access_token,
    create_refresh_token,
    decode_untrusted_refresh_token,
    verify_access_token,
    verify_refresh_token,
    verify_secret,
)
from app.core.session_context import (
    ClientInfo,
    SessionObservation,
    calculate_session_risk,
    device_fingerprint,
    derive_session_id,
)
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.services.audit_service import audit_service
from app.services.refresh_token_store import RefreshCandidate, RefreshTokenStore, refresh_token_store
from app.services.token_observer import PrometheusTokenObserver, TokenObserver
from app.services.user_service import user_service

logger = logging.getLogger(__name__)

ROTATED_REASON = "rotated"
INVALID_SIGNATURE_REASON = "invalid signature detected"
LOGOUT_REASON = "user_logout"
LOGOUT_EVERYWHERE_REASON = "logout_everywhere"
USER_INACTIVE_REASON = "user_inactive"
ROTATION_RACE_REASON = "rotation_race"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    token_family: str
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        return max(0, int((self.expires_at - utcnow()).total_seconds()))


class TokenService:
    """
    Orchestrates the refresh credential lifecycle.

    State of one refresh record: Issued -> Active -> Rotated | Revoked | Expired.
    Rotation stores the successor before revoking the predecessor, so a crash
    in between leaves two valid tokens in one family rather than none.
    """

    def __init__(
        self,
        store: Optional[RefreshTokenStore] = None,
        observer: Optional[TokenObserver] = None,
    ) -> None:
        self.store = store or refresh_token_store
        self.observer = observer or PrometheusTokenObserver()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _reject(self, reason: str) -> CredentialInvalidError:
        logger.info("Refresh credential rejected: reason=%s", reason)
        self.observer.credential_rejected(reason)
        return CredentialInvalidError(reason)

    def _unavailable(self, exc: AuthorityUnavailableError) -> AuthorityUnavailableError:
        logger.error("Token authority unavailable during %s", exc.operation)
        self.observer.authority_unavailable(exc.operation)
        return exc

    def _active_user(self, db: Session, user_id: str) -> Optional[User]:
        user = user_service.get_user_by_id(db, user_id)
        if user is None or not user.is_active:
            return None
        return user

    def _issue(
        self,
        db: Session,
        user: User,
        client: ClientInfo,
        token_family: str,
        rotated: bool,
    ) -> Tuple[TokenPair, RefreshToken]:
        now = utcnow()
        user_id = user.id
        session_id = derive_session_id(user_id, client, at=now)
        refresh_expires_at = (now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)).replace(microsecond=0)
        access_expires_at = (now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)).replace(microsecond=0)

        raw_refresh = create_refresh_token(user_id, session_id, token_family, refresh_expires_at)
        access_token = create_access_token(
            user_id,
            session_id,
            expires_delta=access_expires_at - now,
            extra_claims={"email": user.email, "role": user.role, "plan": user.plan},
        )

        # store() ends the caller's read before hashing; user is expired after this
        try:
            record = self.store.store(
                db,
                user_id=user_id,
                raw_token=raw_refresh,
                token_family=token_family,
                expires_at=refresh_expires_at,
                client=client,
            )
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)

        self.observer.token_issued(user_id, rotated)
        pair = TokenPair(
            access_token=access_token,
            refresh_token=raw_refresh,
            expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            session_id=session_id,
            token_family=token_family,
        )
        return pair, record

    def _handle_bad_signature(
        self,
        db: Session,
        record: RefreshCandidate,
        client: ClientInfo,
        expired: bool,
    ) -> CredentialInvalidError:
        # Hash matched but the signed envelope did not: fail closed on that record.
        user_id = record.user_id
        token_family = record.token_family
        self.store.revoke(db, record, INVALID_SIGNATURE_REASON)
        self.observer.tokens_revoked("record", INVALID_SIGNATURE_REASON, 1)

        if expired:
            return self._reject("expired_signature")

        logger.warning(
            "Refresh token tampering suspected: user_id=%s family=%s ip=%s",
            user_id,
            token_family,
            client.ip_address,
        )
        self.observer.tampering_detected(user_id)
        revoked = self.store.revoke_family(db, token_family, INVALID_SIGNATURE_REASON)
        self.observer.tokens_revoked("family", INVALID_SIGNATURE_REASON, revoked)
        audit_service.record_security_event(
            db,
            user_id=user_id,
            action="refresh_token_tampering",
            target_type="token_family",
            target_id=token_family,
            ip_address=client.ip_address,
            metadata={"family_records_revoked": revoked},
        )
        return self._reject("bad_signature")

    def _assess_session_risk(self, db: Session, record: RefreshCandidate, client: ClientInfo) -> int:
        """Score the presenting client against the family's activity of the last 24h."""
        if client.ip_address is None and client.user_agent is None:
            return 0
        now = utcnow()
        # The matched record as it was before this request touched it
        previous = [
            SessionObservation(
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                seen_at=record.last_seen_at,
            )
        ]
        previous.extend(
            self.store.family_activity(
                db,
                record.token_family,
                since=now - timedelta(hours=24),
                exclude_id=record.id,
            )
        )
        current = SessionObservation(
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            seen_at=now,
        )
        score = calculate_session_risk(previous, current)
        self.observer.session_risk(score)
        if score >= settings.SESSION_RISK_ALERT_THRESHOLD:
            logger.warning(
                "High session risk on refresh: user_id=%s family=%s score=%s device=%s",
                record.user_id,
                record.token_family,
                score,
                device_fingerprint(client)[:16],
            )
        return score

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    def issue_initial_session(
        self,
        db: Session,
        user_id: str,
        client: Optional[ClientInfo] = None,
    ) -> TokenPair:
        """
        Issue a token pair that starts a new token family.

        Raises:
            ResourceNotFoundError: Unknown user
            CredentialInvalidError: User is disabled
            AuthorityUnavailableError: Store failure
        """
        user = user_service.get_user_by_id(db, user_id)
        if user is None:
            raise ResourceNotFoundError("User")
        if not user.is_active:
            raise self._reject(USER_INACTIVE_REASON)

        pair, _ = self._issue(
            db,
            user,
            client or ClientInfo(),
            token_family=self.store.generate_token_family(),
            rotated=False,
        )
        logger.info("Issued new session: user_id=%s family=%s", user_id, pair.token_family)
        return pair

    def validate_and_touch(
        self,
        db: Session,
        raw_refresh_token: str,
        client: Optional[ClientInfo] = None,
    ) -> RefreshToken:
        """
        Validate a presented refresh token and stamp its last use.

        Order of checks:
          1. untrusted decode for the claimed user id (no store access on failure)
          2. candidate records of that user only
          3. bcrypt compare, first match wins
          4. signature and expiry; a hash match with a bad signature revokes
          5. lock, re-check and touch the matched record

        Returns:
            RefreshToken: The touched record

        Raises:
            CredentialInvalidError: Any credential failure (reason kept internal)
            AuthorityUnavailableError: Store failure or lock timeout
        """
        touched, _ = self._validate(db, raw_refresh_token, client or ClientInfo())
        return touched

    def _validate(
        self,
        db: Session,
        raw_refresh_token: str,
        client: ClientInfo,
    ) -> Tuple[RefreshToken, RefreshCandidate]:
        # Returns the touched record and its snapshot from before the touch
        untrusted = decode_untrusted_refresh_token(raw_refresh_token)
        if untrusted is None:
            raise self._reject("malformed")

        try:
            candidates = self.store.find_candidates(db, untrusted.claimed_user_id)
            if not candidates:
                raise self._reject("no_candidates")

            # find_candidates ended its transaction; compares run with none open
            matched = next(
                (candidate for candidate in candidates if verify_secret(raw_refresh_token, candidate.token_hash)),
                None,
            )
            if matched is None:
                raise self._reject("hash_mismatch")

            try:
                claims = verify_refresh_token(raw_refresh_token)
            except TokenExpiredError:
                raise self._handle_bad_signature(db, matched, client, expired=True)
            except TokenInvalidError:
                raise self._handle_bad_signature(db, matched, client, expired=False)

            if claims.subject_id != matched.user_id or claims.token_family != matched.token_family:
                raise self._handle_bad_signature(db, matched, client, expired=False)

            touched = self.store.lock_and_touch(db, matched.id)
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)

        if touched is None:
            raise self._reject("revoked_during_validation")
        return touched, matched

    def rotate(
        self,
        db: Session,
        raw_refresh_token: str,
        client: Optional[ClientInfo] = None,
    ) -> TokenPair:
        """
        Exchange a valid refresh token for a new pair in the same family.

        The successor is stored first, then the presented record is revoked
        with reason "rotated". If another request already revoked it (two
        tabs refreshing at once, or a concurrent logout) the successor is
        revoked too and the call fails as invalid.
        """
        client = client or ClientInfo()
        record, matched = self._validate(db, raw_refresh_token, client)
        user_id = matched.user_id

        try:
            user = self._active_user(db, user_id)
            if user is None:
                self.store.revoke(db, matched, USER_INACTIVE_REASON)
                raise self._reject(USER_INACTIVE_REASON)

            self._assess_session_risk(db, matched, client)

            pair, successor = self._issue(db, user, client, token_family=matched.token_family, rotated=True)
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)

        try:
            revoked_now = self.store.revoke(db, record, ROTATED_REASON)
        except AuthorityUnavailableError as exc:
            # Successor is stored; the predecessor stays valid until expiry or
            # family revocation.
            logger.error(
                "Rotation could not revoke predecessor: user_id=%s family=%s",
                user_id,
                pair.token_family,
            )
            self.observer.authority_unavailable(exc.operation)
            return pair

        if not revoked_now:
            try:
                self.store.revoke(db, successor, ROTATION_RACE_REASON)
            except AuthorityUnavailableError as exc:
                raise self._unavailable(exc)
            raise self._reject(ROTATION_RACE_REASON)

        self.observer.tokens_revoked("record", ROTATED_REASON, 1)
        logger.info("Rotated refresh token: user_id=%s family=%s", user_id, pair.token_family)
        return pair

    def revoke_session(
        self,
        db: Session,
        raw_refresh_token: str,
        reason: str = LOGOUT_REASON,
        client: Optional[ClientInfo] = None,
    ) -> bool:
        """
        Revoke the record behind a refresh token.

        An invalid or already revoked token is not an error; returns False.
        """
        try:
            record = self.validate_and_touch(db, raw_refresh_token, client)
        except CredentialInvalidError:
            return False

        try:
            revoked = self.store.revoke(db, record, reason)
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)
        if revoked:
            self.observer.tokens_revoked("record", reason, 1)
        return revoked

    def revoke_all_sessions(self, db: Session, user_id: str, reason: str = LOGOUT_EVERYWHERE_REASON) -> int:
        try:
            count = self.store.revoke_all_for_user(db, user_id, reason)
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)
        self.observer.tokens_revoked("user", reason, count)
        logger.info("Revoked all sessions: user_id=%s count=%s reason=%s", user_id, count, reason)
        return count

    def revoke_family(self, db: Session, token_family: str, reason: str) -> int:
        try:
            count = self.store.revoke_family(db, token_family, reason)
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)
        self.observer.tokens_revoked("family", reason, count)
        logger.warning("Revoked token family: family=%s count=%s reason=%s", token_family, count, reason)
        return count

    def count_active_sessions(self, db: Session, user_id: str) -> int:
        try:
            return self.store.count_active_for_user(db, user_id)
        except AuthorityUnavailableError as exc:
            raise self._unavailable(exc)

    @staticmethod
    def verify_access_token(raw_access_token: str) -> Optional[AccessTokenClaims]:
        """Stateless access token check; None for anything invalid."""
        return verify_access_token(raw_access_token)


token_service = TokenService()
