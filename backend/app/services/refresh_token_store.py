"""Refresh token persistence: hashed storage, bounded lookup, row locking and revocation."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Union

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import utcnow
from app.core.exceptions import AuthorityUnavailableError
from app.core.security import hash_secret
from app.core.session_context import ClientInfo, SessionObservation
from app.models.refresh_token import RefreshToken

logger = logging.getLogger(__name__)

REVOKED_REASON_MAX_LENGTH = 100
FAMILY_ACTIVITY_LIMIT = 20


def _reason(reason: str) -> str:
    return (reason or "unspecified")[:REVOKED_REASON_MAX_LENGTH]


@contextmanager
def _store_operation(db: Session, operation: str) -> Iterator[None]:
    """Roll back and surface infrastructure failures as AuthorityUnavailableError."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Refresh token store %s failed: %s", operation, exc.__class__.__name__)
        raise AuthorityUnavailableError(operation) from exc


def _end_transaction(db: Session) -> None:
    # bcrypt work must not run while a connection sits idle in transaction
    if db.in_transaction():
        db.commit()


@dataclass(frozen=True)
class RefreshCandidate:
    """Detached snapshot of an active record, safe to use once the read has ended."""

    id: str
    user_id: str
    token_hash: str
    token_family: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_used_at: Optional[datetime]

    @classmethod
    def from_record(cls, record: RefreshToken) -> "RefreshCandidate":
        return cls(
            id=record.id,
            user_id=record.user_id,
            token_hash=record.token_hash,
            token_family=record.token_family,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
        )

    @property
    def last_seen_at(self) -> datetime:
        return self.last_used_at or self.created_at


class RefreshTokenStore:
    """Persistent record of issued refresh tokens."""

    @staticmethod
    def generate_token_family() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def store(
        db: Session,
        *,
        user_id: str,
        raw_token: str,
        token_family: str,
        expires_at: datetime,
        client: Optional[ClientInfo] = None,
    ) -> RefreshToken:
        """
        Hash and persist a newly issued refresh token.

        Any open transaction on ``db`` is committed before hashing, so the
        raw value is hashed with no connection held. It is never logged or
        returned.

        Args:
            db: Database session
            user_id: Owning user
            raw_token: Refresh token as handed to the client
            token_family: Rotation lineage id
            expires_at: Absolute expiry (naive UTC)
            client: Optional truncated client fingerprint

        Returns:
            RefreshToken: Persisted record
        """
        with _store_operation(db, "store"):
            _end_transaction(db)
        token_hash = hash_secret(raw_token)
        client = client or ClientInfo()

        record = RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            token_family=token_family,
            expires_at=expires_at,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            is_revoked=False,
        )
        with _store_operation(db, "store"):
            db.add(record)
            db.commit()
            db.refresh(record)
        return record

    @staticmethod
    def find_candidates(db: Session, user_id: str, now: Optional[datetime] = None) -> List[RefreshCandidate]:
        """
        Active (non-revoked, non-expired) records of one user, oldest first.

        Returns snapshots and ends the read transaction, so callers can run
        bcrypt compares without holding a connection or a snapshot open.
        """
        now = now or utcnow()
        stmt = (
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .order_by(RefreshToken.created_at.asc(), RefreshToken.id.asc())
        )
        with _store_operation(db, "find_candidates"):
            candidates = [RefreshCandidate.from_record(record) for record in db.execute(stmt).scalars().all()]
            _end_transaction(db)
        return candidates

    @staticmethod
    def family_activity(
        db: Session,
        token_family: str,
        since: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[SessionObservation]:
        """Most recent client observations of one family, newest first."""
        seen_at = func.coalesce(RefreshToken.last_used_at, RefreshToken.created_at)
        stmt = (
            select(RefreshToken.ip_address, RefreshToken.user_agent, seen_at.label("seen_at"))
            .where(RefreshToken.token_family == token_family, seen_at > since)
            .order_by(seen_at.desc())
            .limit(FAMILY_ACTIVITY_LIMIT)
        )
        if exclude_id is not None:
            stmt = stmt.where(RefreshToken.id != exclude_id)
        with _store_operation(db, "family_activity"):
            rows = db.execute(stmt).all()
        return [
            SessionObservation(ip_address=row.ip_address, user_agent=row.user_agent, seen_at=row.seen_at)
            for row in rows
        ]

    @staticmethod
    def _apply_lock_timeout(db: Session) -> None:
        if db.get_bind().dialect.name == "postgresql":
            timeout_ms = max(1, int(settings.TOKEN_LOCK_TIMEOUT_MS))
            db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

    @staticmethod
    def lock_and_touch(db: Session, record_id: str, now: Optional[datetime] = None) -> Optional[RefreshToken]:
        """
        Lock one record, re-check it and stamp ``last_used_at``.

        The row lock is held only for the re-check and the update. Returns
        None when the record vanished, was revoked or expired since it was
        read. A lock that cannot be acquired within TOKEN_LOCK_TIMEOUT_MS
        raises AuthorityUnavailableError.
        """
        now = now or utcnow()
        stmt = (
            select(RefreshToken)
            .where(RefreshToken.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        with _store_operation(db, "lock_and_touch"):
            RefreshTokenStore._apply_lock_timeout(db)
            record = db.execute(stmt).scalar_one_or_none()
            if record is None or record.is_revoked or record.expires_at <= now:
                db.rollback()
                return None
            record.last_used_at = now
            db.commit()
        return record

    @staticmethod
    def revoke(
        db: Session,
        record: Union[RefreshToken, RefreshCandidate],
        reason: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Revoke a single record.

        Returns True when this call performed the transition and False when
        the record was already revoked (a no-op, not an error).
        """
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.id == record.id, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=now or utcnow(), revoked_reason=_reason(reason))
            .execution_options(synchronize_session=False)
        )
        with _store_operation(db, "revoke"):
            result = db.execute(stmt)
            db.commit()
        return result.rowcount == 1

    @staticmethod
    def revoke_all_for_user(db: Session, user_id: str, reason: str, now: Optional[datetime] = None) -> int:
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=now or utcnow(), revoked_reason=_reason(reason))
            .execution_options(synchronize_session=False)
        )
        with _store_operation(db, "revoke_all_for_user"):
            result = db.execute(stmt)
            db.commit()
        return result.rowcount

    @staticmethod
    def revoke_family(db: Session, token_family: str, reason: str, now: Optional[datetime] = None) -> int:
        """Revoke every non-revoked record of a family, expired ones included."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.token_family == token_family, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=now or utcnow(), revoked_reason=_reason(reason))
            .execution_options(synchronize_session=False)
        )
        with _store_operation(db, "revoke_family"):
            result = db.execute(stmt)
            db.commit()
        return result.rowcount

    @staticmethod
    def purge_expired(db: Session, older_than: datetime) -> int:
        """
        Delete records whose expiry is before ``older_than``, revoked or not.

        No row locks: every read path filters on expiry, so these rows can no
        longer validate.
        """
        stmt = (
            delete(RefreshToken)
            .where(RefreshToken.expires_at < older_than)
            .execution_options(synchronize_session=False)
        )
        with _store_operation(db, "purge_expired"):
            result = db.execute(stmt)
            db.commit()
        return result.rowcount

    @staticmethod
    def count_active_for_user(db: Session, user_id: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stmt = select(func.count(RefreshToken.id)).where(
            RefreshToken.user_id == user_id,
            RefreshToken.is_revoked.is_(False),
            RefreshToken.expires_at > now,
        )
        with _store_operation(db, "count_active_for_user"):
            return int(db.execute(stmt).scalar_one())

    @staticmethod
    def statistics(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Active / revoked / expired / total record counts for maintenance reports."""
        now = now or utcnow()
        with _store_operation(db, "statistics"):
            total = db.execute(select(func.count(RefreshToken.id))).scalar_one()
            revoked = db.execute(
                select(func.count(RefreshToken.id)).where(RefreshToken.is_revoked.is_(True))
            ).scalar_one()
            active = db.execute(
                select(func.count(RefreshToken.id)).where(
                    RefreshToken.is_revoked.is_(False),
                    RefreshToken.expires_at > now,
                )
            ).scalar_one()
        return {
            "active": int(active),
            "revoked": int(revoked),
            "expired": int(total - revoked - active),
            "total": int(total),
        }


refresh_token_store = RefreshTokenStore()
