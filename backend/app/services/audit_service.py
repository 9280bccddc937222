"""Audit service for security-sensitive events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit import AuditEvent

logger = logging.getLogger(__name__)


class AuditService:
    """Persist immutable audit trail entries."""

    @staticmethod
    def log_event(
        db: Session,
        *,
        user_id: Optional[str],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            user_id=user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def record_security_event(db: Session, **kwargs: Any) -> Optional[AuditEvent]:
        """
        Best-effort variant of ``log_event`` for token paths.

        A failed audit write is logged and rolled back; it never changes the
        outcome of the token operation that triggered it.
        """
        try:
            return AuditService.log_event(db, **kwargs)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to record audit event %s: %s", kwargs.get("action"), exc.__class__.__name__)
            return None

    @staticmethod
    def list_events(db: Session, *, action: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        query = db.query(AuditEvent)
        if action:
            query = query.filter(AuditEvent.action == action)
        return query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()


audit_service = AuditService()
