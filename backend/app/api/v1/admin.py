"""Admin routes - session revocation, maintenance and audit trail"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import get_current_admin_user
from app.core.database import get_db
from app.core.exceptions import ResourceNotFoundError
from app.models.user import User
from app.schemas.audit import AuditEventResponse
from app.schemas.auth import RevocationResponse
from app.services.audit_service import audit_service
from app.services.token_service import token_service
from app.services.token_sweeper import token_sweeper
from app.services.user_service import user_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/users/{user_id}/revoke-sessions", response_model=RevocationResponse)
def revoke_user_sessions(
    user_id: str,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Revoke every refresh token of one user"""
    if not user_service.get_user_by_id(db, user_id):
        raise ResourceNotFoundError("User")

    count = token_service.revoke_all_sessions(db, user_id, "admin_revocation")
    audit_service.record_security_event(
        db,
        user_id=current_user.id,
        action="admin_revoke_user_sessions",
        target_type="user",
        target_id=user_id,
        ip_address=request.client.host if request.client else None,
        metadata={"revoked": count},
    )
    return RevocationResponse(revoked=count, message=f"Revoked {count} session(s)")


@router.post("/token-families/{token_family}/revoke", response_model=RevocationResponse)
def revoke_token_family(
    token_family: str,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Revoke a whole rotation chain; repeated calls revoke nothing new"""
    count = token_service.revoke_family(db, token_family, "admin_revocation")
    audit_service.record_security_event(
        db,
        user_id=current_user.id,
        action="admin_revoke_token_family",
        target_type="token_family",
        target_id=token_family,
        ip_address=request.client.host if request.client else None,
        metadata={"revoked": count},
    )
    return RevocationResponse(revoked=count, message=f"Revoked {count} token(s)")


@router.post("/maintenance/sweep")
def run_token_sweep(
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Run the refresh token sweeper now and return its report"""
    report = token_sweeper.run_once(db)
    logger.info("Manual token sweep triggered by %s", current_user.id)
    return {"success": True, "report": report}


@router.get("/audit-events", response_model=List[AuditEventResponse])
def get_audit_events(
    limit: int = 100,
    action: Optional[str] = None,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """List recent audit trail entries."""
    events = audit_service.list_events(db, action=action, limit=max(1, min(limit, 500)))
    rows = []
    for ev in events:
        metadata = {}
        if ev.metadata_json:
            try:
                metadata = json.loads(ev.metadata_json)
            except ValueError:
                metadata = {"raw": ev.metadata_json}
        rows.append(
            AuditEventResponse(
                id=ev.id,
                user_id=ev.user_id,
                email=ev.user.email if ev.user else None,
                action=ev.action,
                target_type=ev.target_type,
                target_id=ev.target_id,
                ip_address=ev.ip_address,
                metadata=metadata,
                created_at=ev.created_at,
            )
        )
    return rows
