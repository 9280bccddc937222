"""Default plan assignment for new accounts"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import utcnow
from app.models.user import User

logger = logging.getLogger(__name__)

TRIAL_PLAN = "trial"


class EntitlementService:
    """Assigns the starting plan; callers never fail because of it"""

    @staticmethod
    def apply_default_plan(db: Session, user: User) -> Optional[User]:
        """
        Put a freshly created user on the trial plan.

        Fire-and-observe: a failed write is rolled back and logged, and
        the user keeps working without a plan.
        """
        if user.plan:
            return user

        started = utcnow()
        try:
            user.plan = TRIAL_PLAN
            user.trial_started_at = started
            user.trial_ends_at = started + timedelta(days=settings.TRIAL_DURATION_DAYS)
            db.commit()
            db.refresh(user)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to apply default plan for user %s: %s", user.id, exc.__class__.__name__)
            return None

        logger.info("Trial plan assigned to user %s until %s", user.id, user.trial_ends_at.isoformat())
        return user


entitlement_service = EntitlementService()
