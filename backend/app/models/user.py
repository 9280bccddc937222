"""User model"""

import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.core.database import Base


class User(Base):
    """User directory record; identity for tokens and account linking"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    profile_picture = Column(String(1024), nullable=True)
    auth_providers = Column(JSON, nullable=False, default=list)
    provider_ids = Column(JSON, nullable=False, default=dict)
    role = Column(String(20), default="user", nullable=False)
    plan = Column(String(20), nullable=True)
    trial_started_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_email_verified = Column(Boolean, default=False, nullable=False)
    email_verified_at = Column(DateTime, nullable=True)
    registration_ip = Column(String(45), nullable=True)
    registration_user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login = Column(DateTime)
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime)

    # Relationships
    refresh_tokens = relationship("RefreshToken", cascade="all, delete-orphan", passive_deletes=True)
    audit_events = relationship("AuditEvent", back_populates="user")

    __table_args__ = (
        Index('idx_users_role', 'role'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"

    def has_provider(self, provider: str) -> bool:
        return provider in (self.auth_providers or [])

