"""User schemas"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum
import re

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthProvider(str, Enum):
    """Sign-in methods a user can have linked"""
    EMAIL = "email"
    GOOGLE = "google"


def _clean_email(value: str) -> str:
    value = (value or "").strip().lower()
    if not _EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email address")
    return value


class UserLogin(BaseModel):
    """User login schema"""
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return _clean_email(v)


class UserRegister(BaseModel):
    """Email/password registration schema"""
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=8, max_length=256)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return _clean_email(v)


class UserResponse(BaseModel):
    """User response schema"""
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_picture: Optional[str] = None
    role: str
    plan: Optional[str] = None
    auth_providers: List[str] = []
    is_email_verified: bool
    trial_ends_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
