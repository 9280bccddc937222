import os
import tempfile

# Settings are read at import time; point them at throwaway resources first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "contentforge-tests", "app.log"))
os.environ.setdefault("RUN_EMBEDDED_SWEEPER", "false")
os.environ.setdefault("DB_INIT_MODE", "off")
os.environ.setdefault("IDENTITY_BRIDGE_KEY", "test-bridge-key")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.core.database import Base
from app.core.security import get_password_hash
from app.core.session_context import ClientInfo
from app.schemas.user import AuthProvider
from app.services.rate_limiter import rate_limiter
from app.services.refresh_token_store import RefreshTokenStore
from app.services.token_observer import RecordingTokenObserver
from app.services.token_service import TokenService
from app.services.user_service import user_service

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
)


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(settings, "BCRYPT_ROUNDS", 4)


@pytest.fixture(autouse=True)
def clean_rate_limits():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'authority.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def observer():
    return RecordingTokenObserver()


@pytest.fixture
def authority(observer):
    return TokenService(store=RefreshTokenStore(), observer=observer)


@pytest.fixture
def client():
    return ClientInfo.build("203.0.113.10", CHROME_MAC)


@pytest.fixture
def make_user(db):
    def _make_user(email="ada@example.com", password="correct-horse", **overrides):
        profile = {
            "email": email,
            "password_hash": get_password_hash(password) if password else None,
            "auth_providers": [AuthProvider.EMAIL.value] if password else [],
            "provider_ids": {},
        }
        profile.update(overrides)
        return user_service.create_user(db, profile)

    return _make_user
