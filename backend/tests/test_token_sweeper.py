from datetime import timedelta

from app.config import settings
from app.core.clock import utcnow
from app.core.security import create_refresh_token
from app.models.refresh_token import RefreshToken
from app.services.refresh_token_store import RefreshTokenStore
from app.services.token_sweeper import TokenSweeper


def _stored(db, user, expires_in):
    expires_at = utcnow() + expires_in
    raw = create_refresh_token(user.id, "sid", "fam", expires_at)
    return RefreshTokenStore.store(db, user_id=user.id, raw_token=raw, token_family="fam", expires_at=expires_at)


def test_run_once_purges_past_retention_and_reports(db, make_user, session_factory):
    user = make_user()
    _stored(db, user, timedelta(days=-(settings.TOKEN_RETENTION_DAYS + 5)))
    within_retention = _stored(db, user, timedelta(days=-2))
    _stored(db, user, timedelta(days=3))
    sweeper = TokenSweeper(session_factory=session_factory)

    report = sweeper.run_once(db)

    assert report["purged"] == 1
    assert report["active"] == 1
    assert report["expired"] == 1
    assert report["total"] == 2
    assert db.get(RefreshToken, within_retention.id) is not None
    status = sweeper.status()
    assert status["runs"] == 1
    assert status["purged_total"] == 1
    assert status["running"] is False


def test_background_loop_starts_and_stops(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "SWEEPER_INTERVAL_SECONDS", 3600)
    sweeper = TokenSweeper(session_factory=session_factory)

    sweeper.start()
    try:
        assert sweeper.is_running()
    finally:
        sweeper.stop()

    assert not sweeper.is_running()
