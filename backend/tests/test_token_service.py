from datetime import timedelta

import pytest

from app.config import settings
from app.core.clock import utcnow
from app.core.exceptions import (
    AuthorityUnavailableError,
    CredentialInvalidError,
    ResourceNotFoundError,
)
from app.core.security import create_refresh_token
from app.core.session_context import ClientInfo
from app.models.audit import AuditEvent
from app.models.refresh_token import RefreshToken
from app.services import refresh_token_store as store_module
from app.services import token_service as token_service_module
from app.services.refresh_token_store import RefreshTokenStore
from app.services.user_service import user_service


def _records(db, user_id):
    db.expire_all()
    return db.query(RefreshToken).filter(RefreshToken.user_id == user_id).order_by(RefreshToken.created_at).all()


def test_issue_initial_session(db, authority, observer, make_user, client):
    user = make_user()

    pair = authority.issue_initial_session(db, user.id, client)

    assert pair.token_type == "bearer"
    assert pair.expires_in > 0
    claims = authority.verify_access_token(pair.access_token)
    assert claims.subject_id == user.id
    assert claims.session_id == pair.session_id
    [record] = _records(db, user.id)
    assert record.token_family == pair.token_family
    assert record.expires_at == pair.refresh_expires_at
    assert pair.refresh_token not in record.token_hash
    assert ("token_issued", user.id, False) in observer.events


def test_issue_for_unknown_or_disabled_user(db, authority, make_user):
    with pytest.raises(ResourceNotFoundError):
        authority.issue_initial_session(db, "missing-user")

    user = make_user(is_active=False)
    with pytest.raises(CredentialInvalidError):
        authority.issue_initial_session(db, user.id)


def test_validate_touches_record(db, authority, make_user, client):
    # issue -> validate: success, lastUsedAt set, record still active
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)

    record = authority.validate_and_touch(db, pair.refresh_token, client)

    assert record.user_id == user.id
    assert record.last_used_at is not None
    assert record.is_active()


def test_rotated_token_cannot_be_reused(db, authority, observer, make_user, client):
    user = make_user()
    original = authority.issue_initial_session(db, user.id, client)

    rotated = authority.rotate(db, original.refresh_token, client)

    with pytest.raises(CredentialInvalidError):
        authority.validate_and_touch(db, original.refresh_token, client)
    assert observer.reasons() == ["hash_mismatch"]
    assert authority.validate_and_touch(db, rotated.refresh_token, client).is_active()


def test_rotation_preserves_family(db, authority, make_user, client):
    user = make_user()
    original = authority.issue_initial_session(db, user.id, client)

    rotated = authority.rotate(db, original.refresh_token, client)

    assert rotated.token_family == original.token_family
    old, new = _records(db, user.id)
    assert old.is_revoked is True
    assert old.revoked_reason == "rotated"
    assert new.token_family == old.token_family
    assert new.is_revoked is False


def test_logout_everywhere_revokes_all_families(db, authority, make_user, client):
    user = make_user()
    first = authority.issue_initial_session(db, user.id, client)
    second = authority.issue_initial_session(db, user.id, ClientInfo.build("198.51.100.1", "curl/8.0"))
    assert first.token_family != second.token_family

    assert authority.revoke_all_sessions(db, user.id, "logout_everywhere") == 2

    for pair in (first, second):
        with pytest.raises(CredentialInvalidError):
            authority.validate_and_touch(db, pair.refresh_token)
    assert authority.count_active_sessions(db, user.id) == 0


def test_never_issued_token_is_invalid_without_mutation(db, authority, observer, make_user):
    user = make_user()
    authority.issue_initial_session(db, user.id)
    before = [(r.id, r.is_revoked, r.last_used_at) for r in _records(db, user.id)]

    with pytest.raises(CredentialInvalidError):
        authority.validate_and_touch(db, "eyJhbGciOiJIUzI1NiJ9.not-issued.at-all")
    forged = create_refresh_token(user.id, "sid", "made-up-family", utcnow() + timedelta(days=1))
    with pytest.raises(CredentialInvalidError):
        authority.validate_and_touch(db, forged)

    after = [(r.id, r.is_revoked, r.last_used_at) for r in _records(db, user.id)]
    assert after == before
    assert observer.reasons() == ["malformed", "hash_mismatch"]


def test_unknown_user_has_no_candidates(db, authority, observer):
    token = create_refresh_token("ghost", "sid", "fam", utcnow() + timedelta(days=1))
    with pytest.raises(CredentialInvalidError) as excinfo:
        authority.validate_and_touch(db, token)
    assert excinfo.value.message == "Please log in again"
    assert observer.reasons() == ["no_candidates"]


def test_bad_signature_revokes_record_and_family(db, authority, observer, make_user, client, monkeypatch):
    user = make_user()
    first = authority.issue_initial_session(db, user.id, client)
    current = authority.rotate(db, first.refresh_token, client)
    unrelated = authority.issue_initial_session(db, user.id, client)

    monkeypatch.setattr(settings, "REFRESH_SECRET_KEY", "a-different-signing-key")
    with pytest.raises(CredentialInvalidError):
        authority.validate_and_touch(db, current.refresh_token, client)

    family_records = [r for r in _records(db, user.id) if r.token_family == first.token_family]
    assert all(r.is_revoked for r in family_records)
    assert family_records[-1].revoked_reason == "invalid signature detected"
    assert ("tampering_detected", user.id) in observer.events
    assert observer.reasons()[-1] == "bad_signature"
    assert db.query(AuditEvent).filter(AuditEvent.action == "refresh_token_tampering").count() == 1

    monkeypatch.undo()
    monkeypatch.setattr(settings, "BCRYPT_ROUNDS", 4)
    assert authority.validate_and_touch(db, unrelated.refresh_token).token_family == unrelated.token_family


def test_expired_signature_revokes_only_that_record(db, authority, observer, make_user):
    user = make_user()
    family = RefreshTokenStore.generate_token_family()
    stale = create_refresh_token(user.id, "sid", family, utcnow() - timedelta(hours=1))
    authority.store.store(
        db,
        user_id=user.id,
        raw_token=stale,
        token_family=family,
        expires_at=utcnow() + timedelta(days=1),
    )
    sibling = create_refresh_token(user.id, "sid", family, utcnow() + timedelta(days=1))
    authority.store.store(
        db,
        user_id=user.id,
        raw_token=sibling,
        token_family=family,
        expires_at=utcnow() + timedelta(days=1),
    )

    with pytest.raises(CredentialInvalidError):
        authority.validate_and_touch(db, stale)

    stale_record, sibling_record = _records(db, user.id)
    assert stale_record.is_revoked and stale_record.revoked_reason == "invalid signature detected"
    assert sibling_record.is_revoked is False
    assert observer.reasons() == ["expired_signature"]
    assert not any(event[0] == "tampering_detected" for event in observer.events)


def test_no_resurrection_after_concurrent_revoke(db, session_factory, authority, observer, make_user, monkeypatch):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id)
    original_lock = authority.store.lock_and_touch

    def revoke_from_other_request(session, record_id, now=None):
        other = session_factory()
        try:
            record = other.get(RefreshToken, record_id)
            RefreshTokenStore.revoke(other, record, "user_logout")
        finally:
            other.close()
        return original_lock(session, record_id, now)

    monkeypatch.setattr(authority.store, "lock_and_touch", revoke_from_other_request)

    with pytest.raises(CredentialInvalidError):
        authority.validate_and_touch(db, pair.refresh_token)
    assert observer.reasons() == ["revoked_during_validation"]
    [record] = _records(db, user.id)
    assert record.is_revoked and record.revoked_reason == "user_logout"


def test_lock_timeout_is_unavailable_not_invalid(db, authority, observer, make_user, monkeypatch):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id)

    def timed_out(session, record_id, now=None):
        raise AuthorityUnavailableError("lock_and_touch")

    monkeypatch.setattr(authority.store, "lock_and_touch", timed_out)

    with pytest.raises(AuthorityUnavailableError):
        authority.validate_and_touch(db, pair.refresh_token)
    assert observer.reasons() == []
    assert ("authority_unavailable", "lock_and_touch") in observer.events
    [record] = _records(db, user.id)
    assert record.is_revoked is False


def test_rotation_race_revokes_successor(db, authority, observer, make_user, client, monkeypatch):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)
    original_store = authority.store.store

    def store_then_lose_race(session, **kwargs):
        successor = original_store(session, **kwargs)
        predecessor = (
            session.query(RefreshToken)
            .filter(RefreshToken.user_id == user.id, RefreshToken.id != successor.id)
            .one()
        )
        RefreshTokenStore.revoke(session, predecessor, "user_logout")
        return successor

    monkeypatch.setattr(authority.store, "store", store_then_lose_race)

    with pytest.raises(CredentialInvalidError):
        authority.rotate(db, pair.refresh_token, client)

    records = _records(db, user.id)
    assert len(records) == 2
    assert all(r.is_revoked for r in records)
    assert {r.revoked_reason for r in records} == {"user_logout", "rotation_race"}
    assert observer.reasons() == ["rotation_race"]


def test_rotation_keeps_new_pair_when_predecessor_revoke_fails(db, authority, observer, make_user, client, monkeypatch):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)

    def store_down(session, record, reason, now=None):
        raise AuthorityUnavailableError("revoke")

    monkeypatch.setattr(authority.store, "revoke", store_down)

    rotated = authority.rotate(db, pair.refresh_token, client)

    assert rotated.token_family == pair.token_family
    monkeypatch.undo()
    monkeypatch.setattr(settings, "BCRYPT_ROUNDS", 4)
    assert authority.validate_and_touch(db, pair.refresh_token).is_active()
    assert authority.validate_and_touch(db, rotated.refresh_token).is_active()
    assert ("authority_unavailable", "revoke") in observer.events


def test_rotation_rejects_disabled_user(db, authority, observer, make_user, client):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)
    user_service.update_user(db, user.id, {"is_active": False})

    with pytest.raises(CredentialInvalidError):
        authority.rotate(db, pair.refresh_token, client)

    [record] = _records(db, user.id)
    assert record.is_revoked and record.revoked_reason == "user_inactive"
    assert observer.reasons() == ["user_inactive"]


def test_rotation_scores_session_risk(db, authority, observer, make_user, client):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)

    authority.rotate(db, pair.refresh_token, ClientInfo.build("192.0.2.99", "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"))

    scores = [event[1] for event in observer.events if event[0] == "session_risk"]
    assert scores == [100]


def _risk_scores(observer):
    return [event[1] for event in observer.events if event[0] == "session_risk"]


@pytest.mark.parametrize(
    "last_used_ago, expected",
    [
        (timedelta(minutes=1), 0),
        (timedelta(days=2), 20),
    ],
)
def test_rotation_risk_measures_idle_time_from_last_use(
    db, authority, observer, make_user, client, last_used_ago, expected
):
    # A week-long token issued two days ago but used a minute ago is not idle
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)
    now = utcnow()
    db.query(RefreshToken).filter(RefreshToken.user_id == user.id).update(
        {"created_at": now - timedelta(days=2), "last_used_at": now - last_used_ago},
        synchronize_session=False,
    )
    db.commit()

    authority.rotate(db, pair.refresh_token, client)

    assert _risk_scores(observer) == [expected]


def test_rotation_risk_counts_distinct_ips_across_family(db, authority, observer, make_user, client):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id, client)
    now = utcnow()
    expires_at = (now + timedelta(days=1)).replace(microsecond=0)
    for hours_ago, ip in ((3, "198.51.100.1"), (2, "198.51.100.2"), (1, "198.51.100.3")):
        record = authority.store.store(
            db,
            user_id=user.id,
            raw_token=create_refresh_token(user.id, "sid", pair.token_family, expires_at),
            token_family=pair.token_family,
            expires_at=expires_at,
            client=ClientInfo.build(ip, client.user_agent),
        )
        db.query(RefreshToken).filter(RefreshToken.id == record.id).update(
            {"created_at": now - timedelta(hours=hours_ago)},
            synchronize_session=False,
        )
        db.commit()

    authority.rotate(db, pair.refresh_token, client)

    # Same device as the last use, but four networks within a day
    assert _risk_scores(observer) == [25]


def test_bcrypt_work_runs_with_no_open_transaction(db, authority, make_user, client, monkeypatch):
    user = make_user()
    calls = []
    real_hash = store_module.hash_secret
    real_verify = token_service_module.verify_secret

    def recording_hash(secret):
        calls.append(("hash", db.in_transaction()))
        return real_hash(secret)

    def recording_verify(secret, hashed_value):
        calls.append(("compare", db.in_transaction()))
        return real_verify(secret, hashed_value)

    monkeypatch.setattr(store_module, "hash_secret", recording_hash)
    monkeypatch.setattr(token_service_module, "verify_secret", recording_verify)

    pair = authority.issue_initial_session(db, user.id, client)
    authority.rotate(db, pair.refresh_token, client)

    assert calls == [("hash", False), ("compare", False), ("hash", False)]


def test_revoke_session(db, authority, make_user):
    user = make_user()
    pair = authority.issue_initial_session(db, user.id)

    assert authority.revoke_session(db, pair.refresh_token) is True
    assert authority.revoke_session(db, pair.refresh_token) is False
    assert authority.revoke_session(db, "garbage") is False
    [record] = _records(db, user.id)
    assert record.revoked_reason == "user_logout"


def test_revoke_family_is_exhaustive(db, authority, make_user, client):
    user = make_user()
    first = authority.issue_initial_session(db, user.id, client)
    second = authority.rotate(db, first.refresh_token, client)
    authority.rotate(db, second.refresh_token, client)

    assert authority.revoke_family(db, first.token_family, "admin_revocation") == 1
    assert authority.revoke_family(db, first.token_family, "admin_revocation") == 0
    assert all(r.is_revoked for r in _records(db, user.id))


def test_store_failure_during_issue_is_unavailable(db, authority, observer, make_user, monkeypatch):
    user = make_user()

    def store_down(session, **kwargs):
        raise AuthorityUnavailableError("store")

    monkeypatch.setattr(authority.store, "store", store_down)

    with pytest.raises(AuthorityUnavailableError):
        authority.issue_initial_session(db, user.id)
    assert ("authority_unavailable", "store") in observer.events
    assert not any(event[0] == "token_issued" for event in observer.events)
