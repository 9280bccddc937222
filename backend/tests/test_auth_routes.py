from types import SimpleNamespace

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from app.api import deps
from app.api.v1 import admin as admin_routes
from app.api.v1 import auth as auth_routes
from app.config import settings
from app.core.exceptions import (
    AccountLockedError,
    AuthorizationError,
    CredentialInvalidError,
    InvalidCredentialsError,
    RateLimitExceededError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
)
from app.models.audit import AuditEvent
from app.schemas.auth import IdentityAssertion, LogoutRequest, RefreshTokenRequest
from app.schemas.user import AuthProvider, UserLogin, UserRegister
from app.services import user_service as user_service_module
from app.services.user_service import user_service


def _bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _register(db, client, email="ada@example.com", password="correct-horse"):
    return auth_routes.register(UserRegister(email=email, password=password), client=client, db=db)


def test_register_login_refresh_logout(db, client):
    registered = _register(db, client)
    assert registered.is_new_user is True
    assert registered.user.plan == "trial"

    logged_in = auth_routes.login(UserLogin(email="ADA@example.com", password="correct-horse"), client=client, db=db)
    user = deps.get_current_user(_bearer(logged_in.access_token), db)
    assert user.email == "ada@example.com"
    assert auth_routes.get_active_sessions(current_user=user, db=db).active_sessions == 2

    refreshed = auth_routes.refresh_token(RefreshTokenRequest(refresh_token=logged_in.refresh_token), client=client, db=db)
    assert refreshed.refresh_token != logged_in.refresh_token
    with pytest.raises(CredentialInvalidError):
        auth_routes.refresh_token(RefreshTokenRequest(refresh_token=logged_in.refresh_token), client=client, db=db)

    out = auth_routes.logout(LogoutRequest(refresh_token=refreshed.refresh_token), client=client, db=db)
    assert out.revoked == 1
    assert auth_routes.logout(None, client=client, db=db).revoked == 0


def test_logout_everywhere(db, client):
    registered = _register(db, client)
    user = deps.get_current_user(_bearer(registered.access_token), db)
    auth_routes.login(UserLogin(email="ada@example.com", password="correct-horse"), client=client, db=db)

    result = auth_routes.logout_everywhere(current_user=user, db=db)

    assert result.revoked == 2
    with pytest.raises(CredentialInvalidError):
        auth_routes.refresh_token(RefreshTokenRequest(refresh_token=registered.refresh_token), client=client, db=db)


def test_duplicate_registration_conflicts(db, client):
    _register(db, client)
    with pytest.raises(ResourceAlreadyExistsError):
        _register(db, client)


def test_registration_adds_password_to_oauth_account(db, client):
    user_service.create_user(db, {
        "email": "ada@example.com",
        "auth_providers": [AuthProvider.GOOGLE.value],
        "provider_ids": {"google": "g-1"},
    })

    result = _register(db, client)

    assert result.is_new_user is False
    assert set(result.user.auth_providers) == {"google", "email"}


def test_wrong_password_locks_account(db, client):
    _register(db, client)
    bad = UserLogin(email="ada@example.com", password="wrong-password")

    for _ in range(user_service.MAX_FAILED_ATTEMPTS - 1):
        with pytest.raises(InvalidCredentialsError):
            auth_routes.login(bad, client=client, db=db)
    with pytest.raises(AccountLockedError):
        auth_routes.login(bad, client=client, db=db)
    with pytest.raises(AccountLockedError):
        auth_routes.login(UserLogin(email="ada@example.com", password="correct-horse"), client=client, db=db)


def test_login_password_check_runs_with_no_open_transaction(db, client, monkeypatch):
    _register(db, client)
    states = []
    real_verify = user_service_module.verify_password

    def recording_verify(password, hashed_password):
        states.append(db.in_transaction())
        return real_verify(password, hashed_password)

    monkeypatch.setattr(user_service_module, "verify_password", recording_verify)

    auth_routes.login(UserLogin(email="ada@example.com", password="correct-horse"), client=client, db=db)

    assert states == [False]


def test_login_rate_limited(db, client, monkeypatch):
    monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_PER_MINUTE", 1)
    _register(db, client)
    creds = UserLogin(email="ada@example.com", password="correct-horse")

    auth_routes.login(creds, client=client, db=db)
    with pytest.raises(RateLimitExceededError) as excinfo:
        auth_routes.login(creds, client=client, db=db)
    assert excinfo.value.details["retry_after"] > 0


def test_access_token_for_disabled_user_is_rejected(db, client):
    registered = _register(db, client)
    user_service.update_user(db, registered.user.id, {"is_active": False})

    with pytest.raises(CredentialInvalidError):
        deps.get_current_user(_bearer(registered.access_token), db)
    with pytest.raises(CredentialInvalidError):
        deps.get_current_user(None, db)
    with pytest.raises(CredentialInvalidError):
        deps.get_current_user(_bearer("not-a-token"), db)


def test_identity_bridge_key(monkeypatch):
    deps.require_identity_bridge("test-bridge-key")
    with pytest.raises(AuthorizationError):
        deps.require_identity_bridge("wrong")
    with pytest.raises(AuthorizationError):
        deps.require_identity_bridge(None)

    monkeypatch.setattr(settings, "IDENTITY_BRIDGE_KEY", "")
    with pytest.raises(ResourceNotFoundError):
        deps.require_identity_bridge("test-bridge-key")


def test_oauth_exchange_and_provider_management(db, client):
    _register(db, client)
    assertion = IdentityAssertion(email="ada@example.com", provider="google", provider_id="g-42")

    exchanged = auth_routes.oauth_exchange(assertion, client=client, db=db)

    assert exchanged.is_new_user is False
    assert exchanged.account_linked is True
    user = deps.get_current_user(_bearer(exchanged.access_token), db)
    providers = auth_routes.get_providers(current_user=user, db=db)
    assert set(providers.providers) == {"email", "google"}

    remaining = auth_routes.unlink_provider(AuthProvider.GOOGLE, current_user=user, db=db)
    assert remaining.providers == ["email"]
    assert remaining.has_password is True


def test_admin_revocations_and_audit(db, client):
    admin = user_service.ensure_admin_user(db, "root@example.com", "admin-password-1")
    target = _register(db, client)
    auth_routes.login(UserLogin(email="ada@example.com", password="correct-horse"), client=client, db=db)

    with pytest.raises(AuthorizationError):
        deps.get_current_admin_user(deps.get_current_user(_bearer(target.access_token), db))
    assert deps.get_current_admin_user(admin) is admin

    request = SimpleNamespace(client=None)
    by_family = admin_routes.revoke_token_family(
        _family_of(db, target.user.id, 1), request, current_user=admin, db=db
    )
    assert by_family.revoked == 1

    by_user = admin_routes.revoke_user_sessions(target.user.id, request, current_user=admin, db=db)
    assert by_user.revoked == 1
    with pytest.raises(ResourceNotFoundError):
        admin_routes.revoke_user_sessions("missing", request, current_user=admin, db=db)

    events = admin_routes.get_audit_events(limit=10, action=None, current_user=admin, db=db)
    actions = {event.action for event in events}
    assert {"admin_revoke_token_family", "admin_revoke_user_sessions"} <= actions
    assert db.query(AuditEvent).count() == 2

    report = admin_routes.run_token_sweep(current_user=admin, db=db)["report"]
    assert report["purged"] == 0
    assert report["revoked"] == 2


def _family_of(db, user_id, index):
    from app.models.refresh_token import RefreshToken

    records = (
        db.query(RefreshToken)
        .filter(RefreshToken.user_id == user_id)
        .order_by(RefreshToken.created_at)
        .all()
    )
    return records[index].token_family
