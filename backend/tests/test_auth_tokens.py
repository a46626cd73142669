import pytest
from fastapi import HTTPException

from factories import make_token
from myhometech.core.auth import CurrentUser, get_current_user, require_roles
from myhometech.core.config import get_settings


def _bearer(token: str) -> str:
    return f"Bearer {token}"


def test_valid_token_yields_identity_and_role():
    user = get_current_user(authorization=_bearer(make_token(7, "technician", email="tech@test.local")))
    assert user == CurrentUser(id=7, role="TECHNICIAN", email="tech@test.local")


def test_missing_bearer_prefix_is_401():
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=make_token(7, "CLIENT"))
    assert exc.value.status_code == 401


def test_wrong_secret_is_401():
    token = make_token(7, "CLIENT", secret="some-other-secret-entirely-000000")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=_bearer(token))
    assert exc.value.status_code == 401


@pytest.mark.parametrize("sub", ["abc", "0", "-3"])
def test_non_positive_or_non_numeric_subject_is_401(sub):
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=_bearer(make_token(sub, "CLIENT")))
    assert exc.value.status_code == 401


@pytest.mark.parametrize("role", [None, "SUPERUSER"])
def test_missing_or_unknown_role_is_403(role):
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=_bearer(make_token(7, role)))
    assert exc.value.status_code == 403


def test_audience_enforced_when_configured(monkeypatch):
    monkeypatch.setenv("JWT_AUDIENCE", "myhometech")
    get_settings.cache_clear()

    ok = get_current_user(authorization=_bearer(make_token(1, "CLIENT", aud="myhometech")))
    assert ok.id == 1

    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=_bearer(make_token(1, "CLIENT", aud="other")))
    assert exc.value.status_code == 401


def test_unconfigured_secret_is_500(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "")
    get_settings.cache_clear()
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization="Bearer whatever")
    assert exc.value.status_code == 500


def test_require_roles():
    dependency = require_roles("CLIENT", "ADMIN")
    admin = CurrentUser(id=1, role="ADMIN")
    assert dependency(user=admin) is admin
    with pytest.raises(HTTPException) as exc:
        dependency(user=CurrentUser(id=2, role="TECHNICIAN"))
    assert exc.value.status_code == 403
