import pytest
from flask_login import current_user

import app as dashboard
from app import db, authenticate, sign_in, AuthError, User


def test_bad_password(app, user):
    with app.test_request_context():
        assert authenticate({"email": "admin@example.com", "password": "wrong"}) == "Invalid email or password."


def test_unknown_email(app, user):
    with app.test_request_context():
        assert authenticate({"email": "ghost@example.com", "password": "secret123"}) == "Invalid email or password."


def test_deactivated_account(app, user):
    user.active = False
    db.session.commit()
    with app.test_request_context():
        assert authenticate({"email": "admin@example.com", "password": "secret123"}) == "Failed to sign in."


def test_success_returns_nothing_and_logs_in(app, user):
    with app.test_request_context():
        assert authenticate({"email": " Admin@Example.com ", "password": "secret123"}) is None
        assert current_user.is_authenticated
        assert current_user.email == "admin@example.com"


def test_unrecognized_provider_failure_propagates(app, monkeypatch):
    def broken(email, password):
        raise RuntimeError("identity provider unreachable")

    monkeypatch.setattr(dashboard, "sign_in", broken)
    with app.test_request_context():
        with pytest.raises(RuntimeError, match="unreachable"):
            authenticate({"email": "admin@example.com", "password": "x"})


def test_sign_in_raises_typed_errors(app, user):
    with app.test_request_context():
        with pytest.raises(AuthError) as excinfo:
            sign_in("admin@example.com", "nope")
    assert excinfo.value.type == "CredentialsSignin"


def test_password_is_hashed(app, user):
    stored = db.session.get(User, user.id)
    assert stored.password_hash != "secret123"
    assert stored.check_password("secret123")
