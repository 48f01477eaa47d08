from __future__ import annotations

import re

import pytest
from flask import Flask, session
from werkzeug.security import generate_password_hash

from routedesk import auth, mailer, services
from routedesk.config import Settings


class UserStore:
    def __init__(self) -> None:
        self.users = {}
        self.next_id = 1

    def add(self, email, password, roles, verified=True, **extra):
        user = {
            "id": self.next_id,
            "email": email,
            "password_hash": generate_password_hash(password),
            "roles": roles,
            "email_verified": verified,
            **extra,
        }
        self.users[user["id"]] = user
        self.next_id += 1
        return user

    def get_user(self, user_id):
        user = self.users.get(user_id)
        return dict(user) if user else None

    def get_user_by_email(self, email):
        for user in self.users.values():
            if user["email"].lower() == email.strip().lower():
                return dict(user)
        return None

    def create_user(self, values):
        user_id = self.next_id
        self.users[user_id] = {"id": user_id, **values}
        self.next_id += 1
        return user_id

    def update_user(self, user_id, values):
        self.users[user_id].update(values)


@pytest.fixture
def store(monkeypatch):
    users = UserStore()
    for name in ("get_user", "get_user_by_email", "create_user", "update_user"):
        monkeypatch.setattr(services, name, getattr(users, name))
    return users


@pytest.fixture
def mails(monkeypatch):
    sent = []

    def fake_send(settings, to, subject, body):
        sent.append({"to": to, "subject": subject, "body": body})
        return True

    monkeypatch.setattr(mailer, "send_mail", fake_send)
    return sent


@pytest.fixture
def app():
    flask_app = Flask(__name__)
    settings = Settings(database_url="postgresql://unused", secret_key="auth-test-secret")
    flask_app.config["SECRET_KEY"] = settings.secret_key
    flask_app.config["ROUTEDESK_SETTINGS"] = settings
    return flask_app


def token_from(body: str) -> str:
    return re.search(r"(?:verify-email/|token=)([^\s]+)", body).group(1)


def test_role_checks():
    admin = {"roles": ["admin"]}
    editor = {"roles": ["editor"]}
    assert auth.can_enter(admin) and auth.can_delete(admin)
    assert not auth.can_enter(editor)
    assert auth.can_read(editor) and auth.can_edit(editor)
    assert not auth.check_authorization(None, ["admin"])
    assert not auth.check_authorization({"roles": ["administrator"]}, ["admin"])


def test_public_user_hides_the_password_hash():
    assert auth.public_user({"id": 1, "password_hash": "x"}) == {"id": 1}
    assert auth.public_user(None) is None


def test_sign_in_rejects_bad_credentials(app, store):
    store.add("ops@fleet.test", "secret1", ["vendor"])
    with app.test_request_context():
        result = auth.sign_in("ops@fleet.test", "wrong")
        assert not result.ok
        assert result.notice.level == "error"
        assert "user_id" not in session


def test_sign_in_requires_a_verified_email(app, store):
    store.add("ops@fleet.test", "secret1", ["vendor"], verified=False)
    with app.test_request_context():
        result = auth.sign_in("ops@fleet.test", "secret1")
        assert not result.ok
        assert result.notice.level == "warning"
        assert result.redirect == auth.PLEASE_VERIFY_EMAIL_PATH


def test_sign_in_redirects_to_the_role_dashboard(app, store):
    user = store.add("ops@fleet.test", "secret1", ["vendor"], vendor_id=7)
    with app.test_request_context():
        result = auth.sign_in("OPS@fleet.test", "secret1")
        assert result.ok
        assert result.redirect == "/dashboard/vendor"
        assert session["user_id"] == user["id"]
        assert auth.current_user()["vendor_id"] == 7
        assert "password_hash" not in result.to_dict()["user"]


def test_sign_in_without_an_entry_role_signs_out(app, store):
    store.add("rider@fleet.test", "secret1", ["user"])
    with app.test_request_context():
        result = auth.sign_in("rider@fleet.test", "secret1")
        assert not result.ok
        assert result.notice.level == "warning"
        assert result.redirect == auth.LOGIN_PATH
        assert "user_id" not in session


def test_sign_up_creates_an_unverified_user_and_mails_a_link(app, store, mails):
    with app.test_request_context():
        result = auth.sign_up({"email": "new@fleet.test", "password": "secret1", "full_name": "New Person"})
        assert result.ok
        assert result.redirect == auth.VERIFY_EMAIL_PATH

        user = store.get_user_by_email("new@fleet.test")
        assert user["roles"] == ["user"]
        assert user["permissions"] == ["canList"]
        assert user["email_verified"] is False
        assert user["display_name"] == "New Person"
        assert user["password_hash"] != "secret1"
        assert mails[0]["to"] == "new@fleet.test"

        verified = auth.verify_email(token_from(mails[0]["body"]))
        assert verified.ok
        assert store.get_user(user["id"])["email_verified"] is True


def test_sign_up_validation(app, store, mails):
    store.add("taken@fleet.test", "secret1", ["user"])
    with app.test_request_context():
        assert not auth.sign_up({"email": "nope", "password": "secret1"}).ok
        assert not auth.sign_up({"email": "short@fleet.test", "password": "123"}).ok
        assert not auth.sign_up({"email": "taken@fleet.test", "password": "secret1"}).ok
    assert mails == []


def test_verify_email_rejects_tampered_tokens(app, store):
    with app.test_request_context():
        result = auth.verify_email("not-a-token")
        assert not result.ok
        assert result.notice.level == "error"


def test_forgot_and_reset_password(app, store, mails):
    user = store.add("ops@fleet.test", "secret1", ["vendor"])
    old_hash = user["password_hash"]
    with app.test_request_context():
        unknown = auth.forgot_password("ghost@fleet.test")
        assert unknown.ok
        assert mails == []

        result = auth.forgot_password("ops@fleet.test")
        assert result.ok
        assert result.notice.message == unknown.notice.message
        token = token_from(mails[0]["body"])

        assert not auth.reset_password(token, "123").ok
        assert auth.reset_password(token, "newsecret").ok
        assert auth.sign_in("ops@fleet.test", "newsecret").ok
        assert store.get_user(user["id"])["password_hash"] != old_hash


def test_role_required_guard(app, store):
    user = store.add("ops@fleet.test", "secret1", ["vendor"])

    @auth.role_required(auth.ROLE_ADMIN)
    def admin_only():
        return "ok"

    with app.test_request_context():
        response, status = admin_only()
        assert status == 401

    with app.test_request_context():
        session["user_id"] = user["id"]
        response, status = admin_only()
        assert status == 403

    user_admin = store.add("admin@fleet.test", "secret1", ["admin"])
    with app.test_request_context():
        session["user_id"] = user_admin["id"]
        assert admin_only() == "ok"


def test_reset_link_works_only_once(app, store, mails):
    user = store.add("ops@fleet.test", "secret1", ["vendor"])
    with app.test_request_context():
        auth.forgot_password("ops@fleet.test")
        token = token_from(mails[0]["body"])

        assert auth.reset_password(token, "newsecret").ok
        replay = auth.reset_password(token, "attacker1")
        assert not replay.ok
        assert replay.notice.level == "error"
        assert auth.sign_in("ops@fleet.test", "newsecret").ok
        assert not auth.sign_in("ops@fleet.test", "attacker1").ok
    assert store.get_user(user["id"])["email"] == "ops@fleet.test"
