"""
Shared fixtures.

The app runs against in-memory SQLite with background sweeps off. Every test
gets a fresh schema and a fresh set of in-memory stores. Outgoing email is
captured in ``outbox`` instead of touching SMTP.
"""
import re
from unittest.mock import patch

import pytest

from app import create_app
from config import Config
from models import db
from models.user import User
from security.password import hash_password
from utils.clock import utcnow
from utils.seed import seed_roles, grant_role


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SWEEPS_ENABLED = False
    REDIS_URL = None
    BCRYPT_ROUNDS = 4
    RECAPTCHA_SECRET_KEY = "test-recaptcha-secret"
    SMTP_HOST = "smtp.test.local"
    SMTP_FROM_EMAIL = "security@propertyguard.test"
    CLIENT_URL = "https://app.propertyguard.test"
    RATE_LIMITS = {
        "signin": (60, 1000),
        "signup": (60, 1000),
        "otp_send": (60, 1000),
        "otp_verify": (60, 1000),
        "forgot_password": (60, 1000),
        "otp_captcha": (60, 1000),
        "security_link": (60, 1000),
    }


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def outbox():
    """Every email the app tries to send, as (to, subject, body)."""
    sent = []

    def _fake_send(to_email, subject, body):
        sent.append((to_email, subject, body))
        return True, None

    with patch("utils.emailer.send_email", side_effect=_fake_send):
        yield sent


def last_code(outbox, to_email):
    for to, _, body in reversed(outbox):
        if to == to_email:
            match = re.search(r"\b(\d{6})\b", body)
            if match:
                return match.group(1)
    return None


@pytest.fixture
def make_user(app):
    def _make(email="user@example.com", username=None, password="correct-horse", roles=("USER",), **fields):
        user = User(
            email=email,
            username=username or email.split("@")[0],
            password_hash=hash_password(password),
            created_at=fields.pop("created_at", utcnow()),
            **fields,
        )
        db.session.add(user)
        db.session.commit()
        for role in roles:
            grant_role(user, role)
        return user
    return _make


@pytest.fixture
def csrf_post(client):
    """POST JSON with a freshly fetched CSRF token, the way the web client does."""
    def _post(url, payload=None, headers=None):
        token = client.get("/auth/csrf-token").get_json()["csrfToken"]
        merged = {"X-CSRF-Token": token}
        merged.update(headers or {})
        return client.post(url, json=payload or {}, headers=merged)
    return _post
