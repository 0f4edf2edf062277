import re
from datetime import timedelta

from models import db
from models.otp_tracking import OtpTracking
from models.user import User
from utils.audit import log_event
from utils.clock import utcnow


def _sign_in(csrf_post, email, password="correct-horse"):
    resp = csrf_post("/auth/signin", {"email": email, "password": password})
    assert resp.status_code == 200
    return resp


class TestAdminConsole:
    """Security console endpoints under /admin/security."""

    def test_anonymous_and_plain_users_are_refused(self, client, csrf_post, make_user):
        assert client.get("/admin/security/events").status_code == 401

        make_user("user@example.com")
        _sign_in(csrf_post, "user@example.com")
        assert client.get("/admin/security/events").status_code == 403

    def test_events_can_be_filtered_by_severity(self, client, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        log_event("FRAUD_ALERT", metadata={"rule": "High Velocity"}, severity="HIGH")
        _sign_in(csrf_post, "admin@example.com")

        resp = client.get("/admin/security/events?severity=high")
        assert resp.status_code == 200
        events = resp.get_json()["events"]
        assert events
        assert {e["severity"] for e in events} == {"HIGH"}
        assert "FRAUD_ALERT" in {e["action"] for e in events}

    def test_manual_lock_and_unlock(self, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        make_user("user@example.com")
        _sign_in(csrf_post, "admin@example.com")

        assert csrf_post("/admin/security/lock", {"email": "user@example.com", "reason": "chargeback"}).status_code == 200
        db.session.expire_all()
        locked = User.query.filter_by(email="user@example.com").one()
        assert locked.is_locked
        assert locked.lock_reason == "chargeback"

        assert csrf_post("/admin/security/unlock", {"email": "user@example.com"}).status_code == 200
        db.session.expire_all()
        assert not User.query.filter_by(email="user@example.com").one().is_locked

    def test_locked_user_cannot_sign_in(self, client, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        make_user("user@example.com")
        _sign_in(csrf_post, "admin@example.com")
        csrf_post("/admin/security/lock", {"email": "user@example.com"})
        csrf_post("/auth/signout")

        resp = csrf_post("/auth/signin", {"email": "user@example.com", "password": "correct-horse"})
        assert resp.status_code == 423
        assert "unlock link" in resp.get_json()["message"]

    def test_root_admin_cannot_be_locked(self, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        make_user("root@example.com", roles=("SUPER_ADMIN",))
        _sign_in(csrf_post, "admin@example.com")

        resp = csrf_post("/admin/security/lock", {"email": "root@example.com"})
        assert resp.status_code == 403

    def test_unknown_target(self, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        _sign_in(csrf_post, "admin@example.com")
        assert csrf_post("/admin/security/lock", {"email": "ghost@example.com"}).status_code == 404

    def test_clear_otp_lockout(self, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        now = utcnow()
        db.session.add(OtpTracking(
            email="stuck@example.com",
            ip_address="127.0.0.1",
            otp_request_count=5,
            failed_otp_attempts=0,
            requires_captcha=True,
            lockout_until=now + timedelta(minutes=10),
            created_at=now,
        ))
        db.session.commit()

        assert csrf_post("/auth/send-otp", {"email": "stuck@example.com"}).status_code == 429

        _sign_in(csrf_post, "admin@example.com")
        resp = csrf_post("/admin/security/otp/unlock-email", {"email": "stuck@example.com"})
        assert resp.status_code == 200
        assert resp.get_json()["cleared"] == 1

        assert csrf_post("/auth/send-otp", {"email": "stuck@example.com"}).status_code == 200

    def test_admin_posts_need_csrf(self, client, csrf_post, make_user):
        make_user("admin@example.com", roles=("ADMIN",))
        make_user("user@example.com")
        _sign_in(csrf_post, "admin@example.com")

        resp = client.post("/admin/security/lock", json={"email": "user@example.com"})
        assert resp.status_code == 403


class TestSecurityLinks:
    """Root admin lock link emailed during an attack, and the unlock link after."""

    def _attack(self, csrf_post, attempts=5):
        for _ in range(attempts):
            csrf_post("/auth/signin", {"email": "root@example.com", "password": "wrong-password"})

    def test_root_admin_is_never_auto_locked(self, csrf_post, make_user, outbox):
        make_user("root@example.com", roles=("SUPER_ADMIN",))
        self._attack(csrf_post, attempts=6)

        attack_mails = [m for m in outbox if m[0] == "root@example.com" and "attack" in m[1]]
        assert len(attack_mails) == 1
        _sign_in(csrf_post, "root@example.com")

    def test_lock_then_unlock_by_link(self, client, csrf_post, make_user, outbox):
        make_user("root@example.com", roles=("SUPER_ADMIN",))
        self._attack(csrf_post)
        body = next(b for to, s, b in outbox if to == "root@example.com" and "attack" in s)
        lock_token = re.search(r"/security/lock-account/([0-9a-f]{64})", body).group(1)

        resp = client.post("/auth/security/lock-account", json={"token": lock_token})
        assert resp.status_code == 200
        assert resp.get_json()["message"] == "Account has been successfully locked"
        assert csrf_post("/auth/signin", {"email": "root@example.com", "password": "correct-horse"}).status_code == 423

        # the lock token is single use
        assert client.post("/auth/security/lock-account", json={"token": lock_token}).status_code == 400

        unlock_body = next(b for to, s, b in outbox if to == "root@example.com" and s == "Your account is locked")
        unlock_token = re.search(r"/security/unlock-account/([0-9a-f]{64})", unlock_body).group(1)
        resp = client.post("/auth/security/unlock-account", json={"token": unlock_token})
        assert resp.status_code == 200
        _sign_in(csrf_post, "root@example.com")

    def test_bad_tokens(self, client):
        assert client.post("/auth/security/lock-account", json={}).status_code == 400
        assert client.post("/auth/security/unlock-account", json={"token": "nope"}).status_code == 400
