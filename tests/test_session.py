from datetime import timedelta

from freezegun import freeze_time

from models.session import Session
from security.session import create_session, get_session_from_request, revoke_all_sessions, revoke_session


def _lookup(app, raw_token):
    cookie = f"{app.config['AUTH_COOKIE_NAME']}={raw_token}"
    with app.test_request_context("/auth/me", headers={"Cookie": cookie}):
        return get_session_from_request()


class TestServerSessions:
    """Hashed session rows with absolute and idle expiry."""

    def test_only_the_hash_is_stored(self, app, make_user):
        user = make_user()
        with app.test_request_context("/auth/signin", method="POST"):
            raw = create_session(user.id)

        row = Session.query.filter_by(user_id=user.id).one()
        assert row.token_hash != raw
        assert len(row.token_hash) == 64
        assert row.last_seen_at == row.created_at

    def test_idle_session_is_rejected(self, app, make_user):
        with freeze_time("2026-03-01 08:00:00") as frozen:
            user = make_user()
            with app.test_request_context("/auth/signin", method="POST"):
                raw = create_session(user.id)

            frozen.tick(timedelta(minutes=19))
            assert _lookup(app, raw) is not None
            frozen.tick(timedelta(minutes=19))
            assert _lookup(app, raw) is not None
            frozen.tick(timedelta(minutes=20))
            assert _lookup(app, raw) is None

    def test_revoked_sessions_are_rejected(self, app, make_user):
        user = make_user()
        with app.test_request_context("/auth/signin", method="POST"):
            first = create_session(user.id)
            second = create_session(user.id)

        assert revoke_session(first) is True
        assert _lookup(app, first) is None
        assert revoke_all_sessions(user.id) == 1
        assert _lookup(app, second) is None
