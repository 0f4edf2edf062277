from freezegun import freeze_time

from security.otp import (
    NOT_FOUND_MESSAGE,
    OtpPurpose,
    consume_reset_grant,
    consume_signup_verified,
    generate_code,
    issue_challenge,
    issue_reset_grant,
    mark_signup_verified,
    verify_challenge,
)
from security.store import get_store

EMAIL = "seller@example.com"


class TestChallenges:
    """Issue, guess and consume one-time codes."""

    def test_code_is_six_digits(self, app):
        code = generate_code()
        assert len(code) == 6 and code.isdigit()

    def test_only_hash_is_stored(self, app):
        code = issue_challenge(EMAIL, OtpPurpose.SIGNUP)
        stored = get_store("otp").get(f"otp:signup:{EMAIL}")
        assert code not in str(stored)

    def test_correct_code_is_accepted_exactly_once(self, app):
        code = issue_challenge(EMAIL, OtpPurpose.LOGIN, subject_id=9)
        assert verify_challenge(EMAIL, code, OtpPurpose.LOGIN) == (True, "OTP verified successfully", 9)
        assert verify_challenge(EMAIL, code, OtpPurpose.LOGIN) == (False, NOT_FOUND_MESSAGE, None)

    def test_new_request_overwrites_previous_code(self, app):
        old = issue_challenge(EMAIL, OtpPurpose.SIGNUP)
        new = issue_challenge(EMAIL, OtpPurpose.SIGNUP)
        if old != new:
            assert verify_challenge(EMAIL, old, OtpPurpose.SIGNUP)[0] is False
        assert verify_challenge(EMAIL, new, OtpPurpose.SIGNUP)[0] is True

    def test_purposes_do_not_share_challenges(self, app):
        code = issue_challenge(EMAIL, OtpPurpose.SIGNUP)
        assert verify_challenge(EMAIL, code, OtpPurpose.FORGOT_PASSWORD) == (False, NOT_FOUND_MESSAGE, None)

    def test_three_wrong_guesses_destroy_challenge(self, app):
        code = issue_challenge(EMAIL, OtpPurpose.SIGNUP)
        wrong = "000000" if code != "000000" else "111111"

        assert verify_challenge(EMAIL, wrong, OtpPurpose.SIGNUP)[1] == "Invalid OTP. 2 attempts remaining."
        assert verify_challenge(EMAIL, wrong, OtpPurpose.SIGNUP)[1] == "Invalid OTP. 1 attempt remaining."
        assert verify_challenge(EMAIL, wrong, OtpPurpose.SIGNUP)[1] == "Too many failed attempts. Please request a new OTP."
        assert verify_challenge(EMAIL, code, OtpPurpose.SIGNUP) == (False, NOT_FOUND_MESSAGE, None)

    def test_expired_challenge(self, app):
        with freeze_time("2026-02-01 08:00:00") as frozen:
            code = issue_challenge(EMAIL, OtpPurpose.SIGNUP)
            frozen.tick(601)
            ok, message, _ = verify_challenge(EMAIL, code, OtpPurpose.SIGNUP)
        assert not ok
        # the store dropped it inline
        assert message == NOT_FOUND_MESSAGE


class TestGrants:
    """Markers handed from a verified OTP to the next step."""

    def test_signup_marker_is_single_use(self, app):
        mark_signup_verified(EMAIL)
        assert consume_signup_verified(EMAIL.upper())
        assert not consume_signup_verified(EMAIL)

    def test_reset_grant_expires(self, app):
        with freeze_time("2026-02-01 08:00:00") as frozen:
            issue_reset_grant(5)
            frozen.tick(601)
            assert not consume_reset_grant(5)
