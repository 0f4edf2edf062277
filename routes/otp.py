from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.user import User
from routes.auth import start_session_response
from security.bruteforce import remaining_lock_ms, lock_message, record_success
from security.csrf import csrf_guard
from security.otp import (
    OtpPurpose,
    NOT_FOUND_MESSAGE,
    issue_challenge,
    discard_challenge,
    verify_challenge,
    mark_signup_verified,
    issue_reset_grant,
)
from security.otp_gate import otp_captcha_gate, current_tracking, record_otp_request, record_otp_failure, reset_tracking
from security.pipeline import guarded
from security.rate_limit import rate_limit_guard
from utils import emailer
from utils.audit import log_event
from utils.auth_context import session_guard
from utils.client import client_ip
from utils.errors import LockedError, RateLimitedError, TransientDependencyError
from utils.validators import is_valid_email, normalize_email

otp_bp = Blueprint("otp", __name__, url_prefix="/auth")

_TEMPLATE_FOR = {
    OtpPurpose.SIGNUP: "otp_signup",
    OtpPurpose.LOGIN: "otp_login",
    OtpPurpose.FORGOT_PASSWORD: "otp_forgot_password",
    OtpPurpose.PROFILE_EMAIL: "otp_profile_email",
}


def _ensure_unlocked(user: User):
    if user.is_locked:
        raise LockedError("Account is locked. Use the unlock link sent to your email or contact support.")
    remaining = remaining_lock_ms(user.id, user.email)
    if remaining > 0:
        message, minutes = lock_message(remaining)
        raise LockedError(f"{message} You can also reset your password.", retry_after_minutes=minutes)


def _send_code(email: str, purpose: OtpPurpose, subject_id=None):
    tracking = current_tracking()
    if record_otp_request(tracking):
        raise RateLimitedError("Too many OTP requests. Please try again in 15 minutes.", requiresCaptcha=False)

    code = issue_challenge(email, purpose, subject_id=subject_id)
    minutes = max(current_app.config.get("OTP_TTL_SECONDS", 600) // 60, 1)
    if not emailer.send_security_email(_TEMPLATE_FOR[purpose], email, {"code": code, "minutes": minutes}):
        discard_challenge(email, purpose)
        raise TransientDependencyError("Failed to send OTP. Please try again.")

    log_event("OTP_SENT", user_id=subject_id, metadata={"email": email, "purpose": purpose.value})
    return jsonify(
        success=True,
        message="OTP sent successfully",
        requiresCaptcha=tracking.requires_captcha,
    ), 200


def _email_from_body() -> str:
    return normalize_email((request.get_json(silent=True) or {}).get("email"))


@otp_bp.post("/send-otp")
@guarded(rate_limit_guard("otp_send"), csrf_guard, otp_captcha_gate)
def send_signup_otp():
    email = _email_from_body()
    if not is_valid_email(email):
        return jsonify(success=False, message="Invalid email"), 400
    if User.query.filter_by(email=email).first():
        return jsonify(success=False, message="An account with this email already exists"), 400
    return _send_code(email, OtpPurpose.SIGNUP)


@otp_bp.post("/send-login-otp")
@guarded(rate_limit_guard("otp_send"), csrf_guard, otp_captcha_gate)
def send_login_otp():
    email = _email_from_body()
    user = User.query.filter_by(email=email).first()
    if not user:
        return jsonify(success=False, message="No account found with this email"), 404
    _ensure_unlocked(user)
    return _send_code(email, OtpPurpose.LOGIN, subject_id=user.id)


@otp_bp.post("/send-forgot-password-otp")
@guarded(rate_limit_guard("forgot_password"), csrf_guard, otp_captcha_gate)
def send_forgot_password_otp():
    email = _email_from_body()
    user = User.query.filter_by(email=email).first()
    if not user:
        return jsonify(success=False, message="No account found with this email"), 404
    return _send_code(email, OtpPurpose.FORGOT_PASSWORD, subject_id=user.id)


@otp_bp.post("/send-profile-email-otp")
@guarded(session_guard, rate_limit_guard("otp_send"), csrf_guard, otp_captcha_gate)
def send_profile_email_otp():
    email = _email_from_body()
    if not is_valid_email(email):
        return jsonify(success=False, message="Invalid email"), 400
    taken = User.query.filter_by(email=email).first()
    if taken and taken.id != g.user.id:
        return jsonify(success=False, message="Email is already in use by another account"), 400
    return _send_code(email, OtpPurpose.PROFILE_EMAIL, subject_id=g.user.id)


@otp_bp.post("/verify-otp")
@guarded(rate_limit_guard("otp_verify"), csrf_guard, otp_captcha_gate)
def verify_otp():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    code = str(data.get("otp") or "").strip()
    try:
        purpose = OtpPurpose(data.get("purpose") or OtpPurpose.SIGNUP.value)
    except ValueError:
        return jsonify(success=False, message="Unknown OTP purpose"), 400
    if not code:
        return jsonify(success=False, message="OTP is required"), 400

    tracking = current_tracking()
    ok, message, subject_id = verify_challenge(email, code, purpose)
    if not ok:
        if message != NOT_FOUND_MESSAGE:
            record_otp_failure(tracking)
        return jsonify(success=False, message=message, requiresCaptcha=tracking.requires_captcha), 400

    if purpose is OtpPurpose.SIGNUP:
        mark_signup_verified(email)
        return jsonify(success=True, message="Email verified successfully"), 200

    if purpose is OtpPurpose.FORGOT_PASSWORD:
        issue_reset_grant(subject_id)
        log_event("PASSWORD_RESET_OTP_VERIFIED", user_id=subject_id)
        return jsonify(success=True, message="OTP verified. You can now reset your password.", userId=subject_id), 200

    user = db.session.get(User, subject_id)
    if user is None:
        return jsonify(success=False, message="No account found with this email"), 404

    if purpose is OtpPurpose.PROFILE_EMAIL:
        previous = user.email
        user.email = email
        db.session.commit()
        reset_tracking(tracking)
        log_event("PROFILE_EMAIL_CHANGED", user_id=user.id, metadata={"from": previous, "to": email})
        return jsonify(success=True, message="Email updated successfully"), 200

    # login
    _ensure_unlocked(user)
    reset_tracking(tracking)
    record_success(client_ip(), user_id=user.id)
    return start_session_response(user, "Signed in successfully"), 200
