import logging
from datetime import timedelta

from flask import request, current_app, g
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.otp_tracking import OtpTracking
from security.captcha import verify_captcha_token
from security.events import log_security_event
from security.pipeline import GuardResult
from security.rate_limit import check_rate_limit
from utils.client import client_ip, user_agent
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def _window() -> timedelta:
    return timedelta(seconds=current_app.config.get("OTP_TRACKING_WINDOW_SECONDS", 600))


def _find(email: str, ip: str):
    return OtpTracking.query.filter_by(email=email, ip_address=ip).first()


def _roll_over(tracking: OtpTracking):
    """Start a new counting window once the current one is over. An active lockout is kept."""
    now = utcnow()
    if tracking.created_at + _window() > now:
        return
    (
        OtpTracking.query
        .filter(OtpTracking.id == tracking.id, OtpTracking.created_at <= now - _window())
        .update({
            OtpTracking.otp_request_count: 0,
            OtpTracking.failed_otp_attempts: 0,
            OtpTracking.requires_captcha: False,
            OtpTracking.created_at: now,
        }, synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(tracking)


def get_or_create_tracking(email: str, ip: str, ua: str = None) -> OtpTracking:
    """
    The tracking row for (email, ip), created on first use. A row whose
    window has passed gets its counters reset in place.
    """
    email = email.strip().lower()
    for attempt in range(2):
        tracking = _find(email, ip)
        if tracking is not None:
            _roll_over(tracking)
            return tracking

        tracking = OtpTracking(
            email=email,
            ip_address=ip,
            user_agent=(ua or "")[:255] or None,
            otp_request_count=0,
            failed_otp_attempts=0,
            requires_captcha=False,
            created_at=utcnow(),
        )
        db.session.add(tracking)
        try:
            db.session.commit()
            return tracking
        except IntegrityError:
            # a concurrent request created the row first
            db.session.rollback()
            if attempt:
                raise
    return None


def _evaluate(tracking: OtpTracking) -> bool:
    _roll_over(tracking)
    request_threshold = current_app.config.get("OTP_CAPTCHA_REQUEST_THRESHOLD", 3)
    failure_threshold = current_app.config.get("OTP_CAPTCHA_FAILURE_THRESHOLD", 3)
    tracking.requires_captcha = (
        tracking.otp_request_count >= request_threshold
        or tracking.failed_otp_attempts >= failure_threshold
    )
    return tracking.requires_captcha


def check_captcha_requirement(tracking: OtpTracking) -> bool:
    required = _evaluate(tracking)
    db.session.commit()
    return required


def _bump(tracking: OtpTracking, counter, stamp):
    # incremented in SQL so concurrent requests on the same row all count
    _roll_over(tracking)
    OtpTracking.query.filter_by(id=tracking.id).update(
        {counter: counter + 1, stamp: utcnow()}, synchronize_session=False
    )
    db.session.commit()
    db.session.refresh(tracking)


def increment_otp_request(tracking: OtpTracking) -> bool:
    _bump(tracking, OtpTracking.otp_request_count, OtpTracking.last_otp_at)
    return check_captcha_requirement(tracking)


def increment_failed_attempt(tracking: OtpTracking) -> bool:
    _bump(tracking, OtpTracking.failed_otp_attempts, OtpTracking.last_failed_attempt_at)
    return check_captcha_requirement(tracking)


def verify_captcha(tracking: OtpTracking):
    """Clears the requirement for this tracking row only."""
    tracking.requires_captcha = False
    tracking.captcha_verified_at = utcnow()
    db.session.commit()


def reset_tracking(tracking: OtpTracking):
    tracking.otp_request_count = 0
    tracking.failed_otp_attempts = 0
    tracking.requires_captcha = False
    tracking.captcha_verified_at = None
    tracking.last_failed_attempt_at = None
    db.session.commit()


def is_tracking_locked(tracking: OtpTracking) -> bool:
    return bool(tracking.lockout_until and tracking.lockout_until > utcnow())


def register_lockout(tracking: OtpTracking):
    seconds = current_app.config.get("OTP_LOCKOUT_SECONDS", 900)
    tracking.lockout_until = utcnow() + timedelta(seconds=seconds)
    db.session.commit()
    log_security_event("otp_lockout", {
        "email": tracking.email,
        "ip": tracking.ip_address,
        "requests": tracking.otp_request_count,
        "failures": tracking.failed_otp_attempts,
    })


def _over_lockout_threshold(count: int, last_at) -> bool:
    threshold = current_app.config.get("OTP_LOCKOUT_THRESHOLD", 5)
    window = timedelta(seconds=current_app.config.get("OTP_LOCKOUT_WINDOW_SECONDS", 900))
    return count >= threshold and last_at is not None and last_at >= utcnow() - window


def record_otp_request(tracking: OtpTracking) -> bool:
    """Count an OTP send. Returns True when this request tripped the lockout."""
    increment_otp_request(tracking)
    if _over_lockout_threshold(tracking.otp_request_count, tracking.last_otp_at):
        register_lockout(tracking)
        return True
    return False


def record_otp_failure(tracking: OtpTracking) -> bool:
    """Count a wrong OTP guess. Returns True when this failure tripped the lockout."""
    increment_failed_attempt(tracking)
    if _over_lockout_threshold(tracking.failed_otp_attempts, tracking.last_failed_attempt_at):
        register_lockout(tracking)
        return True
    return False


def clear_tracking_for_email(email: str) -> int:
    rows = OtpTracking.query.filter_by(email=email.strip().lower()).all()
    for row in rows:
        row.otp_request_count = 0
        row.failed_otp_attempts = 0
        row.requires_captcha = False
        row.lockout_until = None
    db.session.commit()
    return len(rows)


def current_tracking():
    return getattr(g, "otp_tracking", None)


def otp_captcha_gate():
    ip = client_ip()
    body = request.get_json(silent=True) or {}
    email = (body.get("email") or "").strip().lower()
    if not email:
        return GuardResult.deny(400, "Email is required")

    try:
        tracking = get_or_create_tracking(email, ip, user_agent())
        requires_captcha = check_captcha_requirement(tracking)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("OTP tracking unavailable for %s", email)
        return GuardResult.deny(500, "Failed to check OTP requirements")
    g.otp_tracking = tracking

    if is_tracking_locked(tracking):
        return GuardResult.deny(
            429,
            "Too many OTP requests. Please try again in 15 minutes.",
            requiresCaptcha=True,
        )

    if not requires_captcha:
        return GuardResult.allow()

    token = body.get("recaptchaToken")
    if not token:
        return GuardResult.deny(
            400,
            "reCAPTCHA verification is required due to multiple failed attempts or requests",
            requiresCaptcha=True,
        )

    # only calls that reach the provider count against the verification limit
    allowed, retry_after = check_rate_limit("otp_captcha", ip)
    if not allowed:
        log_security_event("otp_captcha_rate_limit_exceeded", {"ip": ip})
        return GuardResult.deny(
            429,
            "Too many reCAPTCHA verification attempts. Please try again later.",
            retry_after_seconds=retry_after,
        )

    result = verify_captcha_token(token, remote_ip=ip)
    if not result.success:
        log_security_event("otp_captcha_verification_failed", {
            "ip": ip,
            "email": email,
            "error_codes": result.error_codes,
        })
        if "timeout-or-duplicate" in result.error_codes:
            message = "reCAPTCHA token has expired or been used. Please try again."
        else:
            message = "reCAPTCHA verification failed. Please try again."
        return GuardResult.deny(400, message, requiresCaptcha=True)

    verify_captcha(tracking)
    return GuardResult.allow()
