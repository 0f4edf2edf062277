import logging
import secrets
from datetime import timedelta

from flask import request, current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.account_lockout import AccountLockout
from models.login_attempt import LoginAttempt, STATUS_FAILED, STATUS_SUCCESS
from models.user import User
from security.events import log_security_event, send_admin_alert
from security.pipeline import GuardResult
from utils import emailer
from utils.client import client_ip
from utils.clock import utcnow, window_start, ms_until, minutes_ceil

logger = logging.getLogger(__name__)


def _failure_window_start():
    return window_start(current_app.config.get("LOGIN_FAILURE_WINDOW_SECONDS", 900))


def _subject_keys(user_id=None, email=None) -> list:
    keys = []
    if user_id is not None:
        keys.append(str(user_id))
    if email:
        keys.append(email.strip().lower())
    return keys


def subject_key_for(user_id=None, identifier=None, email=None) -> str:
    # first available wins
    if user_id is not None:
        return str(user_id)
    return identifier or (email or "").strip().lower()


def failure_count(identifier: str) -> int:
    """Failed attempts for identifier in the trailing window. 0 if the log is unreadable."""
    try:
        return (
            LoginAttempt.query
            .filter(
                LoginAttempt.identifier == identifier,
                LoginAttempt.status == STATUS_FAILED,
                LoginAttempt.created_at >= _failure_window_start(),
            )
            .count()
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not count login failures for %s", identifier)
        return 0


def is_locked(user_id=None, email=None) -> bool:
    return remaining_lock_ms(user_id, email) > 0


def remaining_lock_ms(user_id=None, email=None) -> int:
    keys = _subject_keys(user_id, email)
    if not keys:
        return 0
    try:
        rows = (
            AccountLockout.query
            .filter(AccountLockout.subject_key.in_(keys), AccountLockout.unlock_at > utcnow())
            .all()
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not read lockouts for %s", keys)
        return 0
    return max((ms_until(r.unlock_at) for r in rows), default=0)


def lock_account(subject_key: str, attempts: int, ip: str = None, seconds: int = None) -> AccountLockout:
    """
    Upsert the lockout for subject_key. An active lock is only ever extended,
    never shortened.
    """
    seconds = seconds or current_app.config.get("ACCOUNT_LOCK_SECONDS", 1800)
    for attempt in range(2):
        now = utcnow()
        unlock_at = now + timedelta(seconds=seconds)
        row = AccountLockout.query.filter_by(subject_key=subject_key).first()
        if row is None:
            row = AccountLockout(
                subject_key=subject_key,
                attempts=attempts,
                locked_at=now,
                unlock_at=unlock_at,
                ip_address=ip,
            )
            db.session.add(row)
        elif row.unlock_at > now:
            row.unlock_at = max(row.unlock_at, unlock_at)
            row.attempts = attempts
            row.ip_address = ip
        else:
            row.locked_at = now
            row.unlock_at = unlock_at
            row.attempts = attempts
            row.ip_address = ip
        try:
            db.session.commit()
            return row
        except IntegrityError:
            # a concurrent request inserted the same subject first
            db.session.rollback()
            if attempt:
                raise
    return None


def clear_lockouts(user_id=None, email=None) -> int:
    keys = _subject_keys(user_id, email)
    if not keys:
        return 0
    deleted = AccountLockout.query.filter(AccountLockout.subject_key.in_(keys)).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def issue_root_admin_lock_token(user: User) -> tuple[str, bool]:
    """
    Returns (token, newly_issued). A still valid token is reused so that a
    link already emailed during the attack keeps working.
    """
    now = utcnow()
    if user.security_lock_token and user.security_lock_expires and user.security_lock_expires > now:
        return user.security_lock_token, False

    ttl = current_app.config.get("ROOT_ADMIN_LOCK_LINK_TTL_SECONDS", 86400)
    user.security_lock_token = secrets.token_hex(32)
    user.security_lock_expires = now + timedelta(seconds=ttl)
    db.session.commit()
    return user.security_lock_token, True


def _handle_root_admin_attack(user: User, identifier: str, attempts: int):
    send_admin_alert("root_admin_attack", {
        "user_id": user.id,
        "identifier": identifier,
        "attempts": attempts,
    }, user_id=user.id)
    token, newly_issued = issue_root_admin_lock_token(user)
    if newly_issued:
        lock_link = f"{current_app.config.get('CLIENT_URL')}/security/lock-account/{token}"
        emailer.send_security_email("root_admin_attack", user.email, {
            "attempts": attempts,
            "ip": identifier,
            "lock_link": lock_link,
        })


def _lock_and_notify(user_id, email, identifier: str, attempts: int):
    subject_key = subject_key_for(user_id, identifier, email)
    try:
        lock_account(subject_key, attempts, ip=identifier)
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("LOCK WRITE FAILED for %s after %s failures; account left unlocked", subject_key, attempts)
        return

    minutes = current_app.config.get("ACCOUNT_LOCK_SECONDS", 1800) // 60
    send_admin_alert("account_locked", {
        "user_id": user_id,
        "identifier": identifier,
        "attempts": attempts,
        "lockout_minutes": minutes,
    }, user_id=user_id)
    log_security_event("account_locked", {"user_id": user_id, "identifier": identifier}, user_id=user_id)
    if email:
        emailer.send_security_email("account_lockout", email, {
            "minutes": minutes,
            "attempts": attempts,
            "ip": identifier,
        })


def record_failure(identifier: str, user_id=None, email=None) -> int:
    """
    Log a failed login and apply the lockout policy.
    Returns the failure count in the trailing window (0 when the log could not be written).
    """
    try:
        db.session.add(LoginAttempt(
            identifier=identifier,
            user_id=user_id,
            status=STATUS_FAILED,
            created_at=utcnow(),
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not record failed login for %s", identifier)
        return 0

    attempts = failure_count(identifier)
    log_security_event("failed_login", {"identifier": identifier, "user_id": user_id, "attempts": attempts}, user_id=user_id)

    if attempts >= current_app.config.get("LOGIN_ALERT_THRESHOLD", 3):
        send_admin_alert("brute_force_detected", {
            "identifier": identifier,
            "user_id": user_id,
            "attempts": attempts,
            "window_minutes": current_app.config.get("LOGIN_FAILURE_WINDOW_SECONDS", 900) // 60,
        }, user_id=user_id)

    if attempts >= current_app.config.get("ACCOUNT_LOCK_THRESHOLD", 5) and user_id is not None:
        user = db.session.get(User, user_id)
        if user is not None and user.is_root_admin:
            _handle_root_admin_attack(user, identifier, attempts)
        else:
            _lock_and_notify(user_id, email or (user.email if user else None), identifier, attempts)

    return attempts


def record_success(identifier: str, user_id=None):
    """Log a success and forget this identifier's failures in the trailing window."""
    try:
        db.session.add(LoginAttempt(
            identifier=identifier,
            user_id=user_id,
            status=STATUS_SUCCESS,
            created_at=utcnow(),
        ))
        (
            LoginAttempt.query
            .filter(
                LoginAttempt.identifier == identifier,
                LoginAttempt.status == STATUS_FAILED,
                LoginAttempt.created_at >= _failure_window_start(),
            )
            .delete(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not record successful login for %s", identifier)


def purge_old_attempts(days: int = None) -> int:
    days = days or current_app.config.get("LOGIN_ATTEMPT_RETENTION_DAYS", 30)
    cutoff = utcnow() - timedelta(days=days)
    deleted = LoginAttempt.query.filter(LoginAttempt.created_at < cutoff).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def purge_expired_lockouts() -> int:
    deleted = AccountLockout.query.filter(AccountLockout.unlock_at <= utcnow()).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def lock_account_by_token(token: str) -> tuple[bool, str]:
    """Owner-initiated lock from the emailed link. Issues the long-lived unlock link."""
    user = User.query.filter(
        User.security_lock_token == token,
        User.security_lock_expires > utcnow(),
    ).first()
    if not user:
        return False, "Invalid or expired lock token"

    message = "Account is already locked" if user.is_locked else "Account has been successfully locked"
    unlock_token = secrets.token_hex(32)
    user.is_locked = True
    user.lock_reason = "Emergency Lock by User"
    user.security_lock_token = None
    user.security_lock_expires = None
    user.security_unlock_token = unlock_token
    user.security_unlock_expires = utcnow() + timedelta(days=current_app.config.get("UNLOCK_LINK_TTL_DAYS", 3650))
    db.session.commit()

    log_security_event("account_emergency_locked", {"user_id": user.id}, user_id=user.id)
    unlock_link = f"{current_app.config.get('CLIENT_URL')}/security/unlock-account/{unlock_token}"
    emailer.send_security_email("account_locked", user.email, {"unlock_link": unlock_link})
    return True, message


def unlock_account_by_token(token: str) -> tuple[bool, str]:
    user = User.query.filter(
        User.security_unlock_token == token,
        User.security_unlock_expires > utcnow(),
    ).first()
    if not user:
        return False, "Invalid or expired unlock token"

    message = "Account has been successfully unlocked" if user.is_locked else "Account is already active"
    user.is_locked = False
    user.lock_reason = None
    user.security_unlock_token = None
    user.security_unlock_expires = None
    user.security_lock_token = None
    user.security_lock_expires = None
    db.session.commit()
    clear_lockouts(user.id, user.email)

    log_security_event("account_emergency_unlocked", {"user_id": user.id}, user_id=user.id)
    emailer.send_security_email("account_unlocked", user.email, {})
    return True, message


def set_manual_lock(user: User, locked: bool, reason: str = None):
    user.is_locked = locked
    user.lock_reason = (reason or "Locked by administrator") if locked else None
    db.session.commit()
    if not locked:
        clear_lockouts(user.id, user.email)
    log_security_event("account_manual_lock" if locked else "account_manual_unlock", {"user_id": user.id}, user_id=user.id)


def lock_message(remaining_ms: int) -> tuple[str, int]:
    minutes = minutes_ceil(remaining_ms)
    plural = "s" if minutes != 1 else ""
    return (
        f"Account is temporarily locked due to too many failed attempts. "
        f"Try again in about {minutes} minute{plural}.",
        minutes,
    )


def login_guard():
    identifier = client_ip()
    if failure_count(identifier) >= current_app.config.get("IDENTIFIER_COOLDOWN_THRESHOLD", 10):
        log_security_event("login_cooldown", {"identifier": identifier, "path": request.path})
        return GuardResult.deny(429, "Too many failed attempts. Please try again in 15 minutes.")

    body = request.get_json(silent=True) or {}
    email = (body.get("email") or "").strip().lower()
    if not email:
        return GuardResult.allow()

    user = User.query.filter_by(email=email).first()
    if user is None:
        return GuardResult.allow()

    if user.is_locked:
        return GuardResult.deny(
            423,
            "Account is locked. Use the unlock link sent to your email or contact support.",
        )

    remaining = remaining_lock_ms(user.id, user.email)
    if remaining > 0:
        message, minutes = lock_message(remaining)
        return GuardResult.deny(423, message, retry_after_minutes=minutes)

    return GuardResult.allow()
