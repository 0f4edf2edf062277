import logging

from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.user import User
from security import fraud
from security.bruteforce import login_guard, record_failure, record_success, clear_lockouts
from security.csrf import csrf_guard, current_fingerprint, issue_csrf_token, is_live_token, set_csrf_cookie
from security.events import log_security_event
from security.otp import consume_signup_verified, consume_reset_grant
from security.password import hash_password, verify_password, validate_password
from security.pipeline import guarded
from security.rate_limit import rate_limit_guard
from security.session import create_session, set_session_cookie, revoke_session, revoke_all_sessions
from utils.audit import log_event
from utils.auth_context import login_required, session_guard
from utils.client import client_ip
from utils.clock import utcnow
from utils.seed import grant_role
from utils.validators import is_valid_email, is_valid_username, normalize_email

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "roles": sorted(user.role_names),
    }


def start_session_response(user: User, message: str):
    revoked_count = revoke_all_sessions(user.id)
    raw_token = create_session(user.id)
    resp = jsonify(success=True, message=message, user=user_payload(user))
    set_session_cookie(resp, raw_token)
    log_event("LOGIN_SUCCESS", user_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp


@auth_bp.get("/csrf-token")
def csrf_token():
    fingerprint = current_fingerprint()
    existing = request.cookies.get(current_app.config.get("CSRF_COOKIE_NAME", "csrf_token"))
    if is_live_token(existing, fingerprint):
        return jsonify(csrfToken=existing), 200

    token = issue_csrf_token(fingerprint)
    resp = jsonify(csrfToken=token)
    set_csrf_cookie(resp, token)
    return resp, 200


@auth_bp.post("/signup")
@guarded(rate_limit_guard("signup"), csrf_guard)
def signup():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    referrer_id = data.get("referrerId")

    if not is_valid_email(email):
        return jsonify(success=False, message="Invalid email"), 400
    if not is_valid_username(username):
        return jsonify(success=False, message="Username must be 3-30 letters, digits, dots, dashes or underscores"), 400
    problems = validate_password(password)
    if problems:
        return jsonify(success=False, message="Password does not meet policy", details=problems), 400

    if User.query.filter_by(email=email).first():
        return jsonify(success=False, message="An account with this email already exists"), 400
    if User.query.filter_by(username=username).first():
        return jsonify(success=False, message="Username is already taken"), 400

    if not consume_signup_verified(email):
        return jsonify(success=False, message="Please verify your email with the OTP first"), 400

    referrer = None
    if referrer_id is not None:
        try:
            referrer = db.session.get(User, int(referrer_id))
        except (TypeError, ValueError):
            referrer = None

    user = User(
        email=email,
        username=username,
        password_hash=hash_password(password),
        referred_by_id=referrer.id if referrer else None,
        created_at=utcnow(),
    )
    db.session.add(user)
    db.session.commit()
    grant_role(user, "USER")
    log_event("REGISTER_SUCCESS", user_id=user.id, metadata={"referrer_id": user.referred_by_id})

    reward_eligible = None
    if referrer:
        try:
            decision = fraud.evaluate(referrer.id, user.id)
            reward_eligible = not decision["isFraud"]
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Referral fraud check failed for referrer=%s new=%s", referrer.id, user.id)
            reward_eligible = True

    return jsonify(
        success=True,
        message="Account created successfully",
        user=user_payload(user),
        referralRewardEligible=reward_eligible,
    ), 201


@auth_bp.post("/signin")
@guarded(rate_limit_guard("signin"), login_guard, csrf_guard)
def signin():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    identifier = client_ip()

    user = User.query.filter_by(email=email).first() if email else None
    if not user or not verify_password(password, user.password_hash):
        attempts = record_failure(
            identifier,
            user_id=user.id if user else None,
            email=user.email if user else None,
        )
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"attempts": attempts})
        # same answer whether or not the account exists
        return jsonify(success=False, message="Invalid email or password"), 401

    record_success(identifier, user_id=user.id)
    return start_session_response(user, "Signed in successfully"), 200


@auth_bp.post("/signout")
@guarded(session_guard, csrf_guard)
def signout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "propertyguard_session")
    revoke_session(request.cookies.get(cookie_name))
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(success=True, message="Signed out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(success=True, user=user_payload(g.user)), 200


@auth_bp.post("/reset-password")
@guarded(rate_limit_guard("forgot_password"), csrf_guard)
def reset_password():
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    try:
        user_id = int(data.get("userId"))
    except (TypeError, ValueError):
        return jsonify(success=False, message="userId is required"), 400

    problems = validate_password(password)
    if problems:
        return jsonify(success=False, message="Password does not meet policy", details=problems), 400

    user = db.session.get(User, user_id)
    if user is None or not consume_reset_grant(user_id):
        log_security_event("password_reset_attempt", {"user_id": user_id, "granted": False})
        return jsonify(success=False, message="Password reset session expired. Please verify the OTP again."), 400

    user.password_hash = hash_password(password)
    db.session.commit()
    revoked = revoke_all_sessions(user.id)
    clear_lockouts(user.id, user.email)
    log_security_event("password_reset_attempt", {"user_id": user.id, "granted": True}, user_id=user.id)
    log_event("PASSWORD_RESET", user_id=user.id, metadata={"revoked_sessions": revoked})
    return jsonify(success=True, message="Password has been reset. Please sign in."), 200
