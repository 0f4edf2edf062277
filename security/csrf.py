import hashlib
import hmac
import secrets

from flask import request, current_app

from security.events import log_security_event
from security.pipeline import GuardResult
from security.store import get_store
from utils.client import client_ip
from utils.clock import now_ts


def requester_fingerprint(ip: str, user_agent: str = None) -> str:
    """Hash of IP + User-Agent. Both are client supplied, so this binds, it does not authenticate."""
    raw = f"{ip}-{user_agent or 'unknown'}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def current_fingerprint() -> str:
    return requester_fingerprint(client_ip(), request.headers.get("User-Agent"))


def issue_csrf_token(fingerprint: str) -> str:
    ttl = current_app.config.get("CSRF_TTL_SECONDS", 3600)
    token = secrets.token_hex(32)
    get_store("csrf").set(
        token,
        {"fingerprint": fingerprint, "expires_at": now_ts() + ttl},
        ttl,
    )
    return token


def is_live_token(token: str, fingerprint: str) -> bool:
    if not token:
        return False
    entry = get_store("csrf").get(token)
    return bool(entry) and entry["expires_at"] > now_ts() and entry["fingerprint"] == fingerprint


def set_csrf_cookie(resp, token: str):
    resp.set_cookie(
        current_app.config.get("CSRF_COOKIE_NAME", "csrf_token"),
        token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite="Strict",
        max_age=current_app.config.get("CSRF_TTL_SECONDS", 3600),
        path="/",
    )
    return resp


def validate_csrf_token(token: str, cookie_token: str, fingerprint: str) -> tuple[bool, str]:
    """
    Returns (valid, reason). A valid token is deleted before returning,
    so the same token never validates twice.
    """
    if not token or not cookie_token:
        return False, "CSRF token missing"
    if not hmac.compare_digest(token, cookie_token):
        return False, "CSRF token mismatch"

    outcome = {"valid": False, "reason": "CSRF token expired or invalid"}

    def _consume(entry):
        if entry is None or entry["expires_at"] <= now_ts():
            return None
        if not hmac.compare_digest(entry["fingerprint"], fingerprint):
            outcome["reason"] = "CSRF token mismatch"
            return entry
        outcome["valid"] = True
        return None

    get_store("csrf").update(token, _consume, current_app.config.get("CSRF_TTL_SECONDS", 3600))
    if outcome["valid"]:
        return True, ""
    return False, outcome["reason"]


def csrf_guard():
    header_name = current_app.config.get("CSRF_HEADER_NAME", "X-CSRF-Token")
    body = request.get_json(silent=True) or {}
    token = request.headers.get(header_name) or body.get("_csrf")
    cookie_token = request.cookies.get(current_app.config.get("CSRF_COOKIE_NAME", "csrf_token"))

    valid, reason = validate_csrf_token(token, cookie_token, current_fingerprint())
    if valid:
        return GuardResult.allow()

    log_security_event("csrf_validation_failed", {"path": request.path, "reason": reason})
    return GuardResult.deny(403, reason)
