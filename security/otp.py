import hashlib
import hmac
import secrets
from enum import Enum

from flask import current_app

from security.store import get_store
from utils.clock import now_ts


NOT_FOUND_MESSAGE = "OTP expired or not found"


class OtpPurpose(str, Enum):
    SIGNUP = "signup"
    LOGIN = "login"
    FORGOT_PASSWORD = "forgot-password"
    PROFILE_EMAIL = "profile-email"


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def _challenge_key(email: str, purpose: OtpPurpose) -> str:
    return f"otp:{OtpPurpose(purpose).value}:{email.strip().lower()}"


def generate_code(length: int = None) -> str:
    length = length or current_app.config.get("OTP_LENGTH", 6)
    return "".join(secrets.choice("0123456789") for _ in range(length))


def issue_challenge(email: str, purpose: OtpPurpose, subject_id=None) -> str:
    """
    Create a challenge for (email, purpose), replacing any earlier one.
    Returns the RAW code (to email). Only its hash is kept.
    """
    ttl = current_app.config.get("OTP_TTL_SECONDS", 600)
    code = generate_code()
    get_store("otp").set(
        _challenge_key(email, purpose),
        {
            "code_hash": _hash_code(code),
            "expires_at": now_ts() + ttl,
            "attempts": 0,
            "subject_id": subject_id,
        },
        ttl,
    )
    return code


def discard_challenge(email: str, purpose: OtpPurpose):
    get_store("otp").delete(_challenge_key(email, purpose))


def verify_challenge(email: str, code: str, purpose: OtpPurpose) -> tuple[bool, str, object]:
    """
    Returns (ok, message, subject_id).
    A wrong guess costs one attempt; the last allowed wrong guess destroys
    the challenge. A correct guess consumes it.
    """
    max_attempts = current_app.config.get("OTP_MAX_ATTEMPTS", 3)
    ttl = current_app.config.get("OTP_TTL_SECONDS", 600)
    outcome = {"ok": False, "message": NOT_FOUND_MESSAGE, "subject_id": None}

    def _step(challenge):
        if challenge is None:
            return None
        if challenge["expires_at"] <= now_ts():
            outcome["message"] = "OTP has expired. Please request a new OTP."
            return None
        if challenge["attempts"] >= max_attempts:
            outcome["message"] = "Too many failed attempts. Please request a new OTP."
            return None
        if hmac.compare_digest(challenge["code_hash"], _hash_code(str(code or ""))):
            outcome.update(ok=True, message="OTP verified successfully", subject_id=challenge["subject_id"])
            return None

        attempts = challenge["attempts"] + 1
        remaining = max_attempts - attempts
        if remaining <= 0:
            outcome["message"] = "Too many failed attempts. Please request a new OTP."
            return None
        outcome["message"] = f"Invalid OTP. {remaining} attempt{'s' if remaining != 1 else ''} remaining."
        return {**challenge, "attempts": attempts}

    get_store("otp").update(_challenge_key(email, purpose), _step, ttl)
    return outcome["ok"], outcome["message"], outcome["subject_id"]


# Short-lived markers handed from a successful verification to the next step

def mark_signup_verified(email: str):
    ttl = current_app.config.get("SIGNUP_VERIFIED_TTL_SECONDS", 1800)
    get_store("otp").set(f"signup_verified:{email.strip().lower()}", {"expires_at": now_ts() + ttl}, ttl)


def consume_signup_verified(email: str) -> bool:
    found = {}

    def _take(marker):
        found["ok"] = bool(marker) and marker["expires_at"] > now_ts()
        return None

    get_store("otp").update(f"signup_verified:{email.strip().lower()}", _take, 1)
    return found["ok"]


def issue_reset_grant(user_id: int):
    ttl = current_app.config.get("PASSWORD_RESET_GRANT_SECONDS", 600)
    get_store("otp").set(f"reset_grant:{user_id}", {"expires_at": now_ts() + ttl}, ttl)


def consume_reset_grant(user_id: int) -> bool:
    found = {}

    def _take(grant):
        found["ok"] = bool(grant) and grant["expires_at"] > now_ts()
        return None

    get_store("otp").update(f"reset_grant:{user_id}", _take, 1)
    return found["ok"]
