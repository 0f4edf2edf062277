import bcrypt
from flask import current_app, has_app_context


def _rounds() -> int:
    if has_app_context():
        return current_app.config.get("BCRYPT_ROUNDS", 12)
    return 12


def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    salt = bcrypt.gensalt(rounds=_rounds())
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def validate_password(pw) -> list:
    """Returns a list of problems, empty when the password is acceptable."""
    if not isinstance(pw, str):
        return ["Password must be a string"]
    min_len = current_app.config.get("PASSWORD_MIN_LEN", 8)
    if len(pw) < min_len:
        return [f"Password must be at least {min_len} characters"]
    return []
