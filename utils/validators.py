import re

_USERNAME = re.compile(r"^[A-Za-z0-9._-]{3,30}$")


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def is_valid_username(username: str) -> bool:
    return isinstance(username, str) and bool(_USERNAME.match(username))


def normalize_email(value) -> str:
    return (value or "").strip().lower() if isinstance(value, str) or value is None else ""
