import logging
import smtplib
from email.message import EmailMessage

from flask import current_app

logger = logging.getLogger(__name__)

TEMPLATES = {
    "otp_signup": (
        "Verify your email",
        "Your verification code is {code}. It expires in {minutes} minutes.",
    ),
    "otp_login": (
        "Your sign-in code",
        "Use {code} to sign in. It expires in {minutes} minutes.",
    ),
    "otp_forgot_password": (
        "Reset your password",
        "Use {code} to reset your password. It expires in {minutes} minutes.",
    ),
    "otp_profile_email": (
        "Confirm your new email",
        "Use {code} to confirm this address for your profile. It expires in {minutes} minutes.",
    ),
    "account_lockout": (
        "Your account was temporarily locked",
        "We locked your account for {minutes} minutes after {attempts} failed sign-in attempts "
        "from {ip}. If this was not you, reset your password.",
    ),
    "root_admin_attack": (
        "Sign-in attack on your administrator account",
        "We saw {attempts} failed sign-in attempts from {ip}. Administrator accounts are never "
        "locked automatically. If you want to lock the account now, open:\n{lock_link}",
    ),
    "account_locked": (
        "Your account is locked",
        "Your account has been locked. When you are ready to restore access, open:\n{unlock_link}",
    ),
    "account_unlocked": (
        "Your account is unlocked",
        "Your account has been unlocked and you can sign in again.",
    ),
}


def send_email(to_email: str, subject: str, body: str):
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)
    timeout = current_app.config.get("SMTP_TIMEOUT_SECONDS", 10)

    if not host or not from_email:
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=timeout) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)


def send_security_email(kind: str, to_address: str, data: dict) -> bool:
    """Render one of TEMPLATES and send it. Returns False instead of raising."""
    subject, body = TEMPLATES[kind]
    ok, err = send_email(to_address, subject, body.format(**data))
    if not ok:
        logger.warning("Email %s to %s not sent: %s", kind, to_address, err)
    return ok
