import json
import logging

from utils.audit import log_event

logger = logging.getLogger(__name__)

HIGH_SEVERITY = {"account_locked", "brute_force_detected", "suspicious_login"}
MEDIUM_SEVERITY = {"failed_login", "password_reset_attempt"}

_LEVELS = {"HIGH": logging.ERROR, "MEDIUM": logging.WARNING, "LOW": logging.INFO}


def severity_for(event: str) -> str:
    if event in HIGH_SEVERITY:
        return "HIGH"
    if event in MEDIUM_SEVERITY:
        return "MEDIUM"
    return "LOW"


def log_security_event(event: str, details: dict = None, user_id=None) -> str:
    details = details or {}
    severity = severity_for(event)
    logger.log(
        _LEVELS[severity],
        "[SECURITY] %s",
        json.dumps({"event": event, "severity": severity, **details}, default=str),
    )
    log_event(event, user_id=user_id, entity="security", metadata=details, severity=severity)
    return severity


def send_admin_alert(event: str, details: dict = None, user_id=None):
    details = details or {}
    logger.warning("[ADMIN ALERT] %s %s", event, json.dumps(details, default=str))
    log_event(f"ADMIN_ALERT_{event.upper()}", user_id=user_id, entity="alert", metadata=details, severity="HIGH")
