import logging
from dataclasses import dataclass, field

import requests
from flask import current_app

from utils.errors import TransientDependencyError

logger = logging.getLogger(__name__)


@dataclass
class CaptchaResult:
    success: bool
    score: float = None
    error_codes: list = field(default_factory=list)


def verify_captcha_token(token: str, secret: str = None, remote_ip: str = None) -> CaptchaResult:
    """
    Ask the CAPTCHA provider whether ``token`` is genuine.
    Timeouts and transport errors come back as a failed result, never a pass.
    """
    secret = secret or current_app.config.get("RECAPTCHA_SECRET_KEY")
    if not secret:
        logger.error("RECAPTCHA_SECRET_KEY is not configured")
        raise TransientDependencyError("CAPTCHA verification is unavailable. Please try again.")

    payload = {"secret": secret, "response": token}
    if remote_ip:
        payload["remoteip"] = remote_ip

    try:
        resp = requests.post(
            current_app.config.get("RECAPTCHA_VERIFY_URL"),
            data=payload,
            timeout=current_app.config.get("CAPTCHA_TIMEOUT_SECONDS", 5),
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("CAPTCHA provider call failed: %s", exc)
        return CaptchaResult(False, error_codes=["provider-unreachable"])

    return CaptchaResult(
        success=bool(data.get("success")),
        score=data.get("score"),
        error_codes=list(data.get("error-codes") or []),
    )
