from flask import request, current_app

from security.events import log_security_event
from security.pipeline import GuardResult
from security.store import get_store
from utils.client import client_ip
from utils.clock import now_ts


def allow(key: str, window_seconds: int, max_count: int) -> tuple[bool, int]:
    """
    Fixed window counter. Returns (allowed, retry_after_seconds).
    The window starts at the first hit and resets as soon as now passes its end.
    """
    store = get_store("rate")
    verdict = {}

    def _step(window):
        now = now_ts()
        if window is None or now > window["window_end"]:
            verdict["allowed"] = True
            return {"window_start": now, "window_end": now + window_seconds, "count": 1}
        if window["count"] >= max_count:
            verdict["allowed"] = False
            verdict["retry_after"] = max(int(window["window_end"] - now), 1)
            return window
        verdict["allowed"] = True
        return {**window, "count": window["count"] + 1}

    # entries outlive their window a little so an expired one still resets cleanly
    store.update(key, _step, window_seconds + 60)
    return verdict["allowed"], verdict.get("retry_after", 0)


def check_rate_limit(action: str, identifier: str) -> tuple[bool, int]:
    limits = current_app.config.get("RATE_LIMITS", {})
    window_seconds, max_count = limits[action]
    return allow(f"{action}:{identifier}", window_seconds, max_count)


def rate_limit_guard(action: str):
    def _guard():
        ip = client_ip()
        allowed, retry_after = check_rate_limit(action, ip)
        if allowed:
            return GuardResult.allow()
        log_security_event("rate_limit_exceeded", {
            "action": action,
            "ip": ip,
            "path": request.path,
            "retry_after": retry_after,
        })
        return GuardResult.deny(
            429,
            "Too many requests. Please try again later.",
            retry_after_seconds=retry_after,
        )
    _guard.__name__ = f"rate_limit_guard_{action}"
    return _guard
