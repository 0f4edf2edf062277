from dataclasses import dataclass, field
from functools import wraps

from flask import jsonify


@dataclass
class GuardResult:
    allowed: bool
    status: int = 200
    payload: dict = field(default_factory=dict)

    @classmethod
    def allow(cls):
        return cls(True)

    @classmethod
    def deny(cls, status: int, message: str, **extra):
        return cls(False, status, {"success": False, "message": message, **extra})

    def to_response(self):
        return jsonify(self.payload), self.status


def run_guards(guards) -> GuardResult:
    """Run guards in order and stop at the first denial."""
    for guard in guards:
        result = guard()
        if not result.allowed:
            return result
    return GuardResult.allow()


def guarded(*guards):
    """
    Usage: @guarded(rate_limit_guard("signin"), login_guard, csrf_guard)
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            result = run_guards(guards)
            if not result.allowed:
                return result.to_response()
            return fn(*args, **kwargs)
        return wrapper
    return decorator
