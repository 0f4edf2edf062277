from functools import wraps
from flask import g, jsonify

from models.user import ROOT_ADMIN_ROLE


def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")
    The root admin passes every role check.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(success=False, message="Authentication required"), 401

            if ROOT_ADMIN_ROLE not in user.role_names and not user.role_names.intersection(role_names):
                return jsonify(success=False, message="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
