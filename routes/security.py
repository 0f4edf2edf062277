from flask import Blueprint, request, jsonify

from security.bruteforce import lock_account_by_token, unlock_account_by_token
from security.pipeline import guarded
from security.rate_limit import rate_limit_guard

security_bp = Blueprint("security", __name__, url_prefix="/auth/security")


def _token_from_body() -> str:
    token = (request.get_json(silent=True) or {}).get("token")
    return token if isinstance(token, str) else ""


@security_bp.post("/lock-account")
@guarded(rate_limit_guard("security_link"))
def lock_account():
    token = _token_from_body()
    if not token:
        return jsonify(success=False, message="Token is required"), 400
    ok, message = lock_account_by_token(token)
    return jsonify(success=ok, message=message), 200 if ok else 400


@security_bp.post("/unlock-account")
@guarded(rate_limit_guard("security_link"))
def unlock_account():
    token = _token_from_body()
    if not token:
        return jsonify(success=False, message="Token is required"), 400
    ok, message = unlock_account_by_token(token)
    return jsonify(success=ok, message=message), 200 if ok else 400
