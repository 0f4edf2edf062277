import json

from flask import Blueprint, jsonify, request, g

from models.audit_log import AuditLog
from models.user import User
from security.bruteforce import set_manual_lock
from security.csrf import csrf_guard
from security.otp_gate import clear_tracking_for_email
from security.pipeline import guarded
from security.rbac import require_roles
from utils.audit import log_event
from utils.errors import AuthzError, NotFoundError, ValidationError
from utils.validators import normalize_email

admin_bp = Blueprint("admin", __name__, url_prefix="/admin/security")


def _event_row(r: AuditLog) -> dict:
    return {
        "id": r.id,
        "timestamp": r.timestamp.isoformat() if r.timestamp else None,
        "user_id": r.user_id,
        "action": r.action,
        "severity": r.severity,
        "entity": r.entity,
        "entity_id": r.entity_id,
        "ip": r.ip,
        "user_agent": r.user_agent,
        "metadata": json.loads(r.metadata_json) if r.metadata_json else None,
    }


@admin_bp.get("/events")
@require_roles("ADMIN")
def list_events():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    q = AuditLog.query
    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action == action)
    severity = request.args.get("severity")
    if severity:
        q = q.filter(AuditLog.severity == severity.upper())
    user_id = request.args.get("user_id", type=int)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify(success=True, events=[_event_row(r) for r in rows]), 200


def _target_user() -> User:
    email = normalize_email((request.get_json(silent=True) or {}).get("email"))
    if not email:
        raise ValidationError("Email is required")
    user = User.query.filter_by(email=email).first()
    if not user:
        raise NotFoundError("User not found")
    return user


@admin_bp.post("/lock")
@require_roles("ADMIN")
@guarded(csrf_guard)
def lock_user():
    user = _target_user()
    if user.is_root_admin:
        raise AuthzError("The root administrator cannot be locked from the console")
    reason = (request.get_json(silent=True) or {}).get("reason")
    set_manual_lock(user, True, reason if isinstance(reason, str) else None)
    log_event("ADMIN_LOCK_USER", user_id=g.user.id, entity="User", entity_id=user.id)
    return jsonify(success=True, message="Account locked"), 200


@admin_bp.post("/unlock")
@require_roles("ADMIN")
@guarded(csrf_guard)
def unlock_user():
    user = _target_user()
    set_manual_lock(user, False)
    log_event("ADMIN_UNLOCK_USER", user_id=g.user.id, entity="User", entity_id=user.id)
    return jsonify(success=True, message="Account unlocked"), 200


@admin_bp.post("/otp/unlock-email")
@require_roles("ADMIN")
@guarded(csrf_guard)
def unlock_otp_email():
    email = normalize_email((request.get_json(silent=True) or {}).get("email"))
    if not email:
        return jsonify(success=False, message="Email is required"), 400
    cleared = clear_tracking_for_email(email)
    log_event("ADMIN_OTP_UNLOCK_EMAIL", user_id=g.user.id, metadata={"email": email, "records": cleared})
    return jsonify(success=True, message="OTP lockout cleared for email", cleared=cleared), 200
