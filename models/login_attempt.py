from models.db import db
from utils.clock import utcnow

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

class LoginAttempt(db.Model):
    """Append-only attempt log. Rows are never updated, only purged."""

    __tablename__ = "login_attempts"

    id = db.Column(db.Integer, primary_key=True)

    # IP (or similar) the attempt came from
    identifier = db.Column(db.String(255), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        db.Index("ix_login_attempts_identifier_status_created", "identifier", "status", "created_at"),
    )
