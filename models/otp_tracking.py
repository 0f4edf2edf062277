from models.db import db
from utils.clock import utcnow

class OtpTracking(db.Model):
    """Per (email, ip) OTP counters. One row per scope; counters restart when its window passes."""

    __tablename__ = "otp_tracking"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=False)
    user_agent = db.Column(db.String(255), nullable=True)

    otp_request_count = db.Column(db.Integer, default=0, nullable=False)
    failed_otp_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_otp_at = db.Column(db.DateTime, nullable=True)
    last_failed_attempt_at = db.Column(db.DateTime, nullable=True)

    requires_captcha = db.Column(db.Boolean, default=False, nullable=False)
    captcha_verified_at = db.Column(db.DateTime, nullable=True)

    lockout_until = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("email", "ip_address", name="uq_otp_tracking_email_ip"),
    )
