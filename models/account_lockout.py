from models.db import db

class AccountLockout(db.Model):
    __tablename__ = "account_lockouts"

    id = db.Column(db.Integer, primary_key=True)

    # user id, identifier or email, whichever was available when locking
    subject_key = db.Column(db.String(255), unique=True, nullable=False, index=True)
    attempts = db.Column(db.Integer, default=0, nullable=False)

    locked_at = db.Column(db.DateTime, nullable=False)
    unlock_at = db.Column(db.DateTime, nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=True)

    __table_args__ = (
        db.CheckConstraint("unlock_at > locked_at", name="ck_account_lockouts_unlock_after_lock"),
    )
