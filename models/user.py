from models.db import db
from utils.clock import utcnow

ROOT_ADMIN_ROLE = "SUPER_ADMIN"

# association table for many-to-many User <-> Role
user_roles = db.Table(
    "user_roles",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id"), primary_key=True),
)

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    # Admin/owner controlled lock; never cleared by the timed lockout
    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    lock_reason = db.Column(db.String(120), nullable=True)

    security_lock_token = db.Column(db.String(128), nullable=True, index=True)
    security_lock_expires = db.Column(db.DateTime, nullable=True)
    security_unlock_token = db.Column(db.String(128), nullable=True, index=True)
    security_unlock_expires = db.Column(db.DateTime, nullable=True)

    referred_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    roles = db.relationship("Role", secondary=user_roles, back_populates="users")

    @property
    def role_names(self):
        return {r.name for r in self.roles}

    @property
    def is_root_admin(self) -> bool:
        return ROOT_ADMIN_ROLE in self.role_names

class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)  # USER, ADMIN, SUPER_ADMIN

    users = db.relationship("User", secondary=user_roles, back_populates="roles")
