from models import db
from models.user import Role, ROOT_ADMIN_ROLE

DEFAULT_ROLES = ["USER", "ADMIN", ROOT_ADMIN_ROLE]


def seed_roles():
    existing = {r.name for r in Role.query.all()}
    for name in DEFAULT_ROLES:
        if name not in existing:
            db.session.add(Role(name=name))
    db.session.commit()


def grant_role(user, role_name: str):
    role = Role.query.filter_by(name=role_name).first()
    if not role:
        role = Role(name=role_name)
        db.session.add(role)
    if role not in user.roles:
        user.roles.append(role)
    db.session.commit()
    return role
