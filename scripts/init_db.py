import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.mycolab.models import Permission, Role, User
from scripts._db_utils import resolve_database_url, script_session

PERMISSIONS = (
    ("admin.view", "Admin: view"),
    ("records.view", "Records: view cultures, grows and history"),
    ("records.create", "Records: create"),
    ("records.amend", "Records: amend, restore and merge"),
    ("records.dispose", "Records: archive and dispose"),
)

# Lab members can do everything except admin.
ROLES = {
    "admin": ("Administrator", [key for key, _ in PERMISSIONS]),
    "cultivator": ("Cultivator", ["records.view", "records.create", "records.amend", "records.dispose"]),
    "viewer": ("Viewer", ["records.view"]),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@mycolab.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = resolve_database_url(database_url)

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        perms = {key: ensure_perm(key, name) for key, name in PERMISSIONS}

        roles: dict[str, Role] = {}
        for role_key, (role_name, perm_keys) in ROLES.items():
            role = s.query(Role).filter(Role.key == role_key).one_or_none()
            if not role:
                role = Role(key=role_key, name=role_name)
                s.add(role)
            for key in perm_keys:
                if perms[key] not in role.permissions:
                    role.permissions.append(perms[key])
            roles[role_key] = role

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
