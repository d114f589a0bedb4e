import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.riskdocs.models import Permission, Role, User
from scripts._db_utils import script_session

PERMISSIONS: dict[str, str] = {
    "admin.view": "Admin: integrity and audit views",
    "docs.view": "Documents: view",
    "docs.create": "Documents: create",
    "docs.edit": "Documents: edit drafts / request approval",
    "docs.approve": "Documents: approve or reject",
    "docs.issue": "Documents: issue",
    "docs.revise": "Documents: create new version",
    "docs.download": "Documents: download locked artifact",
    "actions.edit": "Actions: raise / close / reopen",
}

ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "assessor": (
        "Assessor",
        ("docs.view", "docs.create", "docs.edit", "docs.issue", "docs.revise", "docs.download", "actions.edit"),
    ),
    "reviewer": ("Reviewer", ("docs.view", "docs.approve", "docs.download")),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@riskdocs.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///riskdocs.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS.items():
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for key, (name, perm_keys) in ROLES.items():
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            for pk in perm_keys:
                if perms[pk] not in role.permissions:
                    role.permissions.append(perms[pk])
            roles[key] = role

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
