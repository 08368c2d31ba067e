import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.precast.models import Permission, Role, User

# (key, name) for every permission the document API checks.
DOCUMENT_PERMISSIONS = (
    ("docs.view", "Docs: view"),
    ("docs.create", "Docs: create"),
    ("docs.edit", "Docs: edit / new version"),
    ("docs.approve", "Docs: start, decide and cancel approvals"),
    ("docs.share", "Docs: share and revoke"),
    ("docs.comment", "Docs: comment"),
    ("docs.download", "Docs: download"),
    ("folders.manage", "Folders: create"),
    ("workflows.manage", "Approval workflows: create"),
    ("templates.manage", "Document templates: create"),
)

# Non-admin roles created on first seed. Role keys double as document access groups,
# so these are also the groups RESTRICTED/CONFIDENTIAL documents can name.
ROLE_PRESETS: dict[str, tuple[str, tuple[str, ...]]] = {
    "engineering": (
        "Engineering",
        ("docs.view", "docs.create", "docs.edit", "docs.approve", "docs.comment", "docs.download"),
    ),
    "production": ("Production", ("docs.view", "docs.comment", "docs.download")),
    "site": ("Site crew", ("docs.view", "docs.download")),
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@precast.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///precast.db").strip()

    # Direct engine/session so release can seed without building the Flask app.
    with _session_scope(db_url) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        perms = [ensure_perm(key, name) for key, name in DOCUMENT_PERMISSIONS]

        by_key = {p.key: p for p in perms}

        def ensure_role(key: str, name: str, keys) -> Role:
            r = s.query(Role).filter(Role.key == key).one_or_none()
            if not r:
                r = Role(key=key, name=name)
                s.add(r)
                # Presets only fill a fresh role; edits made by an admin later are kept.
                r.permissions.extend(by_key[k] for k in keys)
            return r

        role_admin = ensure_role("admin", "Administrator", ())
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)
        for key, (name, keys) in ROLE_PRESETS.items():
            ensure_role(key, name, keys)

        # User
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
