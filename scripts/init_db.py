import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.chms.models import User
from app.chms.rbac import seed_roles_and_permissions
from app.chms.tenancy import create_organization_with_owner
from app.chms.db import standalone_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions and built-in roles in an idempotent way.

    When ADMIN_EMAIL, ADMIN_PASSWORD and ORG_NAME are all set and no account with that
    email exists yet, also create the organization with that account as its owner.
    Never overwrites an existing user's password.
    """
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///chms.db").strip()
    admin_email = (os.environ.get("ADMIN_EMAIL") or "").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or ""
    org_name = (os.environ.get("ORG_NAME") or "").strip()

    # no create_app(): release runs before the web config is complete
    with standalone_session(db_url) as s:
        roles = seed_roles_and_permissions(s)
        print(f"Roles: {', '.join(sorted(roles))}")

        if not (admin_email and admin_password and org_name):
            print("ADMIN_EMAIL/ADMIN_PASSWORD/ORG_NAME not all set; skipping owner account.")
            return
        if s.query(User.id).filter(User.email == admin_email).first() is not None:
            print(f"Account {admin_email} already exists; left unchanged.")
            return
        org, user = create_organization_with_owner(
            s,
            {
                "organization_name": org_name,
                "org_type": os.environ.get("ORG_TYPE") or "church",
                "country_code": os.environ.get("DEFAULT_COUNTRY_CODE") or "233",
                "email": admin_email,
                "password": admin_password,
                "full_name": os.environ.get("ADMIN_NAME"),
            },
        )
        print(f"Created organization '{org.name}' (id={org.id}) with owner {user.email}.")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
