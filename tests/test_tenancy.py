"""Organization isolation and role-based access."""
from werkzeug.security import generate_password_hash

from app.chms.db import session_scope
from app.chms.models import Permission, Role, User
from app.chms.modules.members.models import Member
from app.chms.modules.members.service import create_member
from app.chms.rbac import seed_roles_and_permissions, user_has_permission
from app.chms.tenancy import create_organization_with_owner

from conftest import OWNER_EMAIL


def _second_org_member(app):
    with session_scope(app) as s:
        org, _ = create_organization_with_owner(
            s,
            {
                "organization_name": "Other Church",
                "email": "other@example.com",
                "password": "password123",
            },
        )
        m = create_member(s, org.id, {"first_name": "Kofi", "last_name": "Boateng", "phone_number": "0244000111"}, None)
        s.flush()
        return m.id


def test_other_organizations_rows_are_not_found(app, client, login):
    member_id = _second_org_member(app)
    login()
    r = client.get(f"/dashboard/members/{member_id}")
    assert r.status_code == 404

    r = client.get("/dashboard/members")
    assert r.status_code == 200
    assert b"Boateng" not in r.data


def test_other_organizations_rows_cannot_be_deleted(app, login, post):
    member_id = _second_org_member(app)
    login()
    r = post(f"/dashboard/members/{member_id}/delete", {"reason": "spam"})
    assert r.status_code == 404
    with session_scope(app) as s:
        assert s.get(Member, member_id) is not None


def test_seed_roles_is_idempotent(app):
    with session_scope(app) as s:
        n_perms = s.query(Permission).count()
        n_roles = s.query(Role).count()
        seed_roles_and_permissions(s)
        seed_roles_and_permissions(s)
        assert s.query(Permission).count() == n_perms
        assert s.query(Role).count() == n_roles == 4


def test_role_permissions(app, make_user):
    make_user("viewer@example.com", "viewer")
    make_user("staff@example.com", "staff")
    with session_scope(app) as s:
        viewer = s.query(User).filter(User.email == "viewer@example.com").one()
        staff = s.query(User).filter(User.email == "staff@example.com").one()
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        assert user_has_permission(viewer, "members.view")
        assert not user_has_permission(viewer, "members.create")
        assert not user_has_permission(viewer, "audit.view")
        assert user_has_permission(staff, "members.edit")
        assert not user_has_permission(staff, "members.delete")
        assert not user_has_permission(staff, "messaging.configure")
        assert user_has_permission(owner, "org.settings")


def test_viewer_cannot_create_members(client, login, post, make_user):
    make_user("viewer@example.com", "viewer")
    login("viewer@example.com")
    r = client.get("/dashboard/members")
    assert r.status_code == 200
    r = client.get("/dashboard/members/new")
    assert r.status_code == 403
    r = post("/dashboard/members/new", {"first_name": "Ama", "last_name": "Mensah"})
    assert r.status_code == 403


def test_account_without_organization_is_forbidden(app, client, login):
    with session_scope(app) as s:
        owner_role = s.query(Role).filter(Role.key == "owner").one()
        u = User(email="platform@example.com", password_hash=generate_password_hash("password123"), is_active=True)
        u.roles.append(owner_role)
        s.add(u)
    login("platform@example.com")
    r = client.get("/dashboard/members")
    assert r.status_code == 403


def test_owner_creates_staff_account(app, client, login, post):
    login()
    with session_scope(app) as s:
        staff_role_id = s.query(Role.id).filter(Role.key == "staff").scalar()
    r = post(
        "/dashboard/accounts/new",
        {
            "email": "Usher@Example.com",
            "full_name": "Ursula Usher",
            "password": "password123",
            "password_confirm": "password123",
            "role_ids": [str(staff_role_id)],
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "usher@example.com").one()
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        assert u.organization_id == owner.organization_id
        assert [r.key for r in u.roles] == ["staff"]


def test_organization_settings_update(app, client, login, post):
    login()
    r = post(
        "/dashboard/settings",
        {"name": "Grace Chapel International", "org_type": "church", "currency": "USD", "country_code": "1"},
    )
    assert r.status_code == 302
    r = client.get("/dashboard/")
    assert b"Grace Chapel International" in r.data

    r = post("/dashboard/settings", {"name": "", "country_code": "+233"})
    assert r.status_code == 400


def test_audit_trail_search_is_org_scoped(app, org_id, client, login):
    from app.chms.audit import search_events

    _second_org_member(app)
    login()
    with session_scope(app) as s:
        events = search_events(s, org_id)
        assert events
        assert {e.organization_id for e in events} == {org_id}
        logins = search_events(s, org_id, action="auth.login", actor_email=OWNER_EMAIL.upper())
        assert [e.action for e in logins] == ["auth.login"]

    r = client.get("/dashboard/audit?action=auth.login&date_from=not-a-date")
    assert r.status_code == 200
    assert b"auth.login" in r.data
    assert b"date_from must be YYYY-MM-DD" in r.data
