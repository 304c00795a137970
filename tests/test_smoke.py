from app.chms.db import session_scope
from app.chms.models import AuditEvent, Organization, User

from conftest import OWNER_EMAIL


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_public_index(client):
    r = client.get("/")
    assert r.status_code == 200


def test_login_and_dashboard_access(client, login):
    # Anonymous is sent to the login page
    r = client.get("/dashboard/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = login()
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard/")

    r = client.get("/dashboard/")
    assert r.status_code == 200
    assert b"Grace Chapel" in r.data


def test_login_page_renders(client):
    r = client.get("/auth/login")
    assert r.status_code == 200


def test_invalid_login_is_audited(app, client):
    r = client.post("/auth/login", data={"email": OWNER_EMAIL, "password": "wrong-password"})
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    with client.session_transaction() as sess:
        assert "user_id" not in sess

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.reason == "Invalid credentials"


def test_login_rate_limited(client, login):
    for _ in range(5):
        client.post("/auth/login", data={"email": OWNER_EMAIL, "password": "wrong-password"})
    # correct password, but the address is locked out
    login()
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_login_next_is_followed(client):
    r = client.post(
        "/auth/login",
        data={"email": OWNER_EMAIL, "password": "password123", "next": "/dashboard/members"},
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard/members")


def test_post_without_csrf_token_rejected(client, login):
    login()
    r = client.post("/dashboard/members/new", data={"first_name": "Ama", "last_name": "Mensah"})
    assert r.status_code == 400


def test_logout(client, login):
    login()
    r = client.get("/auth/logout")
    assert r.status_code == 302
    r = client.get("/dashboard/")
    assert r.status_code == 302


def test_signup_creates_organization_and_owner(app, client):
    r = client.post(
        "/auth/signup",
        data={
            "organization_name": "Hope Assembly",
            "org_type": "church",
            "size_range": "1-50",
            "currency": "ghs",
            "country_code": "233",
            "full_name": "Paul Pastor",
            "email": "Pastor@Hope.org",
            "password": "secret-pass",
            "password_confirm": "secret-pass",
        },
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard/")

    with session_scope(app) as s:
        org = s.query(Organization).filter(Organization.name == "Hope Assembly").one()
        assert org.slug == "hope-assembly"
        assert org.currency == "GHS"
        user = s.query(User).filter(User.email == "pastor@hope.org").one()
        assert user.organization_id == org.id
        assert [r.key for r in user.roles] == ["owner"]

    # signed in straight away
    r = client.get("/dashboard/")
    assert r.status_code == 200
    assert b"Hope Assembly" in r.data


def test_signup_rejects_duplicate_email_and_short_password(client):
    r = client.post(
        "/auth/signup",
        data={
            "organization_name": "Second Church",
            "email": OWNER_EMAIL,
            "password": "short",
            "password_confirm": "short",
        },
    )
    assert r.status_code == 400
    assert b"already exists" in r.data
    assert b"at least 8 characters" in r.data


def test_login_throttle_window():
    from datetime import datetime, timedelta

    from app.chms.auth import LoginThrottle

    throttle = LoginThrottle(limit=2, window=timedelta(minutes=5))
    throttle.hit("10.0.0.1")
    assert not throttle.blocked("10.0.0.1")
    throttle.hit("10.0.0.1")
    assert throttle.blocked("10.0.0.1")
    assert not throttle.blocked("10.0.0.2")
    assert not throttle.blocked("10.0.0.1", now=datetime.utcnow() + timedelta(minutes=6))
    throttle.forget("10.0.0.1")
    assert throttle._attempts == {}
