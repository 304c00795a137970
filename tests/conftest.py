"""Shared fixtures: a fresh SQLite database per test with one seeded organization."""
import pytest
from werkzeug.security import generate_password_hash

from app.chms import create_app
from app.chms.auth import login_throttle
from app.chms.db import session_scope
from app.chms.models import Base, Role, User
from app.chms.tenancy import create_organization_with_owner

OWNER_EMAIL = "owner@example.com"
OWNER_PASSWORD = "password123"
TEST_CSRF = "test-csrf-token"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "SMS_WEBHOOK_SECRET",
        "SMS_BATCH_SIZE",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    login_throttle.reset()

    with session_scope(app) as s:
        create_organization_with_owner(
            s,
            {
                "organization_name": "Grace Chapel",
                "org_type": "church",
                "size_range": "51-100",
                "currency": "GHS",
                "country_code": "233",
                "full_name": "Olive Owner",
                "email": OWNER_EMAIL,
                "password": OWNER_PASSWORD,
            },
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def org_id(app):
    with session_scope(app) as s:
        return s.query(User.organization_id).filter(User.email == OWNER_EMAIL).scalar()


@pytest.fixture()
def login(client):
    """Log in (owner by default) and make sure the session carries a CSRF token."""

    def _login(email=OWNER_EMAIL, password=OWNER_PASSWORD):
        r = client.post("/auth/login", data={"email": email, "password": password})
        with client.session_transaction() as sess:
            sess.setdefault("csrf_token", TEST_CSRF)
        return r

    return _login


@pytest.fixture()
def post(client):
    """client.post with the session's CSRF token added to the form."""

    def _post(url, data=None, **kwargs):
        form = dict(data or {})
        with client.session_transaction() as sess:
            form["csrf_token"] = sess.setdefault("csrf_token", TEST_CSRF)
        return client.post(url, data=form, **kwargs)

    return _post


@pytest.fixture()
def make_user(app, org_id):
    """Create an account in the seeded organization with the given role key."""

    def _make(email, role_key, password="password123", organization_id=None):
        with session_scope(app) as s:
            role = s.query(Role).filter(Role.key == role_key).one()
            u = User(
                organization_id=organization_id or org_id,
                email=email,
                password_hash=generate_password_hash(password),
                is_active=True,
            )
            u.roles.append(role)
            s.add(u)
            s.flush()
            return u.id

    return _make
