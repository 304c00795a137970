"""Tests for the members directory."""
import io
import json
from datetime import date, timedelta

from openpyxl import Workbook, load_workbook

from app.chms.db import session_scope
from app.chms.models import AuditEvent
from app.chms.modules.groups.models import Department, Group
from app.chms.modules.members.models import Member
from app.chms.modules.members.service import (
    create_member,
    member_list_query,
    validate_member_payload,
)


def _member_form(**overrides):
    form = {
        "first_name": "Ama",
        "last_name": "Mensah",
        "phone_number": "0244123456",
        "email": "AMA@Example.com",
        "gender": "Female",
        "date_of_birth": "1990-05-14",
        "marital_status": "single",
        "membership_status": "active",
        "join_date": "2023-01-08",
        "number_of_children": "2",
    }
    form.update(overrides)
    return form


def _xlsx(headers, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(headers)
    for row in rows:
        ws.append(row)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def test_validate_member_payload():
    assert validate_member_payload(_member_form()) == []
    errors = validate_member_payload(
        _member_form(
            first_name="",
            email="not-an-email",
            gender="unknown",
            date_of_birth=(date.today() + timedelta(days=3)).isoformat(),
            number_of_children="-1",
            membership_status="lapsed",
        )
    )
    assert "First name is required." in errors
    assert "Invalid email format." in errors
    assert any(e.startswith("Invalid gender") for e in errors)
    assert "Date of birth cannot be in the future." in errors
    assert any(e.startswith("Number of children") for e in errors)
    assert any(e.startswith("Invalid membership status") for e in errors)


def test_members_list_requires_auth(client):
    r = client.get("/dashboard/members")
    assert r.status_code == 302


def test_member_create(app, client, login, post):
    login()
    r = post("/dashboard/members/new", _member_form())
    assert r.status_code == 302

    with session_scope(app) as s:
        m = s.query(Member).one()
        assert m.full_name == "Ama Mensah"
        assert m.email == "ama@example.com"
        assert m.gender == "female"
        assert m.number_of_children == 2
        assert m.created_by_user_id is not None
        assert s.query(AuditEvent).filter(AuditEvent.action == "member.create").count() == 1
        member_id = m.id

    r = client.get(f"/dashboard/members/{member_id}")
    assert r.status_code == 200
    assert b"Ama Mensah" in r.data


def test_member_create_invalid_rerenders_form(app, login, post):
    login()
    r = post("/dashboard/members/new", _member_form(last_name="", date_of_birth="14/05/1990"))
    assert r.status_code == 400
    assert b"Last name is required." in r.data
    assert b"Date of birth must be YYYY-MM-DD." in r.data
    with session_scope(app) as s:
        assert s.query(Member).count() == 0


def test_member_edit_sets_affiliations(app, org_id, login, post):
    with session_scope(app) as s:
        choir = Group(organization_id=org_id, name="Choir", status="Active")
        ushers = Department(organization_id=org_id, name="Ushering", status="Active")
        s.add_all([choir, ushers])
        m = create_member(s, org_id, _member_form(), None)
        s.flush()
        member_id, choir_id, ushers_id = m.id, choir.id, ushers.id

    login()
    r = post(
        f"/dashboard/members/{member_id}/edit",
        dict(_member_form(occupation="Nurse"), group_ids=[str(choir_id)], department_ids=[str(ushers_id)]),
    )
    assert r.status_code == 302

    with session_scope(app) as s:
        m = s.get(Member, member_id)
        assert m.occupation == "Nurse"
        assert [g.name for g in m.groups] == ["Choir"]
        assert [d.name for d in m.departments] == ["Ushering"]
        ev = s.query(AuditEvent).filter(AuditEvent.action == "member.edit").one()
        assert "occupation" in json.loads(ev.metadata_json)["changes"]


def test_member_delete_requires_reason(app, org_id, login, post):
    with session_scope(app) as s:
        member_id = create_member(s, org_id, _member_form(), None).id

    login()
    r = post(f"/dashboard/members/{member_id}/delete", {"reason": ""})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Member, member_id) is not None

    r = post(f"/dashboard/members/{member_id}/delete", {"reason": "Moved away"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Member, member_id) is None
        ev = s.query(AuditEvent).filter(AuditEvent.action == "member.delete").one()
        assert ev.reason == "Moved away"


def test_member_list_filters(app, org_id):
    with session_scope(app) as s:
        create_member(s, org_id, _member_form(), None)
        create_member(
            s,
            org_id,
            _member_form(first_name="Kwame", last_name="Asante", gender="male", membership_status="inactive"),
            None,
        )
        s.flush()
        assert [m.last_name for m in member_list_query(s, org_id, {}).all()] == ["Asante", "Mensah"]
        assert [m.last_name for m in member_list_query(s, org_id, {"q": "kwa"}).all()] == ["Asante"]
        assert [m.last_name for m in member_list_query(s, org_id, {"status": "active"}).all()] == ["Mensah"]
        assert [m.last_name for m in member_list_query(s, org_id, {"gender": "male"}).all()] == ["Asante"]


def test_member_photo_upload_and_remove(app, org_id, client, login, post, tmp_path):
    with session_scope(app) as s:
        member_id = create_member(s, org_id, _member_form(), None).id

    login()
    r = post(
        f"/dashboard/members/{member_id}/photo",
        {"photo": (io.BytesIO(b"\x89PNG fake image"), "me.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        key = s.get(Member, member_id).photo_storage_key
    assert key.startswith(f"members/{org_id}/{member_id}/photo-")
    assert key.endswith(".png")
    assert (tmp_path / "storage" / key).exists()

    r = client.get(f"/dashboard/members/{member_id}/photo")
    assert r.status_code == 200
    assert r.data == b"\x89PNG fake image"

    r = post(f"/dashboard/members/{member_id}/photo/remove")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Member, member_id).photo_storage_key is None
    assert not (tmp_path / "storage" / key).exists()


def test_member_photo_rejects_non_images(app, org_id, login, post):
    with session_scope(app) as s:
        member_id = create_member(s, org_id, _member_form(), None).id

    login()
    post(
        f"/dashboard/members/{member_id}/photo",
        {"photo": (io.BytesIO(b"%PDF-1.4"), "cv.pdf", "application/pdf")},
        content_type="multipart/form-data",
    )
    with session_scope(app) as s:
        assert s.get(Member, member_id).photo_storage_key is None


def test_member_import(app, login, post):
    data = _xlsx(
        ["First Name", "Last Name", "Phone Number", "Date of Birth", "Gender"],
        [
            ["Yaw", "Owusu", 244123456.0, date(1985, 3, 2), "male"],
            ["Efua", "", "0201112222", None, None],
            ["Abena", "Darko", "0555000111", "not-a-date", None],
            ["Kojo", "Annan", None, None, None],
        ],
    )
    login()
    r = post(
        "/dashboard/members/import",
        {"file": (io.BytesIO(data), "members.xlsx")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302

    with session_scope(app) as s:
        members = s.query(Member).all()
        assert [m.full_name for m in members] == ["Yaw Owusu"]
        assert members[0].phone_number == "244123456"
        assert members[0].date_of_birth == date(1985, 3, 2)
        assert members[0].membership_status == "active"
        ev = s.query(AuditEvent).filter(AuditEvent.action == "member.import").one()
        meta = json.loads(ev.metadata_json)
        assert meta["created"] == 1
        assert meta["failed"] == 3


def test_member_import_rejects_other_files(app, login, post):
    login()
    r = post(
        "/dashboard/members/import",
        {"file": (io.BytesIO(b"a,b,c"), "members.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard/members/import")

    r = post(
        "/dashboard/members/import",
        {"file": (io.BytesIO(b"definitely not a workbook"), "members.xlsx")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard/members/import")


def test_member_export(app, org_id, client, login):
    with session_scope(app) as s:
        m = create_member(s, org_id, _member_form(), None)
        m.groups.append(Group(organization_id=org_id, name="Choir", status="Active"))

    login()
    r = client.get("/dashboard/members/export")
    assert r.status_code == 200
    assert r.mimetype == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

    ws = load_workbook(io.BytesIO(r.data)).active
    rows = list(ws.iter_rows(values_only=True))
    headers = list(rows[0])
    assert headers[:3] == ["id", "first_name", "last_name"]
    record = dict(zip(headers, rows[1]))
    assert record["first_name"] == "Ama"
    assert record["date_of_birth"] == "1990-05-14"
    assert record["groups"] == "Choir"
