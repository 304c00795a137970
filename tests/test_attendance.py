"""Tests for service attendance and member check-ins."""
from datetime import date

from app.chms.db import session_scope
from app.chms.models import User
from app.chms.modules.attendance.models import AttendanceRecord, MemberAttendance
from app.chms.modules.attendance.service import (
    attendance_summary,
    create_attendance_record,
    member_attendance_summary,
    save_checkins,
    validate_attendance_payload,
)
from app.chms.modules.members.models import Member
from app.chms.modules.members.service import create_member

from conftest import OWNER_EMAIL


def _record_form(**overrides):
    form = {
        "date": "2024-03-03",
        "service_type": "Sunday Service",
        "total_attendance": "120",
        "men": "40",
        "women": "50",
        "children": "30",
        "first_timers": "4",
    }
    form.update(overrides)
    return form


def _seed(app, org_id):
    """One record and three members (two active, one inactive). Returns (record_id, [member ids])."""
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        record = create_attendance_record(s, org_id, _record_form(), owner)
        ids = [
            create_member(s, org_id, {"first_name": "Ama", "last_name": "Mensah"}, None).id,
            create_member(s, org_id, {"first_name": "Kofi", "last_name": "Boateng"}, None).id,
            create_member(
                s, org_id, {"first_name": "Yaa", "last_name": "Asantewaa", "membership_status": "inactive"}, None
            ).id,
        ]
        return record.id, ids


def test_validate_attendance_payload(app, org_id):
    with session_scope(app) as s:
        assert validate_attendance_payload(s, org_id, _record_form()) == []
        errors = validate_attendance_payload(
            s, org_id, _record_form(date="03/03/2024", service_type="", total_attendance="", men="-2")
        )
        assert "Date must be YYYY-MM-DD." in errors
        assert "Service type is required." in errors
        assert "Total attendance is required." in errors
        assert "Men must be a whole number of zero or more." in errors


def test_attendance_create_and_duplicate(app, login, post):
    login()
    r = post("/dashboard/attendance/new", _record_form())
    assert r.status_code == 302
    with session_scope(app) as s:
        rec = s.query(AttendanceRecord).one()
        assert rec.date == date(2024, 3, 3)
        assert rec.total_attendance == 120
        assert rec.first_timers == 4

    r = post("/dashboard/attendance/new", _record_form(total_attendance="99"))
    assert r.status_code == 400
    assert b"already exists" in r.data

    # a different service on the same day is fine
    r = post("/dashboard/attendance/new", _record_form(service_type="Prayer Meeting"))
    assert r.status_code == 302


def test_attendance_list_and_detail(app, org_id, client, login):
    record_id, _ = _seed(app, org_id)
    login()
    r = client.get("/dashboard/attendance")
    assert r.status_code == 200
    assert b"Sunday Service" in r.data
    r = client.get(f"/dashboard/attendance/{record_id}")
    assert r.status_code == 200
    assert b"Mensah" in r.data


def test_checkins_mark_other_active_members_absent(app, org_id, login, post):
    record_id, (ama, kofi, yaa) = _seed(app, org_id)
    login()
    r = post(f"/dashboard/attendance/{record_id}/checkins", {"present_member_ids": [str(ama)]})
    assert r.status_code == 302

    with session_scope(app) as s:
        rows = {c.member_id: c for c in s.query(MemberAttendance).all()}
        assert rows[ama].status == "present"
        assert rows[ama].checked_in_at is not None
        assert rows[kofi].status == "absent"
        assert rows[kofi].checked_in_at is None
        # inactive members are not marked absent
        assert yaa not in rows


def test_checkins_replace_previous_and_ignore_foreign_ids(app, org_id):
    record_id, (ama, kofi, yaa) = _seed(app, org_id)
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        record = s.get(AttendanceRecord, record_id)
        save_checkins(s, record, [ama], owner)
        counts = save_checkins(s, record, [kofi, yaa, 99999], owner)
        assert counts == {"present": 2, "absent": 1}
        statuses = {c.member_id: c.status for c in s.query(MemberAttendance).all()}
        assert statuses == {ama: "absent", kofi: "present", yaa: "present"}


def test_editing_record_moves_checkins(app, org_id, login, post):
    record_id, (ama, _, _) = _seed(app, org_id)
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        save_checkins(s, s.get(AttendanceRecord, record_id), [ama], owner)

    login()
    r = post(f"/dashboard/attendance/{record_id}/edit", _record_form(date="2024-03-10"))
    assert r.status_code == 302
    with session_scope(app) as s:
        dates = {c.date for c in s.query(MemberAttendance).all()}
        assert dates == {date(2024, 3, 10)}


def test_deleting_record_removes_checkins(app, org_id, login, post):
    record_id, (ama, _, _) = _seed(app, org_id)
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        save_checkins(s, s.get(AttendanceRecord, record_id), [ama], owner)

    login()
    r = post(f"/dashboard/attendance/{record_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(AttendanceRecord, record_id) is None
        assert s.query(MemberAttendance).count() == 0
        assert s.query(Member).count() == 3


def test_member_attendance_rate(app, org_id):
    record_id, (ama, _, _) = _seed(app, org_id)
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        second = create_attendance_record(s, org_id, _record_form(date="2024-03-10"), owner)
        save_checkins(s, s.get(AttendanceRecord, record_id), [ama], owner)
        save_checkins(s, second, [], owner)
        summary = member_attendance_summary(s, s.get(Member, ama))
        assert summary["recorded"] == 2
        assert summary["present"] == 1
        assert summary["rate"] == 50.0
        assert summary["history"][0].date == date(2024, 3, 10)


def test_attendance_summary():
    records = [
        AttendanceRecord(total_attendance=100, first_timers=2),
        AttendanceRecord(total_attendance=51, first_timers=None),
    ]
    assert attendance_summary(records) == {
        "records": 2,
        "total_attendance": 151,
        "average_attendance": 75.5,
        "first_timers": 2,
    }
    assert attendance_summary([])["average_attendance"] == 0
