from datetime import date
from types import SimpleNamespace

from app.chms.db import session_scope
from app.chms.modules.birthdays.service import (
    age_on,
    birthday_in_year,
    birthday_stats,
    days_label,
    members_with_birthdays,
    next_birthday,
    todays_birthdays,
    upcoming_birthdays,
)
from app.chms.modules.members.service import create_member


def _m(first, last, dob):
    return SimpleNamespace(first_name=first, last_name=last, date_of_birth=dob)


def test_leap_day_birthdays_fall_on_feb_28():
    dob = date(2000, 2, 29)
    assert birthday_in_year(dob, 2023) == date(2023, 2, 28)
    assert birthday_in_year(dob, 2024) == date(2024, 2, 29)
    assert todays_birthdays([_m("Leap", "Year", dob)], date(2023, 2, 28))


def test_next_birthday_wraps_to_next_year():
    assert next_birthday(date(1990, 1, 5), date(2024, 12, 30)) == date(2025, 1, 5)
    assert next_birthday(date(1990, 12, 30), date(2024, 12, 30)) == date(2024, 12, 30)


def test_age_on():
    assert age_on(date(1990, 5, 14), date(2024, 5, 13)) == 33
    assert age_on(date(1990, 5, 14), date(2024, 5, 14)) == 34


def test_days_label():
    assert days_label(0) == "Today"
    assert days_label(1) == "Tomorrow"
    assert days_label(12) == "In 12 days"


def test_todays_and_upcoming():
    today = date(2024, 6, 10)
    members = [
        _m("Ama", "Mensah", date(1990, 6, 10)),
        _m("Kofi", "Boateng", date(1985, 6, 11)),
        _m("Yaw", "Owusu", date(2000, 7, 1)),
        _m("Esi", "Quaye", date(1970, 8, 30)),
        _m("No", "Birthday", None),
    ]
    todays = todays_birthdays(members, today)
    assert [e["member"].first_name for e in todays] == ["Ama"]
    assert todays[0]["age"] == 34
    assert todays[0]["label"] == "Today"

    upcoming = upcoming_birthdays(members, today)
    assert [(e["member"].first_name, e["days_until"]) for e in upcoming] == [("Kofi", 1), ("Yaw", 21)]
    assert upcoming[0]["label"] == "Tomorrow"

    assert birthday_stats(members, today) == {"today": 1, "this_week": 2, "this_month": 3}


def test_members_with_birthdays_only_active_with_dob(app, org_id):
    with session_scope(app) as s:
        create_member(s, org_id, {"first_name": "Ama", "last_name": "Mensah", "date_of_birth": "1990-06-10"}, None)
        create_member(
            s,
            org_id,
            {"first_name": "Kofi", "last_name": "Boateng", "date_of_birth": "1985-06-11", "membership_status": "inactive"},
            None,
        )
        create_member(s, org_id, {"first_name": "Yaw", "last_name": "Owusu"}, None)
        s.flush()
        assert [m.first_name for m in members_with_birthdays(s, org_id)] == ["Ama"]
        assert len(members_with_birthdays(s, org_id, active_only=False)) == 2


def test_birthdays_page(app, org_id, client, login):
    today = date.today()
    dob = date(1990, today.month, today.day) if (today.month, today.day) != (2, 29) else date(1992, 2, 29)
    with session_scope(app) as s:
        create_member(s, org_id, {"first_name": "Ama", "last_name": "Mensah", "date_of_birth": dob.isoformat()}, None)

    login()
    r = client.get("/dashboard/birthdays")
    assert r.status_code == 200
    assert b"Ama Mensah" in r.data
