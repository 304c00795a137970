from __future__ import annotations

import calendar
from datetime import date
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.chms.modules.members.models import Member


def birthday_in_year(dob: date, year: int) -> date:
    """The day a birthday falls on in `year`; 29 Feb maps to 28 Feb outside leap years."""
    if dob.month == 2 and dob.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return date(year, dob.month, dob.day)


def next_birthday(dob: date, today: date) -> date:
    occurrence = birthday_in_year(dob, today.year)
    if occurrence < today:
        occurrence = birthday_in_year(dob, today.year + 1)
    return occurrence


def age_on(dob: date, on: date) -> int:
    years = on.year - dob.year
    if on < birthday_in_year(dob, on.year):
        years -= 1
    return years


def days_label(days_until: int) -> str:
    if days_until == 0:
        return "Today"
    if days_until == 1:
        return "Tomorrow"
    return f"In {days_until} days"


def _entry(member: "Member", today: date) -> dict[str, Any]:
    occurrence = next_birthday(member.date_of_birth, today)
    days_until = (occurrence - today).days
    return {
        "member": member,
        "birthday": occurrence,
        "days_until": days_until,
        "age": occurrence.year - member.date_of_birth.year,
        "label": days_label(days_until),
    }


def todays_birthdays(members: Iterable["Member"], today: date) -> list[dict[str, Any]]:
    out = [_entry(m, today) for m in members if m.date_of_birth and birthday_in_year(m.date_of_birth, today.year) == today]
    return sorted(out, key=lambda e: (e["member"].last_name.lower(), e["member"].first_name.lower()))


def upcoming_birthdays(members: Iterable["Member"], today: date, days: int = 30) -> list[dict[str, Any]]:
    """Birthdays in the next `days` days, today excluded, nearest first."""
    out = []
    for m in members:
        if not m.date_of_birth:
            continue
        e = _entry(m, today)
        if 0 < e["days_until"] <= days:
            out.append(e)
    return sorted(out, key=lambda e: (e["days_until"], e["member"].last_name.lower()))


def birthday_stats(members: Iterable["Member"], today: date, days: int = 30) -> dict[str, int]:
    """Counts for today, this week (7 days incl. today) and the window incl. today."""
    stats = {"today": 0, "this_week": 0, "this_month": 0}
    for m in members:
        if not m.date_of_birth:
            continue
        d = (next_birthday(m.date_of_birth, today) - today).days
        if d == 0:
            stats["today"] += 1
        if d < 7:
            stats["this_week"] += 1
        if d <= days:
            stats["this_month"] += 1
    return stats


def members_with_birthdays(s: "Session", organization_id: int, active_only: bool = True) -> list["Member"]:
    from app.chms.modules.members.models import Member

    q = s.query(Member).filter(Member.organization_id == organization_id, Member.date_of_birth.isnot(None))
    if active_only:
        q = q.filter(Member.membership_status == "active")
    return q.all()


