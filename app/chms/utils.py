from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Any

from app.chms.constants import PER_PAGE

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def clean(value: Any) -> str | None:
    """Strip a form value; empty strings become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string. Raises ValueError on malformed input."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    return date.fromisoformat(s)


def safe_parse_date(s: str | None) -> date | None:
    """Like parse_date, but for query-string filters: bad input is ignored."""
    try:
        return parse_date(s)
    except ValueError:
        return None


def is_valid_date(s: str | None) -> bool:
    try:
        parse_date(s)
    except ValueError:
        return False
    return True


def parse_non_negative_int(s: Any) -> int | None:
    """Parse an optional count field. Raises ValueError when present but not an integer >= 0."""
    if s is None:
        return None
    text = str(s).strip()
    if not text:
        return None
    value = int(text)
    if value < 0:
        raise ValueError("must be zero or more")
    return value


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def format_date(value: date | None) -> str:
    """dd-Mon-yy, e.g. 05-Mar-24."""
    if value is None:
        return "—"
    return value.strftime("%d-%b-%y")


@dataclass(frozen=True)
class Page:
    items: list
    total: int
    page: int
    per_page: int

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.per_page < self.total

    @property
    def first_index(self) -> int:
        return 0 if self.total == 0 else (self.page - 1) * self.per_page + 1

    @property
    def last_index(self) -> int:
        return min(self.page * self.per_page, self.total)


def page_number(raw: str | None) -> int:
    try:
        page = int(raw or "1")
    except ValueError:
        page = 1
    return max(page, 1)


def paginate(q, page: int, per_page: int = PER_PAGE) -> Page:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, total=total, page=page, per_page=per_page)
