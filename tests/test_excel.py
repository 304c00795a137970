import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook, load_workbook

from app.chms.excel import ImportFileError, build_workbook, cell_bool, cell_date, cell_text, read_rows
from app.chms.utils import Page, format_date, page_number, parse_non_negative_int


def _xlsx(rows):
    wb = Workbook()
    for row in rows:
        wb.active.append(row)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def test_build_workbook_sheets_and_booleans():
    data = build_workbook(
        [
            ("Visitors", ("first_name", "follow_up_required"), [["Esi", True], ["Kwame", False]]),
            ("A very long sheet title that Excel would reject", ("x",), []),
        ]
    )
    wb = load_workbook(io.BytesIO(data))
    assert wb.sheetnames[0] == "Visitors"
    assert len(wb.sheetnames[1]) == 31
    assert list(wb["Visitors"].iter_rows(values_only=True)) == [
        ("first_name", "follow_up_required"),
        ("Esi", "yes"),
        ("Kwame", "no"),
    ]


def test_read_rows_normalizes_headers_and_skips_blank_rows():
    data = _xlsx(
        [
            ["First Name", "Last-Name", " Phone  Number ", None],
            ["Ama", "Mensah", 244123456.0, "ignored"],
            [None, "", None, None],
            ["Kofi", "Boateng", "0201112222", None],
        ]
    )
    rows = read_rows(data)
    assert [n for n, _ in rows] == [2, 4]
    record = rows[0][1]
    assert sorted(record) == ["first_name", "last_name", "phone_number"]
    assert record["last_name"] == "Mensah"
    assert cell_text(record["phone_number"]) == "244123456"


def test_read_rows_rejects_bad_files():
    with pytest.raises(ImportFileError):
        read_rows(b"this is not a spreadsheet")
    with pytest.raises(ImportFileError, match="empty"):
        read_rows(_xlsx([]))


def test_cell_helpers():
    assert cell_text(244123456.0) == "244123456"
    assert cell_text("  Ama ") == "Ama"
    assert cell_text("   ") is None
    assert cell_text(None) is None

    assert cell_date(datetime(2024, 3, 3, 10, 30)) == date(2024, 3, 3)
    assert cell_date(date(2024, 3, 3)) == date(2024, 3, 3)
    assert cell_date("2024-03-03") == date(2024, 3, 3)
    assert cell_date("") is None
    with pytest.raises(ValueError):
        cell_date("03/03/2024")

    assert cell_bool(True)
    assert cell_bool("Yes")
    assert cell_bool(1)
    assert not cell_bool("no")
    assert not cell_bool(None)


def test_paging_helpers():
    assert page_number("3") == 3
    assert page_number("abc") == 1
    assert page_number("-4") == 1
    p = Page(items=[], total=45, page=2, per_page=20)
    assert p.has_prev and p.has_next
    assert (p.first_index, p.last_index) == (21, 40)
    assert Page(items=[], total=0, page=1, per_page=20).first_index == 0


def test_format_and_parse_helpers():
    assert format_date(date(2024, 3, 5)) == "05-Mar-24"
    assert parse_non_negative_int(" 12 ") == 12
    assert parse_non_negative_int("") is None
    with pytest.raises(ValueError):
        parse_non_negative_int("-1")
