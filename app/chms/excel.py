"""
Spreadsheet helpers shared by the import/export pages (openpyxl).
"""
from __future__ import annotations

import io
import zipfile
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill(start_color="1F4E78", end_color="1F4E78", fill_type="solid")


class ImportFileError(RuntimeError):
    pass


def normalize_header(value: Any) -> str:
    return "_".join(str(value or "").strip().lower().replace("-", " ").split())


def _excel_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return value


def build_workbook(sheets: Sequence[tuple[str, Sequence[str], Iterable[Sequence[Any]]]]) -> bytes:
    """
    Build an .xlsx with one sheet per (title, headers, rows) entry and return its bytes.
    """
    wb = Workbook()
    wb.remove(wb.active)
    for title, headers, rows in sheets:
        ws = wb.create_sheet(title=title[:31])
        ws.append(list(headers))
        for cell in ws[1]:
            cell.font = _HEADER_FONT
            cell.fill = _HEADER_FILL
        widths = [len(str(h)) for h in headers]
        for row in rows:
            values = [_excel_value(v) for v in row]
            ws.append(values)
            for i, v in enumerate(values[: len(widths)]):
                widths[i] = max(widths[i], min(len(str(v)) if v is not None else 0, 60))
        for i, w in enumerate(widths, start=1):
            ws.column_dimensions[get_column_letter(i)].width = w + 2
        ws.freeze_panes = "A2"
    if not wb.worksheets:
        wb.create_sheet(title="Sheet1")
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def read_rows(data: bytes) -> list[tuple[int, dict[str, Any]]]:
    """
    Read the first sheet: row 1 holds column keys, later rows are records.
    Returns (excel_row_number, {normalized_header: value}); blank rows are skipped.
    """
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise ImportFileError(f"Could not read spreadsheet: {e}") from e

    ws = wb.worksheets[0] if wb.worksheets else None
    if ws is None:
        raise ImportFileError("Spreadsheet has no sheets.")

    rows = ws.iter_rows(values_only=True)
    try:
        header_row = next(rows)
    except StopIteration:
        raise ImportFileError("Spreadsheet is empty.") from None
    headers = [normalize_header(h) for h in header_row]
    if not any(headers):
        raise ImportFileError("Header row is empty.")

    out: list[tuple[int, dict[str, Any]]] = []
    for idx, values in enumerate(rows, start=2):
        if values is None or all(v is None or str(v).strip() == "" for v in values):
            continue
        record = {h: v for h, v in zip(headers, values) if h}
        out.append((idx, record))
    wb.close()
    return out


def cell_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        # phone numbers typed into Excel come back as floats
        value = int(value)
    text = str(value).strip()
    return text or None


def cell_date(value: Any) -> date | None:
    """Accept real Excel dates or YYYY-MM-DD text. Raises ValueError otherwise."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def cell_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "y")
