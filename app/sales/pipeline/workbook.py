"""
Spreadsheet reader: first worksheet of an ``.xlsx`` file as rows of cell strings.
"""
from __future__ import annotations

import datetime as dt
import zipfile
from io import BytesIO

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

XLSX_SIGNATURE = b"PK\x03\x04"


class WorkbookError(ValueError):
    """The payload is not a readable xlsx workbook."""


def looks_like_xlsx(data: bytes) -> bool:
    return data[:4] == XLSX_SIGNATURE


def render_cell(value) -> str:
    """Render one cell the way the sales exports print it."""
    if value is None:
        return ""
    if isinstance(value, (dt.datetime, dt.date)):
        return value.strftime("%d-%m-%Y")
    return str(value).strip()


def read_rows(data: bytes) -> list[list[str]]:
    """Return every row of the first worksheet; trailing empty cells are trimmed."""
    try:
        wb = load_workbook(BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError) as exc:
        raise WorkbookError(f"Unreadable workbook: {exc}") from exc

    rows: list[list[str]] = []
    try:
        ws = wb.worksheets[0]
        for values in ws.iter_rows(values_only=True):
            cells = [render_cell(v) for v in values]
            while cells and not cells[-1]:
                cells.pop()
            rows.append(cells)
    finally:
        wb.close()
    return rows
