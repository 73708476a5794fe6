"""
Spreadsheet → ImportRow parsing for bulk roster uploads.

- .csv: UTF-8 (BOM stripped), first line is the header.
- .xlsx: active sheet via openpyxl, first row is the header.
- .xls: first sheet via xlrd (legacy BIFF workbooks).

Header names are kept verbatim (whitespace-trimmed); every cell becomes a string.
Entirely blank lines are skipped but still consume a row number, so row numbers
always match the position of the data row in the file.
"""

import csv
import io
import logging
import os
from datetime import date, datetime, time
from typing import Iterator, List, Sequence

import xlrd
from openpyxl import load_workbook

from app.core.exceptions import EmptyFileError, UnsupportedFormatError

from .schemas import ImportRow

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".csv", ".xls", ".xlsx")


def file_extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lower()


def parse_rows(content: bytes, file_name: str) -> Iterator[ImportRow]:
    """
    Lazily yield ImportRow objects from an uploaded file.
    Raises UnsupportedFormatError for unknown extensions or unreadable bytes, and
    EmptyFileError when no data row follows the header. Extension errors raise at call
    time; content errors surface while iterating.
    """
    ext = file_extension(file_name)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(
            f"Unsupported file type '{ext or file_name}'. Upload a .csv, .xls or .xlsx file."
        )
    if not content:
        raise EmptyFileError("File is empty")

    if ext == ".csv":
        records = _iter_csv(content)
    elif ext == ".xls":
        records = _iter_xls(content)
    else:
        records = _iter_excel(content)
    return _to_import_rows(records)


def read_rows(content: bytes, file_name: str) -> List[ImportRow]:
    """Materialize parse_rows(); the orchestrator needs the row count before processing."""
    rows = list(parse_rows(content, file_name))
    logger.debug("Parsed %d data rows from %s", len(rows), file_name)
    return rows


def _to_import_rows(records: Iterator[Sequence[str]]) -> Iterator[ImportRow]:
    header = next(records, None)
    if header is None or not any(h for h in header):
        raise EmptyFileError("File has no header row")
    headers = _dedupe_headers(header)

    yielded = 0
    for row_number, values in enumerate(records, start=1):
        if not values or all(not v for v in values):
            continue
        raw_fields = {h: (values[i] if i < len(values) else "") for i, h in enumerate(headers)}
        yielded += 1
        yield ImportRow(row_number=row_number, raw_fields=raw_fields)

    if yielded == 0:
        raise EmptyFileError("File has no data rows")


def _dedupe_headers(header: Sequence[str]) -> List[str]:
    """Blank header cells become col_<n>; repeated names get a numeric suffix so no value is lost."""
    seen = {}
    headers: List[str] = []
    for i, h in enumerate(header):
        name = h or f"col_{i + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def _decode(raw: bytes) -> str:
    if raw.startswith(b"\xef\xbb\xbf"):
        raw = raw[3:]
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UnsupportedFormatError(f"Could not read CSV file: not valid UTF-8 ({e.reason})") from e


def _iter_csv(content: bytes) -> Iterator[List[str]]:
    text = _decode(content)
    try:
        for row in csv.reader(io.StringIO(text)):
            yield [cell.strip() for cell in row]
    except csv.Error as e:
        raise UnsupportedFormatError(f"Could not read CSV file: {e}") from e


def _iter_excel(content: bytes) -> Iterator[List[str]]:
    try:
        wb = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise UnsupportedFormatError(f"Could not read Excel file: {e}") from e

    try:
        ws = wb.active
        if ws is None:
            raise EmptyFileError("Excel file has no active sheet")
        # Sheet XML is parsed lazily; a damaged sheet only fails here
        try:
            rows = [[_cell_str(v) for v in row] for row in ws.iter_rows(values_only=True)]
        except Exception as e:
            raise UnsupportedFormatError(f"Could not read Excel file: {e}") from e
    finally:
        wb.close()
    yield from rows


def _iter_xls(content: bytes) -> Iterator[List[str]]:
    """Legacy BIFF workbook, first sheet."""
    try:
        book = xlrd.open_workbook(file_contents=content)
        sheet = book.sheet_by_index(0)
        rows = [
            [_xls_cell_str(cell, book.datemode) for cell in sheet.row(r)]
            for r in range(sheet.nrows)
        ]
    except Exception as e:
        raise UnsupportedFormatError(f"Could not read Excel file: {e}") from e
    yield from rows


def _xls_cell_str(cell: "xlrd.sheet.Cell", datemode: int) -> str:
    if cell.ctype == xlrd.XL_CELL_DATE:
        return _cell_str(xlrd.xldate_as_datetime(cell.value, datemode))
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return _cell_str(bool(cell.value))
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return ""
    return _cell_str(cell.value)


def _cell_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        # Excel stores every number as float: 2024 → "2024", not "2024.0"
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()

