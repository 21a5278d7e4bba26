"""
Spreadsheet parsing for the import screens.

Only the first worksheet is read and its first row is taken as the header
row. Cell values are normalized to strings (or ``None``) so that the import
pipeline never sees floats: large numeric ids such as contract numbers are
rendered as exact digit strings.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from cobranca.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm", ".xls", ".csv")
LARGE_NUMBER_THRESHOLD = Decimal(1_000_000)
SCIENTIFIC_RE = re.compile(r"^[+-]?\d+(?:[.,]\d+)?[eE][+-]?\d+$")
CSV_ENCODINGS = ("utf-8-sig", "utf-8", "cp1252", "latin-1")

Cell = str | None


class ParseError(Exception):
    """Raised when an uploaded file cannot be turned into headers and rows."""


@dataclass
class ParsedSheet:
    headers: list[str]
    rows: list[dict[str, Cell]]
    total_rows: int
    sheet_name: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "headers": self.headers,
            "rows": self.rows,
            "total_rows": self.total_rows,
            "sheet_name": self.sheet_name,
        }


def _format_decimal(value: Decimal) -> str:
    if abs(value) >= LARGE_NUMBER_THRESHOLD or value == value.to_integral_value():
        return str(int(value.to_integral_value(rounding=ROUND_HALF_UP)))
    text_value = format(value.normalize(), "f")
    if "." in text_value:
        text_value = text_value.rstrip("0").rstrip(".")
    return text_value


def normalize_cell(value: Any) -> Cell:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        # repr() is the shortest string that round-trips, so 12345678901.0 stays exact.
        return _format_decimal(Decimal(repr(value)))
    if isinstance(value, Decimal):
        return _format_decimal(value)

    text_value = str(value).replace("\xa0", " ").strip()
    if not text_value:
        return None
    if SCIENTIFIC_RE.match(text_value):
        try:
            return _format_decimal(Decimal(text_value.replace(",", ".")))
        except InvalidOperation:
            return text_value
    return text_value


def normalize_headers(raw_headers: list[Any]) -> list[str]:
    """
    Turn the first row into unique, non-empty column keys.

    Blank cells become ``__col_<index>``; repeated names get ``__<n>`` where
    ``n`` is the occurrence number.
    """
    names = [normalize_cell(h) or "" for h in raw_headers]
    taken = {name for name in names if name}
    seen: dict[str, int] = {}
    headers: list[str] = []

    for index, name in enumerate(names):
        if not name:
            candidate = f"__col_{index}"
            while candidate in taken:
                candidate = f"_{candidate}"
            taken.add(candidate)
            headers.append(candidate)
            continue

        occurrence = seen.get(name, 0) + 1
        seen[name] = occurrence
        if occurrence == 1:
            headers.append(name)
            continue

        candidate = f"{name}__{occurrence}"
        while candidate in taken:
            occurrence += 1
            candidate = f"{name}__{occurrence}"
        taken.add(candidate)
        headers.append(candidate)
    return headers


def _get_extension(filename: str) -> str:
    dot = filename.rfind(".")
    if dot == -1:
        return ""
    return filename[dot:].lower()


def _read_xlsx(content: bytes) -> tuple[str, list[list[Any]]]:
    from openpyxl import load_workbook

    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise ParseError(f"Could not read workbook: {exc}") from exc

    try:
        if not workbook.worksheets:
            raise ParseError("Workbook has no worksheets")
        sheet = workbook.worksheets[0]
        rows = [list(row) for row in sheet.iter_rows(values_only=True)]
        return sheet.title, rows
    finally:
        workbook.close()


def _read_xls(content: bytes) -> tuple[str, list[list[Any]]]:
    import xlrd

    try:
        workbook = xlrd.open_workbook(file_contents=content)
    except Exception as exc:
        raise ParseError(f"Could not read workbook: {exc}") from exc

    if workbook.nsheets == 0:
        raise ParseError("Workbook has no worksheets")
    sheet = workbook.sheet_by_index(0)
    rows: list[list[Any]] = []
    for row_idx in range(sheet.nrows):
        row: list[Any] = []
        for col_idx in range(sheet.ncols):
            cell = sheet.cell(row_idx, col_idx)
            if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
                row.append(None)
            elif cell.ctype == xlrd.XL_CELL_DATE:
                row.append(xlrd.xldate_as_datetime(cell.value, workbook.datemode))
            elif cell.ctype == xlrd.XL_CELL_BOOLEAN:
                row.append(bool(cell.value))
            else:
                row.append(cell.value)
        rows.append(row)
    return sheet.name, rows


def _read_csv(content: bytes) -> tuple[str, list[list[Any]]]:
    for encoding in CSV_ENCODINGS:
        try:
            decoded = content.decode(encoding)
            break
        except UnicodeDecodeError:
            continue
    else:
        raise ParseError("CSV file could not be decoded with any supported encoding")

    try:
        dialect = csv.Sniffer().sniff(decoded[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    return "csv", [row for row in csv.reader(io.StringIO(decoded), dialect)]


def _is_blank(row: list[Any]) -> bool:
    return all(normalize_cell(cell) is None for cell in row)


def parse_spreadsheet(
    content: bytes,
    filename: str,
    *,
    full: bool = False,
    settings: Settings = default_settings,
) -> ParsedSheet:
    """
    Parse the first worksheet of an uploaded file.

    With ``full=False`` only the first ``settings.preview_rows`` rows are
    returned; ``total_rows`` always counts every non-empty data row.
    """
    extension = _get_extension(filename)
    if extension not in SUPPORTED_EXTENSIONS:
        raise ParseError("Upload an .xlsx, .xls or .csv file")
    if not content:
        raise ParseError("Uploaded file is empty")

    if extension == ".csv":
        sheet_name, raw_rows = _read_csv(content)
    elif extension == ".xls":
        sheet_name, raw_rows = _read_xls(content)
    else:
        sheet_name, raw_rows = _read_xlsx(content)

    if not raw_rows:
        raise ParseError("Spreadsheet is empty")
    if len(raw_rows) < 2:
        raise ParseError("Spreadsheet needs a header row and at least one data row")

    header_row = list(raw_rows[0])
    if all(normalize_cell(h) is None for h in header_row):
        raise ParseError("No header found in the first row")

    width = 0
    for row in raw_rows:
        for index in range(len(row) - 1, -1, -1):
            if normalize_cell(row[index]) is not None:
                width = max(width, index + 1)
                break
    header_row = (header_row + [None] * width)[:width]
    headers = normalize_headers(header_row)

    limit = None if full else settings.preview_rows
    rows: list[dict[str, Cell]] = []
    total_rows = 0
    for raw in raw_rows[1:]:
        if _is_blank(raw):
            continue
        total_rows += 1
        if limit is not None and len(rows) >= limit:
            continue
        cells = list(raw) + [None] * (width - len(raw))
        rows.append({header: normalize_cell(cells[index]) for index, header in enumerate(headers)})

    if total_rows == 0:
        raise ParseError("No data rows found in the spreadsheet")

    logger.info("Parsed %s: %d column(s), %d row(s)", filename, len(headers), total_rows)
    return ParsedSheet(headers=headers, rows=rows, total_rows=total_rows, sheet_name=sheet_name)
