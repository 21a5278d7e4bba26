from datetime import date, datetime
from io import BytesIO

import pytest
from openpyxl import Workbook

from cobranca.config import Settings
from cobranca.spreadsheet import ParseError, normalize_cell, normalize_headers, parse_spreadsheet


def xlsx_bytes(rows):
    wb = Workbook()
    ws = wb.active
    ws.title = "Base"
    for row in rows:
        ws.append(row)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def test_normalize_headers_fills_blanks_and_numbers_duplicates():
    headers = normalize_headers(["Nome", None, "Nome", "Valor", "  ", "Nome"])

    assert headers == ["Nome", "__col_1", "Nome__2", "Valor", "__col_4", "Nome__3"]


def test_normalize_headers_avoids_collision_with_existing_suffix():
    headers = normalize_headers(["A", "A__2", "A"])

    assert len(set(headers)) == 3
    assert headers[:2] == ["A", "A__2"]


def test_normalize_cell_keeps_large_numbers_exact():
    assert normalize_cell(12345678901) == "12345678901"
    assert normalize_cell(12345678901.0) == "12345678901"
    assert normalize_cell(1.2345678901e10) == "12345678901"
    assert normalize_cell("1.2345678901E+10") == "12345678901"


def test_normalize_cell_rounds_large_halves_up():
    assert normalize_cell(2500000.5) == "2500001"
    assert normalize_cell(2500001.5) == "2500002"


def test_normalize_cell_formats_other_values():
    assert normalize_cell(25.5) == "25.5"
    assert normalize_cell(3.0) == "3"
    assert normalize_cell(True) == "true"
    assert normalize_cell(datetime(2026, 1, 5)) == "2026-01-05"
    assert normalize_cell(datetime(2026, 1, 5, 14, 30)) == "2026-01-05 14:30:00"
    assert normalize_cell(date(2026, 2, 1)) == "2026-02-01"
    assert normalize_cell("  texto\xa0 ") == "texto"
    assert normalize_cell("   ") is None
    assert normalize_cell(float("nan")) is None


def test_parse_xlsx_reads_first_sheet_with_placeholders():
    content = xlsx_bytes(
        [
            ["CONTRATO", None, "CONTRATO", "Valor"],
            [12345678901, "x", "dup", 150.5],
            [None, None, None, None],
            [98765432109, None, None, 99],
        ]
    )

    sheet = parse_spreadsheet(content, "base.xlsx")

    assert sheet.headers == ["CONTRATO", "__col_1", "CONTRATO__2", "Valor"]
    assert sheet.total_rows == 2
    assert sheet.sheet_name == "Base"
    assert sheet.rows[0] == {"CONTRATO": "12345678901", "__col_1": "x", "CONTRATO__2": "dup", "Valor": "150.5"}
    assert sheet.rows[1]["CONTRATO"] == "98765432109"
    assert sheet.rows[1]["__col_1"] is None


def test_parse_preview_limits_rows_but_counts_all():
    content = xlsx_bytes([["OS", "Nome"]] + [[str(i), f"Cliente {i}"] for i in range(5)])
    custom = Settings()
    custom.preview_rows = 2

    preview = parse_spreadsheet(content, "vendas.xlsx", settings=custom)
    full = parse_spreadsheet(content, "vendas.xlsx", full=True, settings=custom)

    assert len(preview.rows) == 2
    assert preview.total_rows == 5
    assert len(full.rows) == 5


def test_parse_trims_trailing_empty_columns():
    content = xlsx_bytes([["OS", "Nome", None, None], ["1", "Ana", None, None]])

    sheet = parse_spreadsheet(content, "vendas.xlsx")

    assert sheet.headers == ["OS", "Nome"]


def test_parse_csv_detects_semicolon_and_legacy_encoding():
    content = "Nome;CPF;Cidade\nJoão;123;São Paulo\nMaria;456;Recife\n".encode("cp1252")

    sheet = parse_spreadsheet(content, "clientes.csv")

    assert sheet.headers == ["Nome", "CPF", "Cidade"]
    assert sheet.rows[0] == {"Nome": "João", "CPF": "123", "Cidade": "São Paulo"}
    assert sheet.total_rows == 2


def test_parse_rejects_unsupported_extension():
    with pytest.raises(ParseError):
        parse_spreadsheet(b"data", "notes.txt")


def test_parse_rejects_header_only_sheet():
    with pytest.raises(ParseError):
        parse_spreadsheet(xlsx_bytes([["OS", "Nome"]]), "vendas.xlsx")


def test_parse_rejects_blank_header_row():
    with pytest.raises(ParseError):
        parse_spreadsheet(xlsx_bytes([[None, None], ["1", "Ana"]]), "vendas.xlsx")


def test_parse_rejects_sheet_without_data_rows():
    with pytest.raises(ParseError):
        parse_spreadsheet(xlsx_bytes([["OS", "Nome"], [None, None], [None, None]]), "vendas.xlsx")


def test_parse_rejects_corrupt_workbook():
    with pytest.raises(ParseError):
        parse_spreadsheet(b"not a zip file", "vendas.xlsx")
