"""
Bulk import of sales and operator spreadsheets.

The pipeline is a generator: ``iter_import`` yields ``ProgressEvent`` values
while it works and returns the final ``ImportResult``. ``execute_import``
drains it for callers that only want the result.

Every write batch runs in its own transaction, so a failing batch is
reported and the following batches still run. Row problems are collected
as ``RowError`` entries instead of aborting the run.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Generator, Iterator, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from cobranca.config import Settings, settings as default_settings
from cobranca.field_mapping import normalize_import_type
from cobranca.matching import SalesLookup, digits_only, load_sales_lookup, normalize_contract_id

logger = logging.getLogger(__name__)

# Spreadsheet row number of the first data row (header is row 1).
ROW_OFFSET = 2
KEY_LOOKUP_CHUNK = 500
DATE_FORMATS = ("%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y", "%d/%m/%y")
IMPORT_BUSY_MESSAGE = "Another import is already running. Try again when it finishes."

ParsedRow = dict[str, Any]


class ImportInProgressError(Exception):
    """Raised when another import is already running in this process."""


class _FatalImportError(Exception):
    pass


@dataclass
class RowError:
    row: int
    message: str
    field: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"row": self.row, "field": self.field, "message": self.message}


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    percent: int

    def as_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "percent": self.percent}


@dataclass
class ImportResult:
    success: bool
    total_processed: int
    success_count: int
    error_count: int
    errors: list[RowError]
    batch_id: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": [e.as_dict() for e in self.errors],
            "batch_id": self.batch_id,
        }


@dataclass
class _PendingWrite:
    rows: list[int]
    params: dict[str, Any]


@dataclass
class _Run:
    total: int
    succeeded: int = 0
    failed: int = 0
    errors: list[RowError] = field(default_factory=list)
    last_percent: int = 0

    def row_error(self, row: int, message: str, field_name: str | None = None) -> None:
        self.errors.append(RowError(row=row, message=message, field=field_name))
        self.failed += 1

    def write_failed(self, rows: list[int], message: str) -> None:
        self.errors.append(RowError(row=rows[-1], message=message))
        self.failed += len(rows)

    def batch_error(self, message: str, rows_failed: int) -> None:
        self.errors.append(RowError(row=0, message=message))
        self.failed += rows_failed

    def progress(self, phase: str, percent: int) -> ProgressEvent:
        self.last_percent = max(self.last_percent, min(100, int(percent)))
        return ProgressEvent(phase=phase, percent=self.last_percent)

    def result(self, batch_id: int | None, error_limit: int) -> ImportResult:
        return ImportResult(
            success=not self.errors,
            total_processed=self.total,
            success_count=self.succeeded,
            error_count=self.failed,
            errors=self.errors[:error_limit],
            batch_id=batch_id,
        )


class ImportGuard:
    """Serializes import runs inside one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise ImportInProgressError(IMPORT_BUSY_MESSAGE)

    def release(self) -> None:
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()


import_guard = ImportGuard()


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\xa0", " ").strip()


def _optional_text(value: Any) -> str | None:
    return _clean_text(value) or None


def _to_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = _clean_text(value)
    if not raw:
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        return None


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_amount(value: Any) -> float | None:
    """
    Parse a money cell. Accepts ``R$`` prefixes and Brazilian ``1.234,56``;
    a bare integer above 100 is read as cents (``"2532"`` -> 25.32) because
    operator exports drop the decimal separator.
    """
    if value is None:
        return None
    cleaned = re.sub(r"[R$\s]", "", str(value)).strip()
    if not cleaned:
        return None
    if cleaned.isdigit() and int(cleaned) > 100:
        return float(Decimal(cleaned) / 100)
    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    try:
        return float(Decimal(cleaned))
    except InvalidOperation:
        return None


def _raw_json(row: ParsedRow) -> str:
    return json.dumps(row, ensure_ascii=False, default=str)


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _field_getter(row: ParsedRow, mappings: dict[str, str | None]) -> Callable[[str], str | None]:
    def get(field_name: str) -> str | None:
        source = mappings.get(field_name)
        if not source:
            return None
        return _optional_text(row.get(source))

    return get


def _create_batch(engine: Engine, kind: str, file_name: str, total: int) -> int:
    with engine.begin() as conn:
        batch_id = conn.execute(
            text(
                """
                INSERT INTO import_batches (tipo, arquivo_nome, total_registros, created_at)
                VALUES (:tipo, :arquivo_nome, :total_registros, NOW())
                RETURNING id
                """
            ),
            {"tipo": kind, "arquivo_nome": file_name, "total_registros": total},
        ).scalar_one()
    return int(batch_id)


def _finish_batch(engine: Engine, batch_id: int, succeeded: int, failed: int) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                UPDATE import_batches
                SET registros_sucesso = :registros_sucesso, registros_erro = :registros_erro
                WHERE id = :batch_id
                """
            ),
            {"batch_id": batch_id, "registros_sucesso": succeeded, "registros_erro": failed},
        )


def _load_customer_ids(conn: Connection, tax_ids: Sequence[str]) -> dict[str, int]:
    found: dict[str, int] = {}
    query = text("SELECT id, cpf_cnpj FROM customers WHERE cpf_cnpj IN :tax_ids").bindparams(
        bindparam("tax_ids", expanding=True)
    )
    for chunk in _chunks(list(tax_ids), KEY_LOOKUP_CHUNK):
        for row in conn.execute(query, {"tax_ids": list(chunk)}).mappings():
            found[str(row["cpf_cnpj"])] = int(row["id"])
    return found


def _load_contract_keys(conn: Connection) -> dict[tuple[str, str], int]:
    rows = conn.execute(text("SELECT id, id_contrato, numero_fatura FROM operator_contracts")).mappings()
    return {(str(r["id_contrato"]), str(r["numero_fatura"])): int(r["id"]) for r in rows}


def _validation_progress(run: _Run, index: int, total: int, start: int, end: int) -> ProgressEvent | None:
    step = max(1, total // 10)
    if (index + 1) % step and index + 1 != total:
        return None
    return run.progress("validation", start + (end - start) * (index + 1) / max(1, total))


# ---------------------------------------------------------------------------
# Sales import
# ---------------------------------------------------------------------------

INSERT_CUSTOMER_SQL = text(
    """
    INSERT INTO customers (
      cpf_cnpj, nome, email, telefone, telefone2, endereco, cidade, uf, cep, created_at, updated_at
    )
    VALUES (
      :cpf_cnpj, :nome, :email, :telefone, :telefone2, :endereco, :cidade, :uf, :cep, NOW(), NOW()
    )
    """
)

UPDATE_CUSTOMER_SQL = text(
    """
    UPDATE customers
    SET
      nome = :nome,
      email = COALESCE(:email, email),
      telefone = COALESCE(:telefone, telefone),
      telefone2 = COALESCE(:telefone2, telefone2),
      endereco = COALESCE(:endereco, endereco),
      cidade = COALESCE(:cidade, cidade),
      uf = COALESCE(:uf, uf),
      cep = COALESCE(:cep, cep),
      updated_at = NOW()
    WHERE id = :customer_id
    """
)

INSERT_SALES_SQL = text(
    """
    INSERT INTO sales_base (
      os, customer_id, produto, plano, valor_plano, data_venda, vendedor,
      mes_safra, data_vencimento, valor, import_batch_id, raw_data, created_at
    )
    VALUES (
      :os, :customer_id, :produto, :plano, :valor_plano, :data_venda, :vendedor,
      :mes_safra, :data_vencimento, :valor, :import_batch_id, :raw_data, NOW()
    )
    """
)


def _run_sales(
    engine: Engine,
    run: _Run,
    rows: Sequence[ParsedRow],
    mappings: dict[str, str | None],
    batch_id: int,
    settings: Settings,
) -> Generator[ProgressEvent, None, None]:
    customers: dict[str, dict[str, Any]] = {}
    sales: list[tuple[int, str, dict[str, Any]]] = []
    for index, row in enumerate(rows):
        row_number = index + ROW_OFFSET
        get = _field_getter(row, mappings)

        tax_id = digits_only(get("cpf_cnpj"))
        name = get("nome")
        order_key = digits_only(get("os"))
        if not tax_id:
            run.row_error(row_number, "CPF/CNPJ is required", "cpf_cnpj")
        elif not name:
            run.row_error(row_number, "Nome is required", "nome")
        elif not order_key:
            run.row_error(row_number, "OS is required", "os")
        else:
            # Last occurrence of a tax id in the file wins.
            customers[tax_id] = {
                "cpf_cnpj": tax_id,
                "nome": name,
                "email": get("email"),
                "telefone": get("telefone"),
                "telefone2": get("telefone2"),
                "endereco": get("endereco"),
                "cidade": get("cidade"),
                "uf": get("uf"),
                "cep": get("cep"),
            }
            sales.append(
                (
                    row_number,
                    tax_id,
                    {
                        "os": order_key,
                        "produto": get("produto"),
                        "plano": get("plano"),
                        "valor_plano": _to_amount(get("valor_plano")),
                        "data_venda": _iso(_to_date(get("data_venda"))),
                        "vendedor": get("vendedor"),
                        "mes_safra": get("mes_safra"),
                        "data_vencimento": _iso(_to_date(get("data_vencimento"))),
                        "valor": _to_amount(get("valor")),
                        "import_batch_id": batch_id,
                        "raw_data": _raw_json(row),
                    },
                )
            )

        event = _validation_progress(run, index, len(rows), 10, 40)
        if event is not None:
            yield event

    # Customers must exist before the sales rows that reference them.
    try:
        with engine.connect() as conn:
            existing = _load_customer_ids(conn, list(customers))
    except SQLAlchemyError as exc:
        raise _FatalImportError(f"Could not load existing customers: {exc}") from exc
    yield run.progress("customers", 42)

    new_customers = [payload for tax_id, payload in customers.items() if tax_id not in existing]
    changed_customers = [
        {**payload, "customer_id": existing[tax_id]} for tax_id, payload in customers.items() if tax_id in existing
    ]
    for number, chunk in enumerate(_chunks(new_customers, settings.customer_batch_size), start=1):
        try:
            with engine.begin() as conn:
                conn.execute(INSERT_CUSTOMER_SQL, list(chunk))
        except SQLAlchemyError as exc:
            logger.warning("Customer insert batch %d failed: %s", number, exc)
            run.batch_error(f"Customer insert batch {number} failed: {exc}", 0)
    yield run.progress("customers", 48)

    for number, chunk in enumerate(_chunks(changed_customers, settings.customer_batch_size), start=1):
        try:
            with engine.begin() as conn:
                conn.execute(UPDATE_CUSTOMER_SQL, list(chunk))
        except SQLAlchemyError as exc:
            logger.warning("Customer update batch %d failed: %s", number, exc)
            run.batch_error(f"Customer update batch {number} failed: {exc}", 0)
    yield run.progress("customers", 55)

    try:
        with engine.connect() as conn:
            customer_ids = _load_customer_ids(conn, list(customers))
    except SQLAlchemyError as exc:
        raise _FatalImportError(f"Could not reload customers: {exc}") from exc

    ready: list[tuple[int, dict[str, Any]]] = []
    for row_number, tax_id, params in sales:
        customer_id = customer_ids.get(tax_id)
        if customer_id is None:
            run.row_error(row_number, f"Customer {tax_id} could not be saved", "cpf_cnpj")
            continue
        ready.append((row_number, {**params, "customer_id": customer_id}))

    batches = list(_chunks(ready, settings.sales_insert_batch_size))
    for number, chunk in enumerate(batches, start=1):
        try:
            with engine.begin() as conn:
                conn.execute(INSERT_SALES_SQL, [params for _, params in chunk])
            run.succeeded += len(chunk)
        except SQLAlchemyError as exc:
            logger.warning("Sales insert batch %d failed: %s", number, exc)
            run.batch_error(f"Sales insert batch {number} failed: {exc}", len(chunk))
        yield run.progress("insert", 55 + 40 * number / len(batches))


# ---------------------------------------------------------------------------
# Operator import
# ---------------------------------------------------------------------------

INSERT_CONTRACT_SQL = text(
    """
    INSERT INTO operator_contracts (
      id_contrato, numero_fatura, customer_id, sales_base_id, status_contrato,
      data_cadastro, mes_safra_cadastro, mes_safra_vencimento, data_vencimento,
      data_pagamento, valor_fatura, import_batch_id, raw_data, created_at, updated_at
    )
    VALUES (
      :id_contrato, :numero_fatura, :customer_id, :sales_base_id, :status_contrato,
      :data_cadastro, :mes_safra_cadastro, :mes_safra_vencimento, :data_vencimento,
      :data_pagamento, :valor_fatura, :import_batch_id, :raw_data, NOW(), NOW()
    )
    """
)

UPDATE_CONTRACT_SQL = text(
    """
    UPDATE operator_contracts
    SET
      customer_id = :customer_id,
      sales_base_id = :sales_base_id,
      status_contrato = :status_contrato,
      data_cadastro = :data_cadastro,
      mes_safra_cadastro = :mes_safra_cadastro,
      mes_safra_vencimento = :mes_safra_vencimento,
      data_vencimento = :data_vencimento,
      data_pagamento = :data_pagamento,
      valor_fatura = :valor_fatura,
      import_batch_id = :import_batch_id,
      raw_data = :raw_data,
      updated_at = NOW()
    WHERE id = :contract_id
    """
)


def _update_contract(engine: Engine, params: dict[str, Any]) -> None:
    with engine.begin() as conn:
        conn.execute(UPDATE_CONTRACT_SQL, params)


def _run_operator(
    engine: Engine,
    run: _Run,
    rows: Sequence[ParsedRow],
    mappings: dict[str, str | None],
    batch_id: int,
    settings: Settings,
) -> Generator[ProgressEvent, None, None]:
    try:
        with engine.connect() as conn:
            lookup: SalesLookup = load_sales_lookup(conn, settings)
            existing_keys = _load_contract_keys(conn)
    except SQLAlchemyError as exc:
        raise _FatalImportError(f"Could not load existing sales and contracts: {exc}") from exc
    yield run.progress("cache", 10)

    inserts: dict[tuple[str, str], _PendingWrite] = {}
    updates: dict[tuple[str, str], _PendingWrite] = {}
    for index, row in enumerate(rows):
        row_number = index + ROW_OFFSET
        get = _field_getter(row, mappings)

        raw_contract = get("id_contrato")
        contract_id = normalize_contract_id(raw_contract)
        invoice = get("numero_fatura")
        sale = lookup.match(contract_id) if contract_id else None
        if not raw_contract:
            run.row_error(row_number, "ID Contrato is required", "id_contrato")
        elif not contract_id:
            run.row_error(row_number, f"ID Contrato '{raw_contract}' has no digits", "id_contrato")
        elif not invoice:
            run.row_error(row_number, "Numero da fatura is required", "numero_fatura")
        elif sale is None:
            if run.failed < 10:
                logger.warning("Row %d: no sales order matches contract %s (raw %r)", row_number, contract_id, raw_contract)
            run.row_error(row_number, f"Contract {contract_id} not found in the sales base", "id_contrato")
        else:
            params = {
                "id_contrato": contract_id,
                "numero_fatura": invoice,
                "customer_id": sale.customer_id,
                "sales_base_id": sale.id,
                "status_contrato": get("status_contrato"),
                "data_cadastro": _iso(_to_date(get("data_cadastro"))),
                "mes_safra_cadastro": get("mes_safra_cadastro"),
                "mes_safra_vencimento": get("mes_safra_vencimento"),
                "data_vencimento": _iso(_to_date(get("data_vencimento"))),
                "data_pagamento": _iso(_to_date(get("data_pagamento"))),
                "valor_fatura": _to_amount(get("valor_fatura")),
                "import_batch_id": batch_id,
                "raw_data": _raw_json(row),
            }
            key = (contract_id, invoice)
            if key in existing_keys:
                params["contract_id"] = existing_keys[key]
                target = updates
            else:
                target = inserts
            # A key seen earlier in this file collapses onto the same write; last row wins.
            pending = target.get(key)
            if pending is None:
                target[key] = _PendingWrite(rows=[row_number], params=params)
            else:
                pending.rows.append(row_number)
                pending.params = params

        event = _validation_progress(run, index, len(rows), 10, 40)
        if event is not None:
            yield event

    insert_batches = list(_chunks(list(inserts.values()), settings.contract_insert_batch_size))
    for number, chunk in enumerate(insert_batches, start=1):
        row_count = sum(len(w.rows) for w in chunk)
        try:
            with engine.begin() as conn:
                conn.execute(INSERT_CONTRACT_SQL, [w.params for w in chunk])
            run.succeeded += row_count
        except SQLAlchemyError as exc:
            logger.warning("Contract insert batch %d failed: %s", number, exc)
            run.batch_error(f"Contract insert batch {number} failed: {exc}", row_count)
        yield run.progress("insert", 40 + 35 * number / len(insert_batches))
    yield run.progress("insert", 75)

    update_batches = list(_chunks(list(updates.values()), settings.update_batch_size))
    if update_batches:
        with ThreadPoolExecutor(max_workers=max(1, settings.update_concurrency)) as pool:
            for number, chunk in enumerate(update_batches, start=1):
                futures = [(w, pool.submit(_update_contract, engine, w.params)) for w in chunk]
                # The whole chunk is joined before the next one starts.
                for write, future in futures:
                    try:
                        future.result()
                        run.succeeded += len(write.rows)
                    except SQLAlchemyError as exc:
                        logger.warning("Contract update for row %d failed: %s", write.rows[-1], exc)
                        run.write_failed(write.rows, f"Update failed: {exc}")
                yield run.progress("update", 75 + 20 * number / len(update_batches))
    yield run.progress("update", 95)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _fatal_result(total: int, message: str, batch_id: int | None) -> ImportResult:
    return ImportResult(
        success=False,
        total_processed=total,
        success_count=0,
        error_count=total,
        errors=[RowError(row=0, message=message)],
        batch_id=batch_id,
    )


def iter_import(
    engine: Engine,
    import_type: str,
    rows: Sequence[ParsedRow],
    mappings: dict[str, str | None],
    file_name: str,
    *,
    settings: Settings = default_settings,
) -> Generator[ProgressEvent, None, ImportResult]:
    """
    Run one import, yielding progress events; the generator's return value
    is the ``ImportResult``.

    Row and batch failures are accumulated in the result. Only setup
    failures (audit record, existing keys) end the run early, with every
    row counted as an error.
    """
    kind = normalize_import_type(import_type)
    run = _Run(total=len(rows))
    yield run.progress("cache", 0)

    try:
        batch_id = _create_batch(engine, kind, file_name, len(rows))
    except SQLAlchemyError as exc:
        logger.exception("Could not create import batch for %s", file_name)
        return _fatal_result(len(rows), f"Could not create import batch: {exc}", None)
    logger.info("Import %d started: %s file %s with %d row(s)", batch_id, kind, file_name, len(rows))

    runner = _run_sales if kind == "sales" else _run_operator
    try:
        yield from runner(engine, run, rows, mappings, batch_id, settings)
    except _FatalImportError as exc:
        logger.exception("Import %d aborted", batch_id)
        try:
            _finish_batch(engine, batch_id, 0, len(rows))
        except SQLAlchemyError:
            logger.exception("Could not record failure on import batch %d", batch_id)
        return _fatal_result(len(rows), str(exc), batch_id)

    try:
        _finish_batch(engine, batch_id, run.succeeded, run.failed)
    except SQLAlchemyError as exc:
        logger.exception("Could not record counts on import batch %d", batch_id)
        run.errors.append(RowError(row=0, message=f"Could not update import batch: {exc}"))

    logger.info(
        "Import %d finished: %d succeeded, %d failed of %d",
        batch_id,
        run.succeeded,
        run.failed,
        run.total,
    )
    yield run.progress("done", 100)
    return run.result(batch_id, settings.error_limit)


def execute_import(
    engine: Engine,
    import_type: str,
    rows: Sequence[ParsedRow],
    mappings: dict[str, str | None],
    file_name: str,
    *,
    settings: Settings = default_settings,
    on_progress: Callable[[ProgressEvent], None] | None = None,
    guard: ImportGuard | None = import_guard,
) -> ImportResult:
    """Run an import to completion and return its result."""

    def drain() -> ImportResult:
        runner = iter_import(engine, import_type, rows, mappings, file_name, settings=settings)
        while True:
            try:
                event = next(runner)
            except StopIteration as stop:
                return stop.value
            if on_progress is not None:
                on_progress(event)

    if guard is None:
        return drain()
    with guard.hold():
        return drain()


def list_import_batches(conn: Connection, limit: int = 50) -> list[dict[str, Any]]:
    rows = conn.execute(
        text(
            """
            SELECT id, tipo, arquivo_nome, total_registros, registros_sucesso, registros_erro, created_at
            FROM import_batches
            ORDER BY created_at DESC, id DESC
            LIMIT :limit
            """
        ),
        {"limit": limit},
    ).mappings().all()
    return [dict(r) for r in rows]
