import json
import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cobranca import models  # noqa: F401  (registers tables on Base.metadata)
from cobranca.bulk_import import (
    IMPORT_BUSY_MESSAGE,
    ImportInProgressError,
    execute_import,
    import_guard,
    iter_import,
    list_import_batches,
)
from cobranca.collection import (
    fetch_queue,
    filter_options,
    list_attempts,
    list_promises,
    queue_payload,
    register_attempt,
    register_promise,
    update_promise_status,
)
from cobranca.config import settings
from cobranca.data_management import clear_data, data_counts, normalize_clear_scope
from cobranca.database import Base, SessionLocal, engine
from cobranca.field_mapping import fields_for, normalize_import_type, propose_mapping, validate_mapping
from cobranca.reconciliation import link_issue, list_issues, resolve_issue, run_reconciliation
from cobranca.spreadsheet import ParseError, ParsedSheet, parse_spreadsheet

logging.basicConfig(level=settings.log_level)
app = FastAPI(title="Cobranca CRM")
logger = logging.getLogger(__name__)


@app.on_event("startup")
def create_tables():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_engine() -> Engine:
    return engine


def parse_optional_int(value: str | None, field_name: str) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(value.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}") from exc


def parse_required_date(value: str, field_name: str) -> date:
    if not value or not value.strip():
        raise HTTPException(status_code=400, detail=f"{field_name} is required")
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}. Use YYYY-MM-DD.") from exc


def parse_amount(value: str, field_name: str) -> Decimal:
    cleaned = (value or "").replace("R$", "").strip()
    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    try:
        return Decimal(cleaned)
    except InvalidOperation as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}") from exc


def read_sheet(content: bytes, filename: str, full: bool) -> ParsedSheet:
    try:
        return parse_spreadsheet(content, filename, full=full)
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def resolve_mappings(kind: str, mappings: str, headers: list[str]) -> dict[str, str | None]:
    if not mappings.strip():
        proposal = propose_mapping(kind, headers)
    else:
        try:
            raw = json.loads(mappings)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="mappings must be a JSON object") from exc
        if not isinstance(raw, dict):
            raise HTTPException(status_code=400, detail="mappings must be a JSON object")
        proposal = validate_mapping(kind, raw, headers)

    if not proposal.is_valid:
        missing = ", ".join(proposal.missing_required)
        raise HTTPException(status_code=400, detail=f"Required fields are not mapped: {missing}")
    return proposal.assignments


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.post("/import/preview")
async def import_preview(
    file: UploadFile = File(...),
    import_type: str = Form(...),
):
    kind = normalize_import_type(import_type)
    payload = await file.read()
    sheet = read_sheet(payload, file.filename or "upload.xlsx", full=False)
    proposal = propose_mapping(kind, sheet.headers)
    return {
        **sheet.as_dict(),
        "import_type": kind,
        "fields": [{"name": f.name, "label": f.label, "required": f.required} for f in fields_for(kind)],
        "mapping": proposal.as_dict(),
    }


@app.post("/import/commit")
def import_commit(
    file: UploadFile = File(...),
    import_type: str = Form(...),
    mappings: str = Form(""),
    bind: Engine = Depends(get_engine),
):
    kind = normalize_import_type(import_type)
    filename = file.filename or "upload.xlsx"
    sheet = read_sheet(file.file.read(), filename, full=True)
    assignments = resolve_mappings(kind, mappings, sheet.headers)

    try:
        result = execute_import(bind, kind, sheet.rows, assignments, filename)
    except ImportInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return result.as_dict()


@app.post("/import/commit/stream")
def import_commit_stream(
    file: UploadFile = File(...),
    import_type: str = Form(...),
    mappings: str = Form(""),
    bind: Engine = Depends(get_engine),
):
    kind = normalize_import_type(import_type)
    filename = file.filename or "upload.xlsx"
    sheet = read_sheet(file.file.read(), filename, full=True)
    assignments = resolve_mappings(kind, mappings, sheet.headers)

    if import_guard.busy:
        raise HTTPException(status_code=409, detail=IMPORT_BUSY_MESSAGE)

    # The guard is held only while the body streams.
    def lines():
        try:
            import_guard.acquire()
        except ImportInProgressError as exc:
            yield json.dumps({"type": "error", "detail": str(exc)}) + "\n"
            return
        try:
            runner = iter_import(bind, kind, sheet.rows, assignments, filename)
            while True:
                try:
                    event = next(runner)
                except StopIteration as stop:
                    yield json.dumps({"type": "result", **stop.value.as_dict()}) + "\n"
                    return
                yield json.dumps({"type": "progress", **event.as_dict()}) + "\n"
        finally:
            import_guard.release()

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@app.get("/api/import-batches")
def import_batches(limit: int = Query(50, ge=1, le=500), bind: Engine = Depends(get_engine)):
    with bind.connect() as conn:
        return {"items": list_import_batches(conn, limit)}


@app.get("/api/collection/queue")
def collection_queue(
    safra: str = Query("all"),
    parcela: str = Query("all"),
    db: Session = Depends(get_db),
):
    items, stats = fetch_queue(db, safra=safra, parcela=parcela)
    return queue_payload(items, stats)


@app.get("/api/collection/filters")
def collection_filters(db: Session = Depends(get_db)):
    return filter_options(db)


@app.get("/api/customers/{customer_id}/attempts")
def customer_attempts(customer_id: int, db: Session = Depends(get_db)):
    return {"items": list_attempts(db, customer_id)}


@app.get("/api/customers/{customer_id}/promises")
def customer_promises(customer_id: int, db: Session = Depends(get_db)):
    return {"items": list_promises(db, customer_id)}


@app.post("/api/collection/attempts")
def create_attempt(
    customer_id: int = Form(...),
    collector_id: str = Form(...),
    channel: str = Form(...),
    status: str = Form(...),
    invoice_id: str = Form(""),
    notes: str = Form(""),
    db: Session = Depends(get_db),
):
    try:
        attempt_id = register_attempt(
            db,
            customer_id=customer_id,
            collector_id=collector_id.strip(),
            channel=channel,
            status=status,
            invoice_id=parse_optional_int(invoice_id, "invoice_id"),
            notes=notes,
        )
        db.commit()
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not save attempt. Check field values.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while saving collection attempt")
        raise HTTPException(status_code=500, detail="Unexpected server error while saving attempt.") from exc
    return {"id": attempt_id}


@app.post("/api/collection/promises")
def create_promise(
    invoice_id: int = Form(...),
    collector_id: str = Form(...),
    valor_prometido: str = Form(...),
    data_prometida: str = Form(...),
    db: Session = Depends(get_db),
):
    amount = parse_amount(valor_prometido, "valor_prometido")
    promised_for = parse_required_date(data_prometida, "data_prometida")
    try:
        promise_id = register_promise(
            db,
            invoice_id=invoice_id,
            collector_id=collector_id.strip(),
            valor_prometido=amount,
            data_prometida=promised_for,
        )
        db.commit()
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not save promise. Check field values.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while saving payment promise")
        raise HTTPException(status_code=500, detail="Unexpected server error while saving promise.") from exc
    return {"id": promise_id}


@app.post("/api/collection/promises/{promise_id}/status")
def change_promise_status(promise_id: int, status: str = Form(...), db: Session = Depends(get_db)):
    try:
        new_status = update_promise_status(db, promise_id, status)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while updating promise status")
        raise HTTPException(status_code=500, detail="Unexpected server error while updating promise.") from exc
    return {"id": promise_id, "status": new_status}


@app.post("/api/reconciliation/run")
def reconciliation_run(db: Session = Depends(get_db)):
    try:
        counts = run_reconciliation(db)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error during reconciliation")
        raise HTTPException(status_code=500, detail="Unexpected server error during reconciliation.") from exc
    return counts


@app.get("/api/reconciliation/issues")
def reconciliation_issues(
    tipo: str = Query("all"),
    status: str = Query("all"),
    search: str = Query(""),
    db: Session = Depends(get_db),
):
    return list_issues(db, issue_type=tipo, status=status, search=search)


@app.post("/api/reconciliation/issues/{issue_id}/resolve")
def reconciliation_resolve(
    issue_id: int,
    notes: str = Form(""),
    resolved_by: str = Form(""),
    db: Session = Depends(get_db),
):
    try:
        resolve_issue(db, issue_id, notes, resolved_by)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while resolving issue")
        raise HTTPException(status_code=500, detail="Unexpected server error while resolving issue.") from exc
    return {"id": issue_id, "status": "RESOLVIDO"}


@app.post("/api/reconciliation/issues/{issue_id}/link")
def reconciliation_link(
    issue_id: int,
    sales_base_id: int = Form(...),
    operator_contract_id: int = Form(...),
    resolved_by: str = Form(""),
    db: Session = Depends(get_db),
):
    try:
        note = link_issue(db, issue_id, sales_base_id, operator_contract_id, resolved_by)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while linking contract")
        raise HTTPException(status_code=500, detail="Unexpected server error while linking contract.") from exc
    return {"id": issue_id, "status": "RESOLVIDO", "descricao": note}


@app.get("/api/data/counts")
def data_management_counts(db: Session = Depends(get_db)):
    return data_counts(db)


@app.post("/api/data/clear/{scope}")
def data_management_clear(scope: str, db: Session = Depends(get_db)):
    key = normalize_clear_scope(scope)
    try:
        with import_guard.hold():
            affected = clear_data(db, key)
            db.commit()
    except ImportInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not clear data. Check related data.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while clearing %s data", key)
        raise HTTPException(status_code=500, detail="Unexpected server error while clearing data.") from exc
    return {"scope": key, "deleted": affected, "counts": data_counts(db)}
