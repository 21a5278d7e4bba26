"""
Collection queue and the collector's history: attempts and payment promises.

The queue is recomputed on every request from the overdue operator
contracts; nothing about it is stored.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from fastapi import HTTPException
from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

ATTEMPT_CHANNELS = ("telefone", "whatsapp", "email", "sms", "presencial")
ATTEMPT_RESULTS = ("contato_efetivo", "sem_contato", "numero_invalido", "caixa_postal", "recado", "ocupado")
PROMISE_STATUSES = ("pendente", "cumprida", "quebrada", "cancelada")
HISTORY_LIMIT = 20


@dataclass
class QueueItem:
    customer_id: int
    customer_name: str
    customer_cpf_cnpj: str
    customer_phone: str | None
    customer_phone2: str | None
    customer_email: str | None
    total_pendente: Decimal
    faturas_atrasadas: int
    max_dias_atraso: int
    priority_score: int
    first_invoice_id: int
    ultima_tentativa: datetime | None = None
    ultima_promessa: date | None = None
    contacted_today: bool = False
    contacted_ever: bool = False
    has_promise: bool = False


@dataclass
class QueueStats:
    total_na_fila: int
    cobrados_hoje: int
    cobrados_total: int
    valor_total_pendente: Decimal


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _as_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def _choice(value: str, allowed: tuple[str, ...], field_name: str) -> str:
    cleaned = (value or "").strip().lower()
    if cleaned not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {field_name} '{value}'. Allowed: {', '.join(allowed)}.",
        )
    return cleaned


def _filter_value(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    if not cleaned or cleaned.lower() == "all":
        return None
    return cleaned


def build_queue(
    contracts: Iterable[Mapping[str, Any]],
    attempts: Iterable[Mapping[str, Any]],
    promises: Iterable[Mapping[str, Any]],
    today: date,
) -> tuple[list[QueueItem], QueueStats]:
    """
    Group overdue contracts into one queue item per customer.

    ``contracts`` must already be restricted to unpaid, overdue invoices and
    come in a stable order; the first contract seen for a customer becomes
    its ``first_invoice_id``. Items are ordered by days overdue, largest
    first, keeping first-seen order between ties.
    """
    items: dict[int, QueueItem] = {}
    for contract in contracts:
        due = _as_date(contract["data_vencimento"])
        days_overdue = (today - due).days if due is not None else 0
        amount = _as_decimal(contract["valor_fatura"])
        customer_id = int(contract["customer_id"])

        item = items.get(customer_id)
        if item is None:
            items[customer_id] = QueueItem(
                customer_id=customer_id,
                customer_name=contract["nome"],
                customer_cpf_cnpj=contract["cpf_cnpj"],
                customer_phone=contract.get("telefone"),
                customer_phone2=contract.get("telefone2"),
                customer_email=contract.get("email"),
                total_pendente=amount,
                faturas_atrasadas=1,
                max_dias_atraso=days_overdue,
                priority_score=days_overdue,
                first_invoice_id=int(contract["id"]),
            )
            continue
        item.total_pendente += amount
        item.faturas_atrasadas += 1
        item.max_dias_atraso = max(item.max_dias_atraso, days_overdue)
        item.priority_score = item.max_dias_atraso

    for attempt in attempts:
        item = items.get(int(attempt["customer_id"]))
        created_at = _as_datetime(attempt["created_at"])
        if item is None or created_at is None:
            continue
        item.contacted_ever = True
        if created_at.date() == today:
            item.contacted_today = True
        if item.ultima_tentativa is None or created_at > item.ultima_tentativa:
            item.ultima_tentativa = created_at

    for promise in promises:
        item = items.get(int(promise["customer_id"]))
        if item is None:
            continue
        if promise["status"] == "pendente":
            item.has_promise = True
        promised_for = _as_date(promise["data_prometida"])
        if promised_for is not None and (item.ultima_promessa is None or promised_for > item.ultima_promessa):
            item.ultima_promessa = promised_for

    queue = sorted(items.values(), key=lambda i: i.priority_score, reverse=True)
    stats = QueueStats(
        total_na_fila=len(queue),
        cobrados_hoje=sum(1 for i in queue if i.contacted_today),
        cobrados_total=sum(1 for i in queue if i.contacted_ever),
        valor_total_pendente=sum((i.total_pendente for i in queue), Decimal("0")),
    )
    return queue, stats


def fetch_queue(
    db: Session,
    safra: str | None = None,
    parcela: str | None = None,
    today: date | None = None,
) -> tuple[list[QueueItem], QueueStats]:
    today = today or date.today()
    safra = _filter_value(safra)
    parcela = _filter_value(parcela)

    sql = """
        SELECT oc.id, oc.customer_id, oc.valor_fatura, oc.data_vencimento,
               c.nome, c.cpf_cnpj, c.telefone, c.telefone2, c.email
        FROM operator_contracts oc
        JOIN customers c ON c.id = oc.customer_id
        WHERE oc.data_pagamento IS NULL
          AND oc.data_vencimento < :today
    """
    params: dict[str, Any] = {"today": today.isoformat()}
    if safra is not None:
        sql += " AND oc.mes_safra_cadastro = :safra"
        params["safra"] = safra
    if parcela is not None:
        sql += " AND oc.numero_fatura = :parcela"
        params["parcela"] = parcela
    sql += " ORDER BY oc.id"

    contracts = db.execute(text(sql), params).mappings().all()
    customer_ids = sorted({int(c["customer_id"]) for c in contracts})
    attempts: list[Mapping[str, Any]] = []
    promises: list[Mapping[str, Any]] = []
    if customer_ids:
        attempts = db.execute(
            text(
                "SELECT customer_id, created_at FROM collection_attempts WHERE customer_id IN :customer_ids"
            ).bindparams(bindparam("customer_ids", expanding=True)),
            {"customer_ids": customer_ids},
        ).mappings().all()
        promises = db.execute(
            text(
                """
                SELECT oc.customer_id, p.status, p.data_prometida
                FROM payment_promises p
                JOIN operator_contracts oc ON oc.id = p.invoice_id
                WHERE oc.customer_id IN :customer_ids
                """
            ).bindparams(bindparam("customer_ids", expanding=True)),
            {"customer_ids": customer_ids},
        ).mappings().all()

    return build_queue(contracts, attempts, promises, today)


def queue_payload(items: list[QueueItem], stats: QueueStats) -> dict[str, Any]:
    return {"items": [asdict(i) for i in items], "stats": asdict(stats)}


def filter_options(db: Session) -> dict[str, list[str]]:
    safras = db.execute(
        text("SELECT DISTINCT mes_safra_cadastro FROM operator_contracts WHERE mes_safra_cadastro IS NOT NULL")
    ).scalars().all()
    parcelas = db.execute(
        text("SELECT DISTINCT numero_fatura FROM operator_contracts WHERE numero_fatura IS NOT NULL")
    ).scalars().all()
    return {
        "safras": sorted((s for s in safras if s), reverse=True),
        "parcelas": sorted(p for p in parcelas if p),
    }


def _ensure_exists(db: Session, table: str, row_id: int, label: str) -> None:
    found = db.execute(text(f"SELECT id FROM {table} WHERE id = :id"), {"id": row_id}).first()
    if found is None:
        raise HTTPException(status_code=404, detail=f"{label} {row_id} not found")


def register_attempt(
    db: Session,
    *,
    customer_id: int,
    collector_id: str,
    channel: str,
    status: str,
    invoice_id: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> int:
    channel = _choice(channel, ATTEMPT_CHANNELS, "channel")
    status = _choice(status, ATTEMPT_RESULTS, "status")
    _ensure_exists(db, "customers", customer_id, "Customer")
    if invoice_id is not None:
        _ensure_exists(db, "operator_contracts", invoice_id, "Invoice")

    created_at = now or datetime.now()
    return db.execute(
        text(
            """
            INSERT INTO collection_attempts (customer_id, invoice_id, collector_id, channel, status, notes, created_at)
            VALUES (:customer_id, :invoice_id, :collector_id, :channel, :status, NULLIF(:notes, ''), :created_at)
            RETURNING id
            """
        ),
        {
            "customer_id": customer_id,
            "invoice_id": invoice_id,
            "collector_id": collector_id,
            "channel": channel,
            "status": status,
            "notes": (notes or "").strip(),
            "created_at": created_at.isoformat(sep=" "),
        },
    ).scalar_one()


def register_promise(
    db: Session,
    *,
    invoice_id: int,
    collector_id: str,
    valor_prometido: Decimal,
    data_prometida: date,
) -> int:
    if valor_prometido <= 0:
        raise HTTPException(status_code=400, detail="valor_prometido must be greater than zero")
    _ensure_exists(db, "operator_contracts", invoice_id, "Invoice")
    return db.execute(
        text(
            """
            INSERT INTO payment_promises (invoice_id, collector_id, valor_prometido, data_prometida, status, created_at)
            VALUES (:invoice_id, :collector_id, :valor_prometido, :data_prometida, 'pendente', NOW())
            RETURNING id
            """
        ),
        {
            "invoice_id": invoice_id,
            "collector_id": collector_id,
            "valor_prometido": float(valor_prometido),
            "data_prometida": data_prometida.isoformat(),
        },
    ).scalar_one()


def update_promise_status(db: Session, promise_id: int, status: str) -> str:
    status = _choice(status, PROMISE_STATUSES, "status")
    _ensure_exists(db, "payment_promises", promise_id, "Promise")
    db.execute(
        text("UPDATE payment_promises SET status = :status WHERE id = :promise_id"),
        {"status": status, "promise_id": promise_id},
    )
    return status


def list_attempts(db: Session, customer_id: int, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            """
            SELECT id, customer_id, invoice_id, collector_id, channel, status, notes, created_at
            FROM collection_attempts
            WHERE customer_id = :customer_id
            ORDER BY created_at DESC, id DESC
            LIMIT :limit
            """
        ),
        {"customer_id": customer_id, "limit": limit},
    ).mappings().all()
    return [dict(r) for r in rows]


def list_promises(db: Session, customer_id: int, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            """
            SELECT p.id, p.invoice_id, p.collector_id, p.valor_prometido, p.data_prometida, p.status, p.created_at
            FROM payment_promises p
            JOIN operator_contracts oc ON oc.id = p.invoice_id
            WHERE oc.customer_id = :customer_id
            ORDER BY p.data_prometida DESC, p.id DESC
            LIMIT :limit
            """
        ),
        {"customer_id": customer_id, "limit": limit},
    ).mappings().all()
    return [dict(r) for r in rows]
