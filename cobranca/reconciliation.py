from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ISSUE_TYPES = ("cliente_sem_contrato", "contrato_sem_venda", "valor_divergente", "dados_incorretos")
ISSUE_STATUSES = ("PENDENTE", "RESOLVIDO")


def _normalize_issue_type(value: str | None) -> str | None:
    cleaned = (value or "").strip().lower()
    if not cleaned or cleaned == "all":
        return None
    if cleaned not in ISSUE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid issue type '{value}'. Allowed: all, {', '.join(ISSUE_TYPES)}.",
        )
    return cleaned


def _normalize_issue_status(value: str | None) -> str | None:
    cleaned = (value or "").strip().upper()
    if not cleaned or cleaned == "ALL":
        return None
    if cleaned not in ISSUE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid issue status '{value}'. Allowed: all, {', '.join(ISSUE_STATUSES)}.",
        )
    return cleaned


def run_reconciliation(db: Session) -> dict[str, int]:
    """
    Record pending issues for contracts without a customer and for sales
    whose customer has no operator contract at all.

    A record that already has a pending issue of the same type is skipped,
    so the run can be repeated safely.
    """
    orphan_contracts = db.execute(
        text("SELECT id, id_contrato FROM operator_contracts WHERE customer_id IS NULL ORDER BY id")
    ).mappings().all()
    sales_without_contract = db.execute(
        text(
            """
            SELECT s.id, s.os, s.customer_id
            FROM sales_base s
            WHERE s.customer_id IS NOT NULL
              AND NOT EXISTS (SELECT 1 FROM operator_contracts oc WHERE oc.customer_id = s.customer_id)
            ORDER BY s.id
            """
        )
    ).mappings().all()

    pending = db.execute(
        text("SELECT tipo, sales_base_id, operator_contract_id FROM reconciliation_issues WHERE status = 'PENDENTE'")
    ).mappings().all()
    open_keys = {(r["tipo"], r["sales_base_id"], r["operator_contract_id"]) for r in pending}

    found: list[dict[str, Any]] = []
    for contract in orphan_contracts:
        found.append(
            {
                "tipo": "contrato_sem_venda",
                "customer_id": None,
                "sales_base_id": None,
                "operator_contract_id": contract["id"],
                "descricao": f"Contrato {contract['id_contrato']} sem cliente vinculado",
            }
        )
    for sale in sales_without_contract:
        found.append(
            {
                "tipo": "cliente_sem_contrato",
                "customer_id": sale["customer_id"],
                "sales_base_id": sale["id"],
                "operator_contract_id": None,
                "descricao": f"OS {sale['os']} sem contrato na operadora",
            }
        )

    counts = {"created": 0, "skipped": 0, "contrato_sem_venda": 0, "cliente_sem_contrato": 0}
    for issue in found:
        key = (issue["tipo"], issue["sales_base_id"], issue["operator_contract_id"])
        if key in open_keys:
            counts["skipped"] += 1
            continue
        db.execute(
            text(
                """
                INSERT INTO reconciliation_issues (
                  tipo, customer_id, sales_base_id, operator_contract_id, descricao, status, created_at
                )
                VALUES (:tipo, :customer_id, :sales_base_id, :operator_contract_id, :descricao, 'PENDENTE', NOW())
                """
            ),
            issue,
        )
        open_keys.add(key)
        counts["created"] += 1
        counts[issue["tipo"]] += 1

    logger.info("Reconciliation created %d issue(s), skipped %d already open", counts["created"], counts["skipped"])
    return counts


def list_issues(
    db: Session,
    issue_type: str | None = None,
    status: str | None = None,
    search: str | None = None,
) -> dict[str, Any]:
    tipo = _normalize_issue_type(issue_type)
    status_value = _normalize_issue_status(status)

    rows = db.execute(
        text(
            """
            SELECT ri.id, ri.tipo, ri.status, ri.descricao, ri.created_at, ri.resolved_at, ri.resolved_by,
                   ri.customer_id, ri.sales_base_id, ri.operator_contract_id,
                   s.os, oc.id_contrato, oc.numero_fatura,
                   c.nome AS customer_name, c.cpf_cnpj AS customer_cpf_cnpj
            FROM reconciliation_issues ri
            LEFT JOIN sales_base s ON s.id = ri.sales_base_id
            LEFT JOIN operator_contracts oc ON oc.id = ri.operator_contract_id
            LEFT JOIN customers c ON c.id = COALESCE(ri.customer_id, s.customer_id, oc.customer_id)
            ORDER BY ri.created_at DESC, ri.id DESC
            """
        )
    ).mappings().all()
    issues = [dict(r) for r in rows]

    by_type = {t: 0 for t in ISSUE_TYPES}
    for issue in issues:
        if issue["tipo"] in by_type:
            by_type[issue["tipo"]] += 1
    stats = {
        "total": len(issues),
        "pendentes": sum(1 for i in issues if i["status"] == "PENDENTE"),
        "resolvidos": sum(1 for i in issues if i["status"] == "RESOLVIDO"),
        "by_type": by_type,
    }

    if tipo is not None:
        issues = [i for i in issues if i["tipo"] == tipo]
    if status_value is not None:
        issues = [i for i in issues if i["status"] == status_value]
    needle = (search or "").strip()
    if needle:
        lowered = needle.lower()
        issues = [
            i
            for i in issues
            if lowered in (i["os"] or "").lower()
            or lowered in (i["id_contrato"] or "").lower()
            or lowered in (i["customer_name"] or "").lower()
            or needle in (i["customer_cpf_cnpj"] or "")
        ]
    return {"items": issues, "stats": stats}


def _ensure_issue_exists(db: Session, issue_id: int) -> None:
    found = db.execute(text("SELECT id FROM reconciliation_issues WHERE id = :id"), {"id": issue_id}).first()
    if found is None:
        raise HTTPException(status_code=404, detail=f"Issue {issue_id} not found")


def link_issue(
    db: Session,
    issue_id: int,
    sales_base_id: int,
    operator_contract_id: int,
    resolved_by: str | None,
) -> str:
    """
    Tie an operator contract to a sales record by hand and resolve the issue.

    The contract takes the sale's customer when the sale has one. Returns the
    note recorded on the issue.
    """
    _ensure_issue_exists(db, issue_id)
    sale = db.execute(
        text("SELECT id, os, customer_id FROM sales_base WHERE id = :id"), {"id": sales_base_id}
    ).mappings().first()
    if sale is None:
        raise HTTPException(status_code=404, detail=f"Sales record {sales_base_id} not found")
    contract = db.execute(
        text("SELECT id, id_contrato FROM operator_contracts WHERE id = :id"), {"id": operator_contract_id}
    ).mappings().first()
    if contract is None:
        raise HTTPException(status_code=404, detail=f"Contract {operator_contract_id} not found")

    if sale["customer_id"] is not None:
        db.execute(
            text(
                """
                UPDATE operator_contracts
                SET customer_id = :customer_id, sales_base_id = :sales_base_id, updated_at = NOW()
                WHERE id = :contract_id
                """
            ),
            {"customer_id": sale["customer_id"], "sales_base_id": sale["id"], "contract_id": contract["id"]},
        )
    note = f"Link manual: OS {sale['os']} ↔ Contrato {contract['id_contrato']}"
    resolve_issue(db, issue_id, note, resolved_by)
    logger.info("Issue %d resolved by linking OS %s to contract %s", issue_id, sale["os"], contract["id_contrato"])
    return note


def resolve_issue(db: Session, issue_id: int, notes: str | None, resolved_by: str | None) -> None:
    _ensure_issue_exists(db, issue_id)
    db.execute(
        text(
            """
            UPDATE reconciliation_issues
            SET status = 'RESOLVIDO',
                resolved_at = NOW(),
                resolved_by = NULLIF(:resolved_by, ''),
                descricao = COALESCE(NULLIF(:notes, ''), descricao)
            WHERE id = :issue_id
            """
        ),
        {"issue_id": issue_id, "notes": (notes or "").strip(), "resolved_by": (resolved_by or "").strip()},
    )
