from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

COUNTED_TABLES = (
    "customers",
    "sales_base",
    "operator_contracts",
    "collection_attempts",
    "payment_promises",
    "reconciliation_issues",
    "import_batches",
)

_SALES_CONTRACTS = "SELECT id FROM operator_contracts WHERE sales_base_id IS NOT NULL"

# Each scope deletes dependents before the rows they reference, so the result
# is the same whether or not the engine enforces foreign keys.
CLEAR_STEPS: dict[str, tuple[tuple[str, str], ...]] = {
    "sales": (
        (
            "reconciliation_issues",
            "DELETE FROM reconciliation_issues"
            f" WHERE sales_base_id IS NOT NULL OR operator_contract_id IN ({_SALES_CONTRACTS})",
        ),
        ("payment_promises", f"DELETE FROM payment_promises WHERE invoice_id IN ({_SALES_CONTRACTS})"),
        ("collection_attempts", f"UPDATE collection_attempts SET invoice_id = NULL WHERE invoice_id IN ({_SALES_CONTRACTS})"),
        ("operator_contracts", "DELETE FROM operator_contracts WHERE sales_base_id IS NOT NULL"),
        ("sales_base", "DELETE FROM sales_base"),
        ("import_batches", "DELETE FROM import_batches WHERE tipo = 'sales'"),
    ),
    "operator": (
        ("collection_attempts", "DELETE FROM collection_attempts"),
        ("payment_promises", "DELETE FROM payment_promises"),
        ("reconciliation_issues", "DELETE FROM reconciliation_issues WHERE operator_contract_id IS NOT NULL"),
        ("operator_contracts", "DELETE FROM operator_contracts"),
        ("import_batches", "DELETE FROM import_batches WHERE tipo = 'operator'"),
    ),
    "collection": (
        ("collection_attempts", "DELETE FROM collection_attempts"),
        ("payment_promises", "DELETE FROM payment_promises"),
    ),
    "all": (
        ("collection_attempts", "DELETE FROM collection_attempts"),
        ("payment_promises", "DELETE FROM payment_promises"),
        ("reconciliation_issues", "DELETE FROM reconciliation_issues"),
        ("operator_contracts", "DELETE FROM operator_contracts"),
        ("sales_base", "DELETE FROM sales_base"),
        ("import_batches", "DELETE FROM import_batches"),
        ("customers", "DELETE FROM customers"),
    ),
}


def normalize_clear_scope(scope: str) -> str:
    value = (scope or "").strip().lower()
    if value not in CLEAR_STEPS:
        allowed = ", ".join(CLEAR_STEPS)
        raise HTTPException(status_code=400, detail=f"Invalid data scope '{scope}'. Allowed: {allowed}.")
    return value


def data_counts(db: Session) -> dict[str, int]:
    return {table: db.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one() for table in COUNTED_TABLES}


def clear_data(db: Session, scope: str) -> dict[str, int]:
    """
    Remove the rows of one data scope and return the affected count per table.

    ``sales`` drops the sales base with the contracts and issues tied to it,
    ``operator`` drops the operator base with the whole collection history,
    ``collection`` drops attempts and promises only, and ``all`` empties every
    table. Import batch rows of the cleared type go with their data. The
    caller owns the transaction.
    """
    key = normalize_clear_scope(scope)
    steps = CLEAR_STEPS[key]
    affected: dict[str, int] = {}
    for table, statement in steps:
        result = db.execute(text(statement))
        affected[table] = affected.get(table, 0) + max(result.rowcount or 0, 0)
    logger.info("Cleared %s data: %s", key, affected)
    return affected
