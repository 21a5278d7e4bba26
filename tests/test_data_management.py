import pytest
from fastapi import HTTPException
from sqlalchemy import text

from cobranca.bulk_import import import_guard
from cobranca.data_management import clear_data, data_counts


def seed_everything(engine):
    statements = [
        """
        INSERT INTO customers (id, cpf_cnpj, nome, created_at)
        VALUES (1, '12345678900', 'Ana Lima', NOW()), (2, '98765432100', 'Bruno Reis', NOW())
        """,
        """
        INSERT INTO import_batches (id, tipo, arquivo_nome, total_registros, created_at)
        VALUES (1, 'sales', 'vendas.xlsx', 2, NOW()), (2, 'operator', 'operadora.xlsx', 2, NOW())
        """,
        """
        INSERT INTO sales_base (id, os, customer_id, import_batch_id, created_at)
        VALUES (1, '1001', 1, 1, NOW()), (2, '2002', 2, 1, NOW())
        """,
        """
        INSERT INTO operator_contracts (
          id, id_contrato, numero_fatura, customer_id, sales_base_id, import_batch_id, created_at
        )
        VALUES (1, '1001', '1', 1, 1, 2, NOW()), (2, '7777777', '1', NULL, NULL, 2, NOW())
        """,
        """
        INSERT INTO collection_attempts (id, customer_id, invoice_id, collector_id, channel, status, created_at)
        VALUES (1, 1, 1, 'op1', 'telefone', 'sem_contato', NOW())
        """,
        """
        INSERT INTO payment_promises (id, invoice_id, collector_id, valor_prometido, data_prometida, status, created_at)
        VALUES (1, 1, 'op1', 100, '2026-11-01', 'pendente', NOW()),
               (2, 2, 'op1', 50, '2026-11-05', 'pendente', NOW())
        """,
        """
        INSERT INTO reconciliation_issues (id, tipo, sales_base_id, operator_contract_id, status, created_at)
        VALUES (1, 'cliente_sem_contrato', 2, NULL, 'PENDENTE', NOW()),
               (2, 'contrato_sem_venda', NULL, 2, 'PENDENTE', NOW())
        """,
    ]
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))


def test_data_counts_cover_every_table(engine, db_session):
    seed_everything(engine)

    assert data_counts(db_session) == {
        "customers": 2,
        "sales_base": 2,
        "operator_contracts": 2,
        "collection_attempts": 1,
        "payment_promises": 2,
        "reconciliation_issues": 2,
        "import_batches": 2,
    }


def test_clear_sales_keeps_customers_and_unlinked_operator_rows(engine, db_session):
    seed_everything(engine)

    affected = clear_data(db_session, "sales")
    db_session.commit()

    assert affected["sales_base"] == 2
    assert affected["operator_contracts"] == 1
    assert data_counts(db_session) == {
        "customers": 2,
        "sales_base": 0,
        "operator_contracts": 1,
        "collection_attempts": 1,
        "payment_promises": 1,
        "reconciliation_issues": 1,
        "import_batches": 1,
    }
    attempt_invoice = db_session.execute(text("SELECT invoice_id FROM collection_attempts")).scalar_one()
    batch_type = db_session.execute(text("SELECT tipo FROM import_batches")).scalar_one()
    assert attempt_invoice is None
    assert batch_type == "operator"


def test_clear_operator_drops_collection_history(engine, db_session):
    seed_everything(engine)

    clear_data(db_session, "operator")
    db_session.commit()

    counts = data_counts(db_session)
    assert counts["operator_contracts"] == 0
    assert counts["collection_attempts"] == 0
    assert counts["payment_promises"] == 0
    assert counts["reconciliation_issues"] == 1
    assert counts["sales_base"] == 2
    assert db_session.execute(text("SELECT tipo FROM import_batches")).scalar_one() == "sales"


def test_clear_collection_only_touches_attempts_and_promises(engine, db_session):
    seed_everything(engine)

    clear_data(db_session, "collection")
    db_session.commit()

    counts = data_counts(db_session)
    assert counts["collection_attempts"] == 0
    assert counts["payment_promises"] == 0
    assert counts["operator_contracts"] == 2
    assert counts["import_batches"] == 2


def test_clear_all_empties_every_table(engine, db_session):
    seed_everything(engine)

    clear_data(db_session, " ALL ")
    db_session.commit()

    assert set(data_counts(db_session).values()) == {0}


def test_unknown_scope_is_rejected(db_session):
    with pytest.raises(HTTPException) as exc:
        clear_data(db_session, "invoices")

    assert exc.value.status_code == 400
    assert "collection" in exc.value.detail


def test_data_endpoints(client, engine):
    seed_everything(engine)

    counts = client.get("/api/data/counts")
    cleared = client.post("/api/data/clear/collection")
    bad_scope = client.post("/api/data/clear/invoices")
    with import_guard.hold():
        busy = client.post("/api/data/clear/all")

    assert counts.json()["customers"] == 2
    assert cleared.status_code == 200
    assert cleared.json()["scope"] == "collection"
    assert cleared.json()["counts"]["payment_promises"] == 0
    assert bad_scope.status_code == 400
    assert busy.status_code == 409
    assert client.get("/api/data/counts").json()["customers"] == 2
