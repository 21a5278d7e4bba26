from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from cobranca.database import Base


class ImportBatch(Base):
    __tablename__ = "import_batches"
    __table_args__ = (
        CheckConstraint("tipo IN ('sales','operator')", name="import_batch_tipo_chk"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tipo: Mapped[str] = mapped_column(String(16))
    arquivo_nome: Mapped[str] = mapped_column(Text)
    total_registros: Mapped[int] = mapped_column(Integer, default=0)
    registros_sucesso: Mapped[int | None] = mapped_column(Integer)
    registros_erro: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(primary_key=True)
    cpf_cnpj: Mapped[str] = mapped_column(String(14), unique=True)
    nome: Mapped[str] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    telefone: Mapped[str | None] = mapped_column(Text)
    telefone2: Mapped[str | None] = mapped_column(Text)
    endereco: Mapped[str | None] = mapped_column(Text)
    cidade: Mapped[str | None] = mapped_column(Text)
    uf: Mapped[str | None] = mapped_column(String(2))
    cep: Mapped[str | None] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class SalesRecord(Base):
    __tablename__ = "sales_base"

    id: Mapped[int] = mapped_column(primary_key=True)
    os: Mapped[str] = mapped_column(String(64), index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"))
    produto: Mapped[str | None] = mapped_column(Text)
    plano: Mapped[str | None] = mapped_column(Text)
    valor_plano: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    data_venda: Mapped[date | None] = mapped_column(Date)
    vendedor: Mapped[str | None] = mapped_column(Text)
    mes_safra: Mapped[str | None] = mapped_column(Text)
    data_vencimento: Mapped[date | None] = mapped_column(Date)
    valor: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    import_batch_id: Mapped[int | None] = mapped_column(ForeignKey("import_batches.id", ondelete="SET NULL"))
    raw_data: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class OperatorContract(Base):
    __tablename__ = "operator_contracts"
    __table_args__ = (
        UniqueConstraint("id_contrato", "numero_fatura", name="operator_contract_invoice_uq"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    id_contrato: Mapped[str] = mapped_column(String(64))
    numero_fatura: Mapped[str] = mapped_column(String(64))
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"))
    sales_base_id: Mapped[int | None] = mapped_column(ForeignKey("sales_base.id", ondelete="SET NULL"))
    status_contrato: Mapped[str | None] = mapped_column(Text)
    data_cadastro: Mapped[date | None] = mapped_column(Date)
    mes_safra_cadastro: Mapped[str | None] = mapped_column(Text)
    mes_safra_vencimento: Mapped[str | None] = mapped_column(Text)
    data_vencimento: Mapped[date | None] = mapped_column(Date)
    data_pagamento: Mapped[date | None] = mapped_column(Date)
    valor_fatura: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    import_batch_id: Mapped[int | None] = mapped_column(ForeignKey("import_batches.id", ondelete="SET NULL"))
    raw_data: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class CollectionAttempt(Base):
    __tablename__ = "collection_attempts"
    __table_args__ = (
        CheckConstraint(
            "channel IN ('telefone','whatsapp','email','sms','presencial')",
            name="collection_attempt_channel_chk",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"))
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("operator_contracts.id", ondelete="SET NULL"))
    collector_id: Mapped[str] = mapped_column(Text)
    channel: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class PaymentPromise(Base):
    __tablename__ = "payment_promises"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pendente','cumprida','quebrada','cancelada')",
            name="payment_promise_status_chk",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("operator_contracts.id", ondelete="CASCADE"))
    collector_id: Mapped[str] = mapped_column(Text)
    valor_prometido: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    data_prometida: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ReconciliationIssue(Base):
    __tablename__ = "reconciliation_issues"
    __table_args__ = (
        CheckConstraint(
            "tipo IN ('cliente_sem_contrato','contrato_sem_venda','valor_divergente','dados_incorretos')",
            name="reconciliation_issue_tipo_chk",
        ),
        CheckConstraint("status IN ('PENDENTE','RESOLVIDO')", name="reconciliation_issue_status_chk"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tipo: Mapped[str] = mapped_column(String(32))
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"))
    sales_base_id: Mapped[int | None] = mapped_column(ForeignKey("sales_base.id", ondelete="CASCADE"))
    operator_contract_id: Mapped[int | None] = mapped_column(ForeignKey("operator_contracts.id", ondelete="CASCADE"))
    descricao: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(Text)
