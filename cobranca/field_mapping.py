from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException

VALID_IMPORT_TYPES = {"sales", "operator"}
MIN_CONTAINMENT_LENGTH = 3


@dataclass(frozen=True)
class TargetField:
    name: str
    label: str
    required: bool = False


SALES_FIELDS: tuple[TargetField, ...] = (
    TargetField("os", "OS (Ordem de Serviço)", True),
    TargetField("cpf_cnpj", "CPF/CNPJ", True),
    TargetField("nome", "Nome", True),
    TargetField("email", "E-mail"),
    TargetField("telefone", "Telefone"),
    TargetField("telefone2", "Telefone 2"),
    TargetField("endereco", "Endereço"),
    TargetField("cidade", "Cidade"),
    TargetField("uf", "UF"),
    TargetField("cep", "CEP"),
    TargetField("produto", "Produto"),
    TargetField("plano", "Plano"),
    TargetField("valor_plano", "Valor do Plano"),
    TargetField("data_venda", "Data da Venda"),
    TargetField("vendedor", "Vendedor"),
    TargetField("mes_safra", "Mês Safra"),
    TargetField("data_vencimento", "Data de Vencimento"),
    TargetField("valor", "Valor"),
)

OPERATOR_FIELDS: tuple[TargetField, ...] = (
    TargetField("id_contrato", "ID Contrato (CONTRATO)", True),
    TargetField("numero_fatura", "Número da Fatura", True),
    TargetField("status_contrato", "Status do Contrato"),
    TargetField("data_cadastro", "Data de Cadastro"),
    TargetField("mes_safra_cadastro", "Mês Safra Cadastro"),
    TargetField("mes_safra_vencimento", "Mês Safra Vencimento"),
    TargetField("data_vencimento", "Data de Vencimento"),
    TargetField("data_pagamento", "Data de Pagamento"),
    TargetField("valor_fatura", "Valor da Fatura"),
)

# Aliases are tried in order, so put the specific ones first.
FIELD_SYNONYMS: dict[str, list[str]] = {
    "os": ["os", "ordemservico", "ordemdeservico", "numeroos", "ordem", "order", "pedido"],
    "cpf_cnpj": ["cpfcnpj", "cpf", "cnpj", "documento", "doc"],
    "nome": ["nome", "nomecliente", "nomedocliente", "cliente", "name", "customer", "razaosocial"],
    "email": ["email", "mail"],
    "telefone": ["telefone", "telefone1", "celular", "phone", "fone", "tel"],
    "telefone2": ["telefone2", "celular2", "fone2", "tel2", "phone2"],
    "endereco": ["endereco", "logradouro", "rua", "address"],
    "cidade": ["cidade", "municipio", "city"],
    "uf": ["uf", "estado", "state"],
    "cep": ["cep", "zip", "codigopostal"],
    "produto": ["produto", "product", "servico"],
    "plano": ["plano", "plan", "oferta"],
    "valor_plano": ["valorplano", "valordoplano", "precoplano", "mensalidade"],
    "data_venda": ["datavenda", "dtvenda", "datadavenda", "venda"],
    "vendedor": ["vendedor", "consultor", "seller", "vendedora"],
    "mes_safra": ["messafra", "safra"],
    "data_vencimento": ["datavencimento", "dtvencimento", "vencimento", "vcto", "duedate"],
    "valor": ["valor", "vlr", "montante", "amount"],
    "id_contrato": ["contrato", "idcontrato", "numerocontrato", "contract", "id"],
    "numero_fatura": ["numerofatura", "nfatura", "nofatura", "fatura", "parcela", "invoice"],
    "status_contrato": ["statuscontrato", "status", "situacao"],
    "data_cadastro": ["datacadastro", "dtcadastro", "cadastro", "dataativacao"],
    "mes_safra_cadastro": ["messafracadastro", "safracadastro", "safra"],
    "mes_safra_vencimento": ["messafravencimento", "safravencimento"],
    "data_pagamento": ["datapagamento", "dtpagamento", "pagamento", "datapgto", "pgto"],
    "valor_fatura": ["valorfatura", "valor", "vlr", "vlrfatura", "montante", "amount"],
}


@dataclass
class MappingProposal:
    assignments: dict[str, str | None]
    is_valid: bool
    missing_required: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "assignments": self.assignments,
            "is_valid": self.is_valid,
            "missing_required": self.missing_required,
        }


def normalize_name(value: str) -> str:
    folded = unicodedata.normalize("NFKD", value or "")
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return re.sub(r"[^0-9a-z]", "", folded.lower())


def normalize_import_type(import_type: str) -> str:
    value = (import_type or "").strip().lower()
    if value not in VALID_IMPORT_TYPES:
        allowed = ", ".join(sorted(VALID_IMPORT_TYPES))
        raise HTTPException(status_code=400, detail=f"Invalid import type '{import_type}'. Allowed: {allowed}.")
    return value


def fields_for(import_type: str) -> tuple[TargetField, ...]:
    return SALES_FIELDS if normalize_import_type(import_type) == "sales" else OPERATOR_FIELDS


def _contains_either_way(a: str, b: str) -> bool:
    return a in b or b in a


def _exact(target: TargetField, candidates: list[tuple[str, str]]) -> str | None:
    target_key = normalize_name(target.name)
    for header, key in candidates:
        if key == target_key:
            return header
    return None


def _synonym(target: TargetField, candidates: list[tuple[str, str]]) -> str | None:
    for alias in FIELD_SYNONYMS.get(target.name, []):
        for header, key in candidates:
            if key == alias:
                return header
    return None


def _synonym_contains(target: TargetField, candidates: list[tuple[str, str]]) -> str | None:
    for alias in FIELD_SYNONYMS.get(target.name, []):
        for header, key in candidates:
            if _contains_either_way(alias, key):
                return header
    return None


def _substring(target: TargetField, candidates: list[tuple[str, str]]) -> str | None:
    target_key = normalize_name(target.name)
    for header, key in candidates:
        # Field-name fallback only; one or two letters are too weak a signal.
        if min(len(target_key), len(key)) < MIN_CONTAINMENT_LENGTH:
            continue
        if _contains_either_way(target_key, key):
            return header
    return None


MATCH_TIERS = (_exact, _synonym, _synonym_contains, _substring)


def propose_mapping(import_type: str, headers: list[str]) -> MappingProposal:
    """
    Suggest a source column for each target field of ``import_type``.

    Per field the first hit wins: exact normalized name, then a synonym
    equal to the header, then a synonym contained in it (or the reverse),
    then substring containment of the field name. Each tier runs over every
    field before the next one starts, and a column proposed for one field
    is not offered to another, so an exact "Valor" header is never claimed
    by ``valor_plano`` through a looser rule.
    """
    targets = fields_for(import_type)
    assignments: dict[str, str | None] = {t.name: None for t in targets}
    used: set[str] = set()

    for tier in MATCH_TIERS:
        for target in targets:
            if assignments[target.name] is not None:
                continue
            candidates = [(h, normalize_name(h)) for h in headers if h not in used and normalize_name(h)]
            header = tier(target, candidates)
            if header is not None:
                assignments[target.name] = header
                used.add(header)

    return validate_mapping(import_type, assignments)


def validate_mapping(
    import_type: str,
    assignments: dict[str, str | None],
    headers: list[str] | None = None,
) -> MappingProposal:
    """Check a (possibly user-edited) mapping; unknown targets are dropped."""
    targets = fields_for(import_type)
    cleaned: dict[str, str | None] = {}
    for target in targets:
        source = assignments.get(target.name) or None
        if source is not None and headers is not None and source not in headers:
            source = None
        cleaned[target.name] = source

    missing = [t.name for t in targets if t.required and not cleaned[t.name]]
    return MappingProposal(assignments=cleaned, is_valid=not missing, missing_required=missing)
