import pytest
from fastapi import HTTPException

from cobranca.field_mapping import normalize_import_type, normalize_name, propose_mapping, validate_mapping


def test_normalize_name_folds_accents_and_punctuation():
    assert normalize_name("Mês Safra") == "messafra"
    assert normalize_name("CPF/CNPJ") == "cpfcnpj"
    assert normalize_name("  Endereço  ") == "endereco"


def test_sales_mapping_prefers_exact_and_keeps_valor_for_valor():
    headers = ["OS", "CPF", "Nome do Cliente", "Valor do Plano", "Valor", "Cidade"]

    proposal = propose_mapping("sales", headers)

    assert proposal.is_valid
    assert proposal.missing_required == []
    assert proposal.assignments["os"] == "OS"
    assert proposal.assignments["cpf_cnpj"] == "CPF"
    assert proposal.assignments["nome"] == "Nome do Cliente"
    assert proposal.assignments["valor_plano"] == "Valor do Plano"
    assert proposal.assignments["valor"] == "Valor"
    assert proposal.assignments["cidade"] == "Cidade"
    assert proposal.assignments["plano"] is None


def test_operator_mapping_uses_synonyms():
    headers = ["CONTRATO", "Fatura", "Vencimento", "Data Pagamento", "Valor", "Safra"]

    proposal = propose_mapping("operator", headers)

    assert proposal.is_valid
    assert proposal.assignments["id_contrato"] == "CONTRATO"
    assert proposal.assignments["numero_fatura"] == "Fatura"
    assert proposal.assignments["data_vencimento"] == "Vencimento"
    assert proposal.assignments["data_pagamento"] == "Data Pagamento"
    assert proposal.assignments["valor_fatura"] == "Valor"
    assert proposal.assignments["mes_safra_cadastro"] == "Safra"


def test_header_is_proposed_for_one_field_only():
    proposal = propose_mapping("operator", ["Contrato", "Fatura"])

    chosen = [v for v in proposal.assignments.values() if v is not None]
    assert sorted(chosen) == ["Contrato", "Fatura"]


def test_two_letter_aliases_match_inside_longer_headers():
    proposal = propose_mapping("sales", ["Num OS", "CPF", "Nome", "UF Cliente"])

    assert proposal.is_valid
    assert proposal.assignments["os"] == "Num OS"
    assert proposal.assignments["uf"] == "UF Cliente"


def test_mapping_reports_missing_required_fields():
    proposal = propose_mapping("operator", ["Valor"])

    assert not proposal.is_valid
    assert proposal.missing_required == ["id_contrato", "numero_fatura"]


def test_validate_mapping_drops_unknown_headers_and_fields():
    proposal = validate_mapping(
        "operator",
        {"id_contrato": "CONTRATO", "numero_fatura": "Sumiu", "campo_extra": "X"},
        headers=["CONTRATO", "Fatura"],
    )

    assert proposal.assignments["id_contrato"] == "CONTRATO"
    assert proposal.assignments["numero_fatura"] is None
    assert "campo_extra" not in proposal.assignments
    assert proposal.missing_required == ["numero_fatura"]


def test_invalid_import_type_is_rejected():
    with pytest.raises(HTTPException) as exc:
        normalize_import_type("invoices")

    assert exc.value.status_code == 400
    assert "operator" in exc.value.detail
    assert normalize_import_type(" Sales ") == "sales"
