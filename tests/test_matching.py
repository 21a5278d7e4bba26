from sqlalchemy import text

from cobranca.config import Settings
from cobranca.matching import SalesLookup, SalesRef, load_sales_lookup, normalize_contract_id


def lookup_for(*orders):
    return SalesLookup.build(SalesRef(id=i, os=os_key, customer_id=100 + i) for i, os_key in enumerate(orders, start=1))


def test_exact_key_wins():
    lookup = lookup_for("1234567", "91234567")

    found = lookup.match("1234567")

    assert found is not None
    assert found.os == "1234567"


def test_unique_short_suffix_matches_longer_contract_id():
    lookup = lookup_for("1234567", "7654321")

    found = lookup.match("001234567")

    assert found is not None
    assert found.os == "1234567"


def test_long_suffix_disambiguates_shared_short_suffix():
    lookup = lookup_for("91234567", "81234567")

    found = lookup.match("0091234567")

    assert found is not None
    assert found.os == "91234567"


def test_ambiguous_suffix_without_long_match_is_a_miss():
    lookup = lookup_for("91234567", "81234567")

    assert lookup.match("0071234567") is None


def test_ambiguous_suffix_with_short_contract_id_is_a_miss():
    lookup = lookup_for("91234567", "81234567")

    assert lookup.match("1234567") is None


def test_orders_shorter_than_suffix_only_match_exactly():
    lookup = lookup_for("12345")

    assert lookup.match("12345").os == "12345"
    assert lookup.match("0012345") is None


def test_reimported_order_keeps_latest_record_and_single_bucket_entry():
    lookup = SalesLookup.build(
        [
            SalesRef(id=1, os="1234567", customer_id=10),
            SalesRef(id=2, os="1234567", customer_id=10),
        ]
    )

    assert lookup.match("1234567").id == 2
    assert lookup.match("001234567").id == 2
    assert len(lookup.by_short_suffix["1234567"]) == 1


def test_suffix_lengths_come_from_settings():
    custom = Settings()
    custom.match_suffix_short = 4
    custom.match_suffix_long = 5

    lookup = SalesLookup.build([SalesRef(id=1, os="98761234", customer_id=1)], custom)

    assert lookup.match("001234").id == 1


def test_normalize_contract_id_undoes_scientific_notation():
    assert normalize_contract_id("1.2345678901E+10") == "12345678901"
    assert normalize_contract_id("5.551234567e9") == "5551234567"
    assert normalize_contract_id(" 00123-45 ") == "0012345"
    assert normalize_contract_id(None) == ""
    assert normalize_contract_id("sem numero") == ""


def test_load_sales_lookup_reads_sales_base(engine):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO customers (id, cpf_cnpj, nome, created_at) VALUES (1, '12345678900', 'Ana', NOW())")
        )
        conn.execute(
            text(
                """
                INSERT INTO sales_base (id, os, customer_id, created_at)
                VALUES (1, '5551234567', 1, NOW()), (2, '5557654321', 1, NOW())
                """
            )
        )

    with engine.connect() as conn:
        lookup = load_sales_lookup(conn)

    found = lookup.match("1234567")
    assert found == SalesRef(id=1, os="5551234567", customer_id=1)
    assert lookup.match("5557654321").id == 2
