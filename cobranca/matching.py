from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from sqlalchemy import text
from sqlalchemy.engine import Connection

from cobranca.config import Settings, settings as default_settings

SCIENTIFIC_RE = re.compile(r"^[\d.]+[eE][+-]?\d+$")


@dataclass(frozen=True)
class SalesRef:
    id: int
    os: str
    customer_id: int | None


def digits_only(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def normalize_contract_id(raw: Any) -> str:
    """Digits of a contract id, undoing spreadsheet scientific notation first."""
    if raw is None:
        return ""
    text_value = str(raw).strip()
    if SCIENTIFIC_RE.match(text_value):
        try:
            return str(Decimal(text_value).quantize(Decimal(1), rounding=ROUND_HALF_UP))
        except InvalidOperation:
            pass
    return digits_only(text_value)


@dataclass
class SalesLookup:
    """
    In-memory indexes over existing sales orders for contract matching.

    ``exact`` keeps the most recent record per ``os``. The suffix buckets hold
    one record per distinct ``os`` so a re-imported order does not make its
    own suffix look ambiguous.
    """

    short_length: int = 7
    long_length: int = 8
    exact: dict[str, SalesRef] = field(default_factory=dict)
    by_short_suffix: dict[str, list[SalesRef]] = field(default_factory=lambda: defaultdict(list))
    by_long_suffix: dict[str, list[SalesRef]] = field(default_factory=lambda: defaultdict(list))

    @classmethod
    def build(cls, records: Iterable[SalesRef], settings: Settings = default_settings) -> "SalesLookup":
        lookup = cls(short_length=settings.match_suffix_short, long_length=settings.match_suffix_long)
        for record in records:
            lookup.add(record)
        return lookup

    def add(self, record: SalesRef) -> None:
        if not record.os:
            return
        is_new = record.os not in self.exact
        self.exact[record.os] = record
        if not is_new:
            self._replace_in_buckets(record)
            return
        if len(record.os) >= self.short_length:
            self.by_short_suffix[record.os[-self.short_length:]].append(record)
        if len(record.os) >= self.long_length:
            self.by_long_suffix[record.os[-self.long_length:]].append(record)

    def _replace_in_buckets(self, record: SalesRef) -> None:
        for buckets, length in ((self.by_short_suffix, self.short_length), (self.by_long_suffix, self.long_length)):
            if len(record.os) < length:
                continue
            bucket = buckets[record.os[-length:]]
            for index, existing in enumerate(bucket):
                if existing.os == record.os:
                    bucket[index] = record

    def match(self, contract_id: str) -> SalesRef | None:
        """
        Resolve a normalized contract id to exactly one sales record.

        Exact key first; then the short suffix bucket when it holds a single
        candidate; when it holds several, the long suffix bucket must narrow
        them to one. Anything else is a miss, never a guess.
        """
        if not contract_id:
            return None

        found = self.exact.get(contract_id)
        if found is not None:
            return found

        if len(contract_id) < self.short_length:
            return None
        candidates = self.by_short_suffix.get(contract_id[-self.short_length:], [])
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1 and len(contract_id) >= self.long_length:
            narrowed = self.by_long_suffix.get(contract_id[-self.long_length:], [])
            if len(narrowed) == 1:
                return narrowed[0]
        return None


def load_sales_lookup(conn: Connection, settings: Settings = default_settings) -> SalesLookup:
    rows = conn.execute(
        text("SELECT id, os, customer_id FROM sales_base WHERE os IS NOT NULL ORDER BY id")
    ).mappings()
    return SalesLookup.build(
        (SalesRef(id=int(r["id"]), os=str(r["os"]), customer_id=r["customer_id"]) for r in rows),
        settings,
    )
