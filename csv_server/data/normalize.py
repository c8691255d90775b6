"""
Statement normalization — security/ISIN split, ISIN→ticker mapping,
account-type tagging, cash-statement sections and cash-flow filtering.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from csv_server.data.schemas import Column, ColumnType, Record, Schema, StatementKind

_SECURITY_RE = re.compile(r"(.*?)\s*/\s*ISIN\s+([A-Z]{2}[A-Z0-9]{9}[0-9])")

CASH_SECTION_PREFIX = "Cash Statement:"
CASH_HEADER_PREFIX = "Date,Activity"
# The cash portfolio's own section repeats flows already listed elsewhere
SKIPPED_CASH_PORTFOLIO = "Portfolio: Cash"


# ---------------------------------------------------------------------------
# Security / ISIN
# ---------------------------------------------------------------------------

def extract_security_and_isin(text: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split "Vanguard FTSE All-World / ISIN IE00BK5BQT80" into (name, isin)."""
    if text is None:
        return None, None
    m = _SECURITY_RE.search(text)
    if m:
        return m.group(1).strip(), m.group(2)
    return text.strip(), None


# ---------------------------------------------------------------------------
# Filenames
# ---------------------------------------------------------------------------

def extract_account_type(filename: str) -> str:
    """GIA / ISA / Unknown, from an export filename like "ISA_Trading_statement_....csv"."""
    upper = Path(filename).name.upper()
    if upper.startswith("GIA_") or "_GIA_" in upper:
        return "GIA"
    if upper.startswith("ISA_") or "_ISA_" in upper:
        return "ISA"
    if "GIA" in upper:
        return "GIA"
    if "ISA" in upper:
        return "ISA"
    return "Unknown"


def detect_statement_kind(filename: str) -> StatementKind:
    """Cash exports are named "..._Cash_statement_..."; anything else is a trading export."""
    if "_CASH_" in Path(filename).name.upper():
        return StatementKind.CASH
    return StatementKind.TRADING


# ---------------------------------------------------------------------------
# Cash statements
# ---------------------------------------------------------------------------

def isolate_cash_sections(text: str) -> str:
    """Reduce a sectioned cash statement to one header plus data lines.

    Section titles, repeated headers and the cash portfolio's section are
    blanked rather than removed so parser row numbers still match the file.
    """
    out = []
    header_written = False
    in_header = True
    skipping = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith(CASH_SECTION_PREFIX):
            skipping = SKIPPED_CASH_PORTFOLIO in stripped
            in_header = True
            out.append("")
        elif skipping or not stripped:
            out.append("")
        elif in_header:
            if stripped.startswith(CASH_HEADER_PREFIX):
                in_header = False
                out.append("" if header_written else line)
                header_written = True
            else:
                out.append("")
        else:
            out.append(line)
    return "\n".join(out) + "\n"


def keep_activities(
    schema: Schema, records: Iterable[Record], column: str, needles: Sequence[str],
) -> list[Record]:
    """Records whose ``column`` contains any of ``needles`` (case-insensitive)."""
    idx = schema.index_of(column)
    wanted = [n.upper() for n in needles]
    return [
        rec for rec in records
        if rec.values[idx] is not None and any(n in rec.values[idx].upper() for n in wanted)
    ]


# ---------------------------------------------------------------------------
# Derived columns
# ---------------------------------------------------------------------------

def derive_columns(
    schema: Schema,
    records: Iterable[Record],
    security_column: Optional[str] = None,
    source_name: Optional[str] = None,
    tickers: Optional[Mapping[str, str]] = None,
    net_flow: Optional[tuple[str, str]] = None,
) -> tuple[Schema, list[Record]]:
    """Append derived columns to every record.

    security_column: split into ``security`` + ``isin`` columns.
    tickers: ISIN → ticker map, adds a ``ticker`` column (None when unmapped).
    source_name: tag each record with an ``account_type`` column.
    net_flow: (credit, debit) columns, adds ``net_flow`` = credit - debit.
    """
    extra: list[Column] = []
    sec_idx = None
    if security_column:
        sec_idx = schema.index_of(security_column)
        extra += [Column("security", ColumnType.STRING), Column("isin", ColumnType.STRING)]
        if tickers:
            extra.append(Column("ticker", ColumnType.STRING))
    account_type = None
    if source_name is not None:
        account_type = extract_account_type(source_name)
        extra.append(Column("account_type", ColumnType.STRING))
    flow_idx = None
    if net_flow:
        flow_idx = (schema.index_of(net_flow[0]), schema.index_of(net_flow[1]))
        extra.append(Column("net_flow", ColumnType.FLOAT))

    if not extra:
        return schema, list(records)

    derived = []
    for rec in records:
        added: tuple = ()
        if sec_idx is not None:
            security, isin = extract_security_and_isin(rec.values[sec_idx])
            added += (security, isin)
            if tickers:
                added += (tickers.get(isin) if isin else None,)
        if account_type is not None:
            added += (account_type,)
        if flow_idx is not None:
            credit, debit = (rec.values[i] for i in flow_idx)
            added += (float(credit or 0) - float(debit or 0),)
        derived.append(Record(rec.row, rec.values + added))
    return schema.extend(*extra), derived


def sort_records(schema: Schema, records: Iterable[Record], column: str) -> list[Record]:
    """Stable ascending sort on one column; nulls last."""
    idx = schema.index_of(column)
    return sorted(records, key=lambda r: (r.values[idx] is None, r.values[idx] if r.values[idx] is not None else 0))
