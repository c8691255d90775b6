"""CSV parsing, schemas, normalization, and the versioned dataset store."""
from .schemas import Column, ColumnType, ParseOptions, ParseReport, Record, Schema, StatementKind
from .parser import parse_records, RecordStream
from .normalize import (
    extract_security_and_isin, extract_account_type, derive_columns,
    detect_statement_kind, isolate_cash_sections,
)
