"""
Schema, record and parse-option types shared by the parser and the store.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from csv_server.errors import UnknownColumn

DEFAULT_DATE_FORMAT = "%Y-%m-%d"
MAX_ERROR_SAMPLES = 20


class ColumnType(str, Enum):
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    DATE = "date"

    @property
    def is_numeric(self) -> bool:
        return self in (ColumnType.INT, ColumnType.FLOAT)

    @property
    def is_ordered(self) -> bool:
        """Types that support range filters and min/max."""
        return self in (ColumnType.INT, ColumnType.FLOAT, ColumnType.DATE)


class StatementKind(str, Enum):
    """Which InvestEngine export a file is."""
    TRADING = "trading"
    CASH = "cash"


@dataclass(frozen=True)
class Column:
    name: str
    type: ColumnType = ColumnType.STRING
    required: bool = False
    date_format: Optional[str] = None    # overrides Schema.date_format


@dataclass(frozen=True)
class Schema:
    """Ordered, immutable list of typed columns."""
    columns: tuple[Column, ...]
    date_format: str = DEFAULT_DATE_FORMAT

    def __post_init__(self) -> None:
        names = [c.name for c in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate column names in schema: {names}")

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.columns]

    def __len__(self) -> int:
        return len(self.columns)

    def __contains__(self, name: object) -> bool:
        return any(c.name == name for c in self.columns)

    def index_of(self, name: str, parameter: Optional[str] = None) -> int:
        for i, col in enumerate(self.columns):
            if col.name == name:
                return i
        raise UnknownColumn(name, parameter=parameter)

    def column(self, name: str, parameter: Optional[str] = None) -> Column:
        return self.columns[self.index_of(name, parameter)]

    def format_for(self, column: Column) -> str:
        return column.date_format or self.date_format

    def extend(self, *columns: Column) -> "Schema":
        """Return a new schema with extra columns appended."""
        return Schema(self.columns + tuple(columns), self.date_format)


@dataclass(frozen=True)
class Record:
    """One parsed CSV row; values follow the schema's column order."""
    row: int
    values: tuple[Any, ...]

    def get(self, schema: Schema, name: str) -> Any:
        return self.values[schema.index_of(name)]


@dataclass(frozen=True)
class ParseOptions:
    delimiter: str = ","
    decimal_separator: str = "."
    thousands_separator: Optional[str] = None
    currency_symbols: str = ""
    skip_lines: int = 0                  # leading title lines before the header
    has_header: bool = True
    strict: bool = False
    encoding: str = "utf-8-sig"


@dataclass(frozen=True)
class RowError:
    row: int
    reason: str


@dataclass
class ParseReport:
    """Counts collected while a RecordStream is consumed."""
    rows_read: int = 0
    rows_skipped: int = 0
    errors: list[RowError] = field(default_factory=list)

    @property
    def rows_loaded(self) -> int:
        return self.rows_read - self.rows_skipped

    def skip(self, row: int, reason: str) -> None:
        self.rows_skipped += 1
        if len(self.errors) < MAX_ERROR_SAMPLES:
            self.errors.append(RowError(row, reason))

    def merge(self, other: "ParseReport", source: Optional[str] = None) -> None:
        """Fold another file's counts in; ``source`` prefixes its error reasons."""
        self.rows_read += other.rows_read
        self.rows_skipped += other.rows_skipped
        room = MAX_ERROR_SAMPLES - len(self.errors)
        for e in other.errors[:max(room, 0)]:
            self.errors.append(RowError(e.row, f"{source}: {e.reason}" if source else e.reason))

    def to_dict(self) -> dict:
        return {
            "rows_read": self.rows_read,
            "rows_loaded": self.rows_loaded,
            "rows_skipped": self.rows_skipped,
            "errors": [{"row": e.row, "reason": e.reason} for e in self.errors],
        }


def parse_date(text: str, fmt: str) -> dt.date:
    return dt.datetime.strptime(text, fmt).date()
