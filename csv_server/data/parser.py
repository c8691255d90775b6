"""
CSV parsing — raw bytes + Schema → lazy stream of typed Records.

Rows that do not fit the schema are skipped and counted in the stream's
ParseReport, unless ParseOptions.strict is set, in which case the first bad
row raises MalformedInput.
"""
from __future__ import annotations

import csv
import io
import logging
import re
from typing import Any, Iterator, Optional, Union

from csv_server.data.schemas import (
    Column, ColumnType, ParseOptions, ParseReport, Record, Schema, parse_date,
)
from csv_server.errors import MalformedInput

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# Int columns are stored as pandas Int64
INT_MIN, INT_MAX = -(2 ** 63), 2 ** 63 - 1


class CoercionError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def _clean_number(text: str, options: ParseOptions) -> str:
    for symbol in options.currency_symbols:
        text = text.replace(symbol, "")
    if options.thousands_separator:
        text = text.replace(options.thousands_separator, "")
    if options.decimal_separator != ".":
        text = text.replace(options.decimal_separator, ".")
    return text.strip()


def coerce_field(raw: str, column: Column, schema: Schema, options: ParseOptions) -> Any:
    """Convert one trimmed CSV field to the column's Python type."""
    text = raw.strip()
    if column.type.is_numeric:
        text = _clean_number(text, options)

    if text == "":
        if column.required:
            raise CoercionError(f"required column '{column.name}' is empty")
        return None

    if column.type == ColumnType.STRING:
        return text
    if column.type == ColumnType.INT:
        if not _INT_RE.match(text):
            raise CoercionError(f"column '{column.name}': '{raw.strip()}' is not an integer")
        value = int(text)
        if not INT_MIN <= value <= INT_MAX:
            raise CoercionError(f"column '{column.name}': {value} is outside the 64-bit integer range")
        return value
    if column.type == ColumnType.FLOAT:
        if not _FLOAT_RE.match(text):
            raise CoercionError(f"column '{column.name}': '{raw.strip()}' is not a number")
        return float(text)
    if column.type == ColumnType.DATE:
        fmt = schema.format_for(column)
        try:
            return parse_date(text, fmt)
        except ValueError:
            raise CoercionError(f"column '{column.name}': '{text}' does not match date format {fmt}")
    raise CoercionError(f"column '{column.name}': unsupported type {column.type}")


def decode_input(data: Union[bytes, str], encoding: str) -> str:
    if isinstance(data, str):
        return data
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as exc:
        raise MalformedInput(0, f"input is not valid {encoding}: {exc.reason}")


# ---------------------------------------------------------------------------
# Record stream
# ---------------------------------------------------------------------------

class RecordStream:
    """Single-pass iterator of Records. Once exhausted it stays exhausted."""

    def __init__(self, data: Union[bytes, str], schema: Schema, options: Optional[ParseOptions] = None) -> None:
        self.schema = schema
        self.options = options or ParseOptions()
        self.report = ParseReport()
        self._rows = self._generate(data)

    def __iter__(self) -> "RecordStream":
        return self

    def __next__(self) -> Record:
        return next(self._rows)

    def _fail_or_skip(self, row: int, reason: str) -> None:
        if self.options.strict:
            raise MalformedInput(row, reason)
        self.report.skip(row, reason)

    def _column_positions(self, header: list[str], row: int) -> list[int]:
        """Map schema columns to header positions (by name)."""
        names = [h.strip() for h in header]
        missing = [c.name for c in self.schema.columns if c.name not in names]
        if missing:
            raise MalformedInput(row, f"header is missing columns: {', '.join(missing)}")
        return [names.index(c.name) for c in self.schema.columns]

    def _generate(self, data: Union[bytes, str]) -> Iterator[Record]:
        opts = self.options
        buf = io.StringIO(decode_input(data, opts.encoding))
        for _ in range(opts.skip_lines):
            buf.readline()

        reader = csv.reader(buf, delimiter=opts.delimiter)
        offset = opts.skip_lines
        positions: Optional[list[int]] = None
        width = len(self.schema)
        if not opts.has_header:
            positions = list(range(width))

        while True:
            try:
                fields = next(reader)
            except StopIteration:
                break
            except csv.Error as exc:
                row = offset + reader.line_num
                self.report.rows_read += 1
                self._fail_or_skip(row, f"unreadable row: {exc}")
                continue

            row = offset + reader.line_num
            if not fields or all(f.strip() == "" for f in fields):
                continue

            if positions is None:
                positions = self._column_positions(fields, row)
                width = len(fields)
                continue

            self.report.rows_read += 1
            if len(fields) != width:
                self._fail_or_skip(row, f"expected {width} fields, got {len(fields)}")
                continue

            try:
                values = tuple(
                    coerce_field(fields[pos], col, self.schema, opts)
                    for pos, col in zip(positions, self.schema.columns)
                )
            except CoercionError as exc:
                self._fail_or_skip(row, str(exc))
                continue

            yield Record(row=row, values=values)

        if positions is None and opts.has_header:
            raise MalformedInput(offset + 1, "input has no header row")

        if self.report.rows_skipped:
            logger.info(
                "Skipped malformed rows",
                extra={"rows_read": self.report.rows_read, "rows_skipped": self.report.rows_skipped},
            )


def parse_records(
    data: Union[bytes, str],
    schema: Schema,
    options: Optional[ParseOptions] = None,
) -> RecordStream:
    """Lazily parse ``data`` against ``schema``. See RecordStream."""
    return RecordStream(data, schema, options)
