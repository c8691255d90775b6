import datetime as dt

import pytest

from csv_server.data.parser import parse_records
from csv_server.data.schemas import Column, ColumnType, ParseOptions, Schema
from csv_server.errors import MalformedInput


def test_parses_typed_records(trades_schema):
    data = b"ticker,qty,price,date\nAAPL,10,150.0,2024-01-02\nMSFT,3,300.5,2024-01-03\n"

    records = list(parse_records(data, trades_schema))

    assert [r.values for r in records] == [
        ("AAPL", 10, 150.0, dt.date(2024, 1, 2)),
        ("MSFT", 3, 300.5, dt.date(2024, 1, 3)),
    ]
    assert [r.row for r in records] == [2, 3]


def test_stream_is_single_pass(trades_schema):
    stream = parse_records(b"ticker,qty,price,date\nAAPL,1,1.0,2024-01-01\n", trades_schema)

    assert len(list(stream)) == 1
    assert list(stream) == []


def test_header_maps_columns_by_name(trades_schema):
    data = "date,price,ticker,qty,extra\n2024-01-02,150.0,AAPL,10,x\n"

    (record,) = list(parse_records(data, trades_schema))

    assert record.values == ("AAPL", 10, 150.0, dt.date(2024, 1, 2))


def test_malformed_rows_are_skipped_and_counted(trades_schema):
    data = (
        "ticker,qty,price,date\n"
        "AAPL,10,150.0,2024-01-02\n"
        "AAPL,1.5,150.0,2024-01-02\n"       # fractional int
        "MSFT,3,300.0\n"                    # short row
        "MSFT,3,abc,2024-01-03\n"           # bad float
        "MSFT,3,300.0,03/01/2024\n"         # wrong date format
        ",3,300.0,2024-01-03\n"             # required column empty
        "GOOG,7,,2024-01-04\n"
    )
    stream = parse_records(data, trades_schema)

    records = list(stream)

    assert [r.values[0] for r in records] == ["AAPL", "GOOG"]
    assert records[1].values[2] is None
    assert stream.report.rows_read == 7
    assert stream.report.rows_skipped == 5
    assert stream.report.rows_loaded == 2
    assert [e.row for e in stream.report.errors] == [3, 4, 5, 6, 7]


def test_strict_mode_raises_on_first_bad_row(trades_schema):
    data = "ticker,qty,price,date\nAAPL,10,150.0,2024-01-02\nAAPL,x,150.0,2024-01-02\n"
    stream = parse_records(data, trades_schema, ParseOptions(strict=True))

    with pytest.raises(MalformedInput) as exc:
        list(stream)

    assert exc.value.row == 3
    assert "qty" in exc.value.reason


def test_missing_header_column_fails_even_when_lenient(trades_schema):
    with pytest.raises(MalformedInput) as exc:
        list(parse_records("ticker,qty,price\nAAPL,1,1.0\n", trades_schema))

    assert exc.value.row == 1
    assert "date" in exc.value.reason


def test_empty_input_has_no_header(trades_schema):
    with pytest.raises(MalformedInput):
        list(parse_records(b"", trades_schema))


def test_blank_lines_are_ignored(trades_schema):
    data = "ticker,qty,price,date\n\nAAPL,10,150.0,2024-01-02\n   \n"
    stream = parse_records(data, trades_schema)

    assert len(list(stream)) == 1
    assert stream.report.rows_skipped == 0


def test_float_rejects_non_finite(trades_schema):
    stream = parse_records("ticker,qty,price,date\nAAPL,1,nan,2024-01-02\nAAPL,1,inf,2024-01-02\n", trades_schema)

    assert list(stream) == []
    assert stream.report.rows_skipped == 2


def test_fields_are_trimmed(trades_schema):
    (record,) = list(parse_records("ticker,qty,price,date\n  AAPL , 10 , 1.5 , 2024-01-02 \n", trades_schema))

    assert record.values == ("AAPL", 10, 1.5, dt.date(2024, 1, 2))


def test_statement_options_title_line_currency_and_thousands():
    schema = Schema(
        (
            Column("Security", ColumnType.STRING),
            Column("Total", ColumnType.FLOAT),
            Column("Traded", ColumnType.DATE, date_format="%d/%m/%y %H:%M:%S"),
            Column("Settled", ColumnType.DATE),
        ),
        date_format="%d/%m/%y",
    )
    options = ParseOptions(skip_lines=1, currency_symbols="£", thousands_separator=",")
    data = (
        "Transaction Statement: 5 Jun 2022 to 21 Feb 2026\n"
        "Security,Total,Traded,Settled\n"
        'VWRP,"£1,230.50",06/06/22 10:15:02,08/06/22\n'
    ).encode("utf-8")

    stream = parse_records(data, schema, options)
    (record,) = list(stream)

    assert record.values == ("VWRP", 1230.5, dt.date(2022, 6, 6), dt.date(2022, 6, 8))
    assert record.row == 3


def test_semicolon_delimiter_and_decimal_comma():
    schema = Schema((Column("name"), Column("amount", ColumnType.FLOAT)))
    options = ParseOptions(delimiter=";", decimal_separator=",", thousands_separator=".")

    (record,) = list(parse_records("name;amount\nfoo;1.234,5\n", schema, options))

    assert record.values == ("foo", 1234.5)


def test_headerless_input_is_positional():
    schema = Schema((Column("a"), Column("b", ColumnType.INT)))

    records = list(parse_records("x,1\ny,2\n", schema, ParseOptions(has_header=False)))

    assert [r.values for r in records] == [("x", 1), ("y", 2)]
    assert [r.row for r in records] == [1, 2]


def test_invalid_encoding_is_malformed_input(trades_schema):
    with pytest.raises(MalformedInput):
        list(parse_records(b"ticker,qty\n\xff\xfe\xfa,1\n", trades_schema))


def test_error_samples_are_capped(trades_schema):
    data = "ticker,qty,price,date\n" + "AAPL,x,1.0,2024-01-01\n" * 30
    stream = parse_records(data, trades_schema)

    list(stream)

    assert stream.report.rows_skipped == 30
    assert len(stream.report.errors) == 20


def test_int_outside_64_bit_range_skips_the_row(trades_schema):
    data = (
        "ticker,qty,price,date\n"
        "BIG,99999999999999999999,1.0,2024-01-02\n"
        "MAX,9223372036854775807,1.0,2024-01-02\n"
        "MIN,-9223372036854775809,1.0,2024-01-02\n"
    )
    stream = parse_records(data, trades_schema)

    records = list(stream)

    assert [r.values[:2] for r in records] == [("MAX", 2 ** 63 - 1)]
    assert [e.row for e in stream.report.errors] == [2, 4]
    assert "64-bit" in stream.report.errors[0].reason


def test_int_outside_64_bit_range_is_fatal_in_strict_mode(trades_schema):
    data = "ticker,qty,price,date\nBIG,99999999999999999999,1.0,2024-01-02\n"

    with pytest.raises(MalformedInput) as exc:
        list(parse_records(data, trades_schema, ParseOptions(strict=True)))
    assert exc.value.row == 2
