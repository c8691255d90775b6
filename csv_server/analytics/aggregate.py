"""
Aggregation engine — filters, group-by, and metrics over a dataset snapshot.

aggregate() is a pure function of (snapshot, query): it reads the snapshot's
frame, never writes to it, and always returns groups in ascending key order
(null keys last).
"""
from __future__ import annotations

import datetime as dt
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

import pandas as pd

from csv_server.analytics.common import to_python
from csv_server.data.schemas import Column, ColumnType, Schema
from csv_server.data.store import Snapshot
from csv_server.errors import InvalidQuery, TypeMismatch

_INT_RE = re.compile(r"^[+-]?\d+$")
_FILTER_RE = re.compile(r"^(?P<column>.+?):(?P<op>eq|in|range):(?P<arg>.*)$", re.DOTALL)
_METRIC_RE = re.compile(r"^(?P<fn>[a-z]+)(?:\((?P<column>.*)\))?$")


class FilterOp(str, Enum):
    EQ = "eq"
    RANGE = "range"
    IN = "in"


class MetricFn(str, Enum):
    SUM = "sum"
    COUNT = "count"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


# pandas named-aggregation function per metric
_PANDAS_AGG = {
    MetricFn.SUM: "sum",
    MetricFn.COUNT: "count",
    MetricFn.AVG: "mean",
    MetricFn.MIN: "min",
    MetricFn.MAX: "max",
}


@dataclass(frozen=True)
class Filter:
    """One predicate. ``values`` is (v,) for eq, (low, high) for range, (v1, ...) for in."""
    column: str
    op: FilterOp
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Metric:
    fn: MetricFn
    column: Optional[str] = None

    @property
    def label(self) -> str:
        if self.column is None:
            return self.fn.value
        return f"{self.fn.value}({self.column})"


@dataclass(frozen=True)
class Query:
    filters: tuple[Filter, ...] = ()
    group_by: tuple[str, ...] = ()
    metrics: tuple[Metric, ...] = ()

    def describe(self) -> dict:
        return {
            "filters": [
                {"column": f.column, "op": f.op.value, "values": list(f.values)} for f in self.filters
            ],
            "group_by": list(self.group_by),
            "metrics": [m.label for m in self.metrics],
        }


@dataclass(frozen=True)
class GroupRow:
    key: tuple[Any, ...]
    values: tuple[Any, ...]


@dataclass(frozen=True)
class AggregationResult:
    dataset: str
    version: int
    group_by: tuple[str, ...]
    metrics: tuple[str, ...]
    rows: tuple[GroupRow, ...]
    matched_rows: int

    def __len__(self) -> int:
        return len(self.rows)

    def pairs(self) -> list[tuple[tuple, tuple]]:
        return [(r.key, r.values) for r in self.rows]

    def records(self) -> list[dict]:
        """One flat dict per group: group columns then metric labels."""
        out = []
        for r in self.rows:
            item = dict(zip(self.group_by, r.key))
            item.update(zip(self.metrics, r.values))
            out.append(item)
        return out

    def to_dict(self) -> dict:
        return {
            "dataset": self.dataset,
            "version": self.version,
            "group_by": list(self.group_by),
            "metrics": list(self.metrics),
            "matched_rows": self.matched_rows,
            "groups": [
                {"key": list(r.key), "values": dict(zip(self.metrics, r.values))}
                for r in self.rows
            ],
        }


# ---------------------------------------------------------------------------
# Query parsing (request text → Query)
# ---------------------------------------------------------------------------

def parse_filter(spec: str) -> Filter:
    """``col:eq:v`` | ``col:in:v1,v2`` | ``col:range:low:high`` (either bound may be empty)."""
    m = _FILTER_RE.match(spec.strip())
    if not m:
        raise InvalidQuery(f"Bad filter '{spec}'; expected column:eq|in|range:value", parameter="filter")
    column, op, arg = m.group("column"), FilterOp(m.group("op")), m.group("arg")
    if op == FilterOp.EQ:
        return Filter(column, op, (arg,))
    if op == FilterOp.IN:
        values = tuple(v.strip() for v in arg.split(",") if v.strip())
        if not values:
            raise InvalidQuery(f"Filter '{spec}' has an empty value list", parameter="filter")
        return Filter(column, op, values)
    bounds = arg.split(":")
    if len(bounds) != 2 or not any(b.strip() for b in bounds):
        raise InvalidQuery(f"Bad range filter '{spec}'; expected column:range:low:high", parameter="filter")
    low, high = (b.strip() or None for b in bounds)
    return Filter(column, op, (low, high))


def parse_metric(spec: str) -> Metric:
    """``sum(qty)``, ``avg(price)``, ``count`` or ``count(col)``."""
    m = _METRIC_RE.match(spec.strip())
    if not m:
        raise InvalidQuery(f"Bad metric '{spec}'", parameter="metric")
    try:
        fn = MetricFn(m.group("fn"))
    except ValueError:
        valid = ", ".join(f.value for f in MetricFn)
        raise InvalidQuery(f"Unknown metric '{m.group('fn')}'. Valid: {valid}", parameter="metric")
    column = m.group("column")
    column = column.strip() if column is not None else None
    if not column:
        if fn != MetricFn.COUNT:
            raise InvalidQuery(f"Metric '{fn.value}' needs a column, e.g. {fn.value}(qty)", parameter="metric")
        column = None
    return Metric(fn, column)


def _split_csv(values: Iterable[str]) -> list[str]:
    out = []
    for v in values:
        out.extend(p.strip() for p in v.split(",") if p.strip())
    return out


def parse_query(
    filters: Iterable[str] = (),
    group_by: Iterable[str] = (),
    metrics: Iterable[str] = (),
) -> Query:
    """Build a Query from raw request parameters."""
    return Query(
        filters=tuple(parse_filter(f) for f in filters if f.strip()),
        group_by=tuple(_split_csv(group_by)),
        metrics=tuple(parse_metric(m) for m in metrics if m.strip()),
    )


# ---------------------------------------------------------------------------
# Validation against the schema
# ---------------------------------------------------------------------------

def _coerce_value(column: Column, value: Any) -> Any:
    """Filter value → the column's Python type (None means "is null")."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return None
        try:
            if column.type == ColumnType.INT:
                if not _INT_RE.match(text):
                    raise ValueError(text)
                return int(text)
            if column.type == ColumnType.FLOAT:
                number = float(text)
                if not math.isfinite(number):
                    raise ValueError(text)
                return number
            if column.type == ColumnType.DATE:
                return dt.date.fromisoformat(text)
            return text
        except ValueError:
            raise TypeMismatch(
                f"Filter on '{column.name}': '{value}' is not a valid {column.type.value}",
                parameter="filter",
            )

    ok = {
        ColumnType.INT: isinstance(value, int) and not isinstance(value, bool),
        ColumnType.FLOAT: isinstance(value, (int, float)) and not isinstance(value, bool),
        ColumnType.DATE: isinstance(value, dt.date),
        ColumnType.STRING: isinstance(value, str),
    }[column.type]
    if not ok:
        raise TypeMismatch(
            f"Filter on '{column.name}': {value!r} is not a valid {column.type.value}",
            parameter="filter",
        )
    if isinstance(value, dt.datetime):
        return value.date()
    return value


def _check_filter(schema: Schema, f: Filter) -> Filter:
    column = schema.column(f.column, parameter="filter")
    if f.op == FilterOp.RANGE and not column.type.is_ordered:
        raise TypeMismatch(
            f"Range filter needs a numeric or date column; '{column.name}' is {column.type.value}",
            parameter="filter",
        )
    return Filter(f.column, f.op, tuple(_coerce_value(column, v) for v in f.values))


def _check_metric(schema: Schema, m: Metric) -> Metric:
    if m.column is None:
        if m.fn != MetricFn.COUNT:
            raise InvalidQuery(f"Metric '{m.fn.value}' needs a column", parameter="metric")
        return m
    column = schema.column(m.column, parameter="metric")
    if m.fn in (MetricFn.SUM, MetricFn.AVG) and not column.type.is_numeric:
        raise TypeMismatch(
            f"{m.fn.value}() needs a numeric column; '{column.name}' is {column.type.value}",
            parameter="metric",
        )
    if m.fn in (MetricFn.MIN, MetricFn.MAX) and not column.type.is_ordered:
        raise TypeMismatch(
            f"{m.fn.value}() needs a numeric or date column; '{column.name}' is {column.type.value}",
            parameter="metric",
        )
    return m


def validate_query(schema: Schema, query: Query) -> Query:
    """Return a normalized Query: typed filter values, group keys in column order, default metric.

    Raises UnknownColumn / TypeMismatch / InvalidQuery.
    """
    for name in query.group_by:
        schema.index_of(name, parameter="group_by")
    wanted = set(query.group_by)
    group_by = tuple(n for n in schema.names if n in wanted)

    metrics = tuple(_check_metric(schema, m) for m in query.metrics) or (Metric(MetricFn.COUNT),)
    labels = [m.label for m in metrics]
    if len(labels) != len(set(labels)):
        raise InvalidQuery(f"Duplicate metrics: {labels}", parameter="metric")

    return Query(
        filters=tuple(_check_filter(schema, f) for f in query.filters),
        group_by=group_by,
        metrics=metrics,
    )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _frame_value(column: Column, value: Any) -> Any:
    if column.type == ColumnType.DATE and value is not None:
        return pd.Timestamp(value)
    return value


def _mask(frame: pd.DataFrame, schema: Schema, filters: tuple[Filter, ...]) -> pd.Series:
    mask = pd.Series(True, index=frame.index)
    for f in filters:
        column = schema.column(f.column)
        s = frame[f.column]
        values = [_frame_value(column, v) for v in f.values]

        if f.op == FilterOp.EQ:
            cond = s.isna() if values[0] is None else (s == values[0])
        elif f.op == FilterOp.IN:
            present = [v for v in values if v is not None]
            cond = s.isin(present)
            if len(present) != len(values):
                cond = cond | s.isna()
        else:
            low, high = values
            cond = pd.Series(True, index=frame.index)
            if low is not None:
                cond = cond & (s >= low)
            if high is not None:
                cond = cond & (s <= high)

        mask &= cond.fillna(False).astype(bool)
    return mask


def _exact_ints(s: pd.Series) -> pd.Series:
    """Int64 values as Python ints (nulls as 0); int64 sums wrap on overflow."""
    return pd.Series([0 if v is pd.NA else int(v) for v in s.tolist()], index=s.index, dtype=object)


def _is_int(s: pd.Series) -> bool:
    return pd.api.types.is_integer_dtype(s.dtype)


def _total(frame: pd.DataFrame, m: Metric) -> Any:
    if m.column is None:
        return len(frame)
    s = frame[m.column]
    if m.fn == MetricFn.COUNT:
        return int(s.count())
    if m.fn == MetricFn.SUM:
        return sum(_exact_ints(s).tolist()) if _is_int(s) else s.sum()
    if m.fn == MetricFn.AVG:
        return s.mean() if s.count() else None
    if m.fn == MetricFn.MIN:
        return s.min()
    return s.max()


def _sort_key(key: tuple) -> tuple:
    return tuple((v is None, v if v is not None else 0) for v in key)


def _grouped(frame: pd.DataFrame, group_by: tuple[str, ...], metrics: tuple[Metric, ...]) -> list[GroupRow]:
    if frame.empty:
        return []
    named = {}
    for i, m in enumerate(metrics):
        if m.column is None:
            named[f"__m{i}__"] = (group_by[0], "size")
        elif m.fn == MetricFn.SUM and _is_int(frame[m.column]):
            exact = f"__exact{i}__"
            frame = frame.assign(**{exact: _exact_ints(frame[m.column])})
            named[f"__m{i}__"] = (exact, "sum")
        else:
            named[f"__m{i}__"] = (m.column, _PANDAS_AGG[m.fn])

    out = frame.groupby(list(group_by), sort=False, dropna=False, observed=True).agg(**named)

    keys = [k if isinstance(k, tuple) else (k,) for k in out.index]
    columns = [out[f"__m{i}__"].tolist() for i in range(len(metrics))]
    rows = [
        GroupRow(
            key=tuple(to_python(v) for v in key),
            values=tuple(to_python(col[n]) for col in columns),
        )
        for n, key in enumerate(keys)
    ]
    rows.sort(key=lambda r: _sort_key(r.key))
    return rows


def aggregate(snapshot: Snapshot, query: Query) -> AggregationResult:
    """Filter, group and summarize one snapshot."""
    plan = validate_query(snapshot.schema, query)
    frame = snapshot.frame
    if plan.filters:
        frame = frame[_mask(frame, snapshot.schema, plan.filters)]

    if plan.group_by:
        rows = _grouped(frame, plan.group_by, plan.metrics)
    else:
        rows = [GroupRow(key=(), values=tuple(to_python(_total(frame, m)) for m in plan.metrics))]

    return AggregationResult(
        dataset=snapshot.name,
        version=snapshot.version,
        group_by=plan.group_by,
        metrics=tuple(m.label for m in plan.metrics),
        rows=tuple(rows),
        matched_rows=len(frame),
    )
