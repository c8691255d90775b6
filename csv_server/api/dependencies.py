"""
FastAPI dependencies — DatasetStore and renderer singletons, query parsing.
"""
from __future__ import annotations

from fastapi import Query

from csv_server.analytics import aggregate as agg
from csv_server.data.store import DatasetStore
from csv_server.errors import DatasetUnavailable
from csv_server.render.renderer import TemplateRenderer

# ---------------------------------------------------------------------------
# Global singletons (set during startup)
# ---------------------------------------------------------------------------
_store: DatasetStore | None = None
_renderer: TemplateRenderer | None = None


def set_store(store: DatasetStore | None) -> None:
    global _store
    _store = store


def set_renderer(renderer: TemplateRenderer | None) -> None:
    global _renderer
    _renderer = renderer


def get_store() -> DatasetStore:
    if _store is None:
        raise DatasetUnavailable("Server not initialized yet")
    return _store


def get_renderer() -> TemplateRenderer:
    if _renderer is None:
        raise DatasetUnavailable("Server not initialized yet")
    return _renderer


# ---------------------------------------------------------------------------
# Aggregation query from query params
# ---------------------------------------------------------------------------

def parse_query_params(
    filters: list[str] = Query([], alias="filter", description="column:eq:V | column:in:A,B | column:range:LO:HI"),
    group_by: list[str] = Query([], description="Column name(s); repeat or comma-separate"),
    metrics: list[str] = Query([], alias="metric", description="sum(col) | avg(col) | min(col) | max(col) | count"),
) -> agg.Query:
    """Parse filter/group_by/metric query parameters into a Query."""
    return agg.parse_query(filters, group_by, metrics)
