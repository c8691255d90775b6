"""
TemplateRenderer — Jinja2 reports over an aggregation result.

Templates live in the configured templates directory. HTML/XML templates
autoescape; every template runs under StrictUndefined, and the variables a
template references are checked against the context before rendering, so a
missing binding is an error instead of a blank.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from jinja2 import (
    Environment, FileSystemLoader, StrictUndefined, TemplateNotFound,
    UndefinedError, meta, select_autoescape,
)

from csv_server.analytics.aggregate import AggregationResult, Query
from csv_server.data.schemas import Schema
from csv_server.data.store import Snapshot
from csv_server.errors import BindingError, UnknownTemplate

logger = logging.getLogger(__name__)

# Extension tried, in order, when a template name is given without one
EXTENSIONS = (".html", ".txt", ".json", ".xml", ".csv")

MEDIA_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".xml": "application/xml; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".json": "application/json",
    ".csv": "text/csv; charset=utf-8",
}


# ---------------------------------------------------------------------------
# Formatting filters
# ---------------------------------------------------------------------------

def format_number(value, digits: Optional[int] = None) -> str:
    if value is None:
        return "-"
    if digits is None:
        digits = 0 if isinstance(value, int) else 2
    return f"{value:,.{digits}f}"


def format_money(value, symbol: str = "£") -> str:
    if value is None:
        return "-"
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def format_percent(value, digits: int = 1) -> str:
    """Value is already in percent units (12.5 → "12.5%")."""
    if value is None:
        return "-"
    return f"{value:.{digits}f}%"


def format_date(value, fmt: str = "%Y-%m-%d") -> str:
    if value is None:
        return "-"
    if isinstance(value, (dt.date, dt.datetime)):
        return value.strftime(fmt)
    return str(value)


FILTERS = {
    "number": format_number,
    "money": format_money,
    "percent": format_percent,
    "date": format_date,
}


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RenderContext:
    """Everything a report template may reference."""
    template: str
    result: AggregationResult
    schema: Schema
    dataset: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    title: Optional[str] = None
    generated_at: dt.datetime = field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc).replace(microsecond=0)
    )

    @classmethod
    def for_snapshot(
        cls, template: str, snapshot: Snapshot, result: AggregationResult, query: Optional[Query] = None,
    ) -> "RenderContext":
        return cls(
            template=template,
            result=result,
            schema=snapshot.schema,
            dataset={
                "rows": snapshot.row_count,
                "rows_skipped": snapshot.report.rows_skipped,
                "columns": snapshot.schema.names,
                "source": snapshot.source,
                "loaded_at": snapshot.loaded_at,
            },
            query=query.describe() if query is not None else {},
        )

    @property
    def heading(self) -> str:
        if self.title:
            return self.title
        if self.result.group_by:
            return f"{self.result.dataset} by {', '.join(self.result.group_by)}"
        return f"{self.result.dataset} summary"

    def rows(self) -> list[dict]:
        out = []
        for r in self.result.rows:
            out.append({
                "key": list(r.key),
                "values": list(r.values),
                "group": dict(zip(self.result.group_by, r.key)),
                "metrics": dict(zip(self.result.metrics, r.values)),
            })
        return out

    def as_mapping(self) -> dict[str, Any]:
        return {
            "title": self.heading,
            "dataset": dict(self.dataset, name=self.result.dataset, version=self.result.version),
            "group_by": list(self.result.group_by),
            "metrics": list(self.result.metrics),
            "rows": self.rows(),
            "matched_rows": self.result.matched_rows,
            "query": dict(self.query),
            "generated_at": self.generated_at,
        }


@dataclass(frozen=True)
class RenderedReport:
    body: bytes
    media_type: str
    template: str


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

class TemplateRenderer:
    def __init__(self, templates_dir: Union[str, Path]) -> None:
        self.templates_dir = Path(templates_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            autoescape=select_autoescape(enabled_extensions=("html", "htm", "xml"), default=False),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters.update(FILTERS)

    def templates(self) -> list[str]:
        return sorted(self.env.list_templates())

    def resolve(self, name: str) -> str:
        """Registered template name for ``name`` (extension optional)."""
        registered = set(self.templates())
        if name in registered:
            return name
        for ext in EXTENSIONS:
            if name + ext in registered:
                return name + ext
        raise UnknownTemplate(name)

    def _undeclared(self, name: str) -> set[str]:
        try:
            source, _, _ = self.env.loader.get_source(self.env, name)
        except TemplateNotFound:
            raise UnknownTemplate(name)
        return meta.find_undeclared_variables(self.env.parse(source))

    def render(self, template_name: str, context: Union[RenderContext, Mapping[str, Any]]) -> RenderedReport:
        name = self.resolve(template_name)
        mapping = context.as_mapping() if isinstance(context, RenderContext) else dict(context)

        missing = sorted(self._undeclared(name) - set(mapping) - set(self.env.globals))
        if missing:
            raise BindingError(name, missing)

        try:
            text = self.env.get_template(name).render(**mapping)
        except UndefinedError as e:
            raise BindingError(name, [e.message or str(e)])

        ext = Path(name).suffix.lower()
        logger.debug("Rendered template", extra={"template": name, "bytes": len(text)})
        return RenderedReport(
            body=text.encode("utf-8"),
            media_type=MEDIA_TYPES.get(ext, "text/plain; charset=utf-8"),
            template=name,
        )
