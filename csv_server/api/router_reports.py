"""
Report endpoints: rendered template, raw JSON aggregation, Excel workbook.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from csv_server.analytics import aggregate as agg
from csv_server.analytics.common import sanitize_for_json
from csv_server.api.dependencies import get_renderer, get_store, parse_query_params
from csv_server.api.response_models import AggregateResponse
from csv_server.data.store import DatasetStore
from csv_server.render.excel import render_workbook
from csv_server.render.renderer import RenderContext, TemplateRenderer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/datasets", tags=["reports"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Non-standard "client closed request"; the client never reads it
CLIENT_CLOSED = 499


@router.get("/{name}/aggregate", response_model=AggregateResponse)
def aggregate_json(
    name: str,
    query: agg.Query = Depends(parse_query_params),
    store: DatasetStore = Depends(get_store),
):
    snapshot = store.get(name)
    result = agg.aggregate(snapshot, query)
    body = result.to_dict()
    body["query"] = query.describe()
    return sanitize_for_json(body)


@router.get("/{name}/report")
async def report(
    request: Request,
    name: str,
    template: str = Query("report", description="Template name, extension optional"),
    query: agg.Query = Depends(parse_query_params),
    store: DatasetStore = Depends(get_store),
    renderer: TemplateRenderer = Depends(get_renderer),
):
    """Render one report. Work stops if the client goes away between stages."""
    snapshot = store.get(name)
    template_name = renderer.resolve(template)

    result = await run_in_threadpool(agg.aggregate, snapshot, query)
    if await request.is_disconnected():
        logger.info("Client disconnected before render", extra={"dataset": name, "template": template_name})
        return Response(status_code=CLIENT_CLOSED)

    context = RenderContext.for_snapshot(template_name, snapshot, result, query)
    rendered = await run_in_threadpool(renderer.render, template_name, context)
    if await request.is_disconnected():
        logger.info("Client disconnected after render", extra={"dataset": name, "template": template_name})
        return Response(status_code=CLIENT_CLOSED)

    return Response(
        content=rendered.body,
        media_type=rendered.media_type,
        headers={"X-Dataset-Version": str(snapshot.version)},
    )


@router.get("/{name}/report/excel")
def report_excel(
    name: str,
    query: agg.Query = Depends(parse_query_params),
    store: DatasetStore = Depends(get_store),
):
    snapshot = store.get(name)
    result = agg.aggregate(snapshot, query)
    body = render_workbook(RenderContext.for_snapshot("excel", snapshot, result, query))
    filename = f"{name}-v{snapshot.version}.xlsx"
    return Response(
        content=body,
        media_type=XLSX_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Dataset-Version": str(snapshot.version),
        },
    )
