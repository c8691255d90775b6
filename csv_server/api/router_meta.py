"""
Meta endpoints: index page, health, dataset listing.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from csv_server.api.dependencies import get_renderer, get_store
from csv_server.api.response_models import DatasetsResponse, HealthResponse
from csv_server.data.store import DatasetStore
from csv_server.render.renderer import TemplateRenderer

router = APIRouter(tags=["meta"])


@router.get("/", response_class=HTMLResponse)
def index(
    store: DatasetStore = Depends(get_store),
    renderer: TemplateRenderer = Depends(get_renderer),
):
    rendered = renderer.render("index.html", {
        "datasets": store.statuses(),
        "templates": renderer.templates(),
    })
    return HTMLResponse(content=rendered.body, media_type=rendered.media_type)


@router.get("/health", response_model=HealthResponse)
def health(store: DatasetStore = Depends(get_store)):
    statuses = store.statuses()
    loaded = sum(1 for s in statuses if s["version"] is not None)
    return HealthResponse(
        status="ok" if loaded == len(statuses) else "degraded",
        datasets=len(statuses),
        loaded=loaded,
        refreshing=sum(1 for s in statuses if s["refreshing"]),
    )


@router.get("/datasets", response_model=DatasetsResponse)
def list_datasets(store: DatasetStore = Depends(get_store)):
    statuses = store.statuses()
    return DatasetsResponse(datasets=statuses, count=len(statuses))
