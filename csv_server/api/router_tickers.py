"""
Ticker mapping endpoints: the configured ISIN → ticker map and the ISINs in a
dataset that it does not cover yet.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from csv_server.api.dependencies import get_store
from csv_server.api.response_models import MissingTickersResponse, TickerMapResponse
from csv_server.config import DatasetConfig
from csv_server.data.store import DatasetStore
from csv_server.errors import InvalidQuery

router = APIRouter(prefix="/datasets", tags=["tickers"])


def _with_isins(store: DatasetStore, name: str) -> DatasetConfig:
    cfg = store.config(name)
    if not cfg.derive_security_isin:
        raise InvalidQuery(f"Dataset '{name}' has no ISIN column", parameter="name")
    return cfg


@router.get("/{name}/tickers", response_model=TickerMapResponse)
def ticker_map(name: str, store: DatasetStore = Depends(get_store)):
    cfg = _with_isins(store, name)
    mappings = dict(sorted(cfg.tickers.items()))
    return TickerMapResponse(dataset=name, mappings=mappings, count=len(mappings))


@router.get("/{name}/tickers/missing", response_model=MissingTickersResponse)
def missing_tickers(name: str, store: DatasetStore = Depends(get_store)):
    cfg = _with_isins(store, name)
    snapshot = store.get(name)
    isins = sorted(set(snapshot.frame["isin"].dropna().tolist()))
    missing = [isin for isin in isins if isin not in cfg.tickers]
    return MissingTickersResponse(dataset=name, version=snapshot.version, missing_isins=missing, count=len(missing))
