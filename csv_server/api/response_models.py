"""
Pydantic request/response schemas for the API.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    datasets: int
    loaded: int
    refreshing: int


class DatasetStatus(BaseModel):
    name: str
    version: Optional[int] = None
    rows: int = 0
    rows_skipped: int = 0
    columns: list[str] = []
    source: Optional[str] = None
    loaded_at: Optional[str] = None
    refreshing: bool = False
    pending_version: Optional[int] = None
    last_error: Optional[str] = None


class DatasetsResponse(BaseModel):
    datasets: list[DatasetStatus]
    count: int


class RefreshResponse(BaseModel):
    dataset: str
    version: int
    status: str = "refreshing"
    coalesced: bool = False
    source: Optional[str] = None


class AggregateResponse(BaseModel):
    """Raw aggregation: group keys are lists ordered like ``group_by``."""
    dataset: str
    version: int
    group_by: list[str]
    metrics: list[str]
    matched_rows: int
    groups: list[dict[str, Any]]
    query: dict[str, Any]


class RebalanceRequest(BaseModel):
    new_capital: float = Field(..., description="Cash to invest (GBP)")
    current_values: dict[str, float]
    target_allocations: dict[str, float] = Field(..., description="Ticker → target weight (any scale)")


class AllocationOut(BaseModel):
    ticker: str
    current_value: float
    target_percentage: float
    target_value: float
    investment: float


class RebalanceResponse(BaseModel):
    total_current_value: float
    new_capital: float
    new_total_value: float
    total_investment: float
    allocations: list[AllocationOut]


class TickerMapResponse(BaseModel):
    dataset: str
    mappings: dict[str, str] = Field(..., description="ISIN → ticker")
    count: int


class MissingTickersResponse(BaseModel):
    """ISINs in the current version with no ticker mapping."""
    dataset: str
    version: int
    missing_isins: list[str]
    count: int
