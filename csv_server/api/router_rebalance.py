"""
Rebalancing calculator endpoint.
"""
from __future__ import annotations

from fastapi import APIRouter

from csv_server.analytics.rebalance import calculate_rebalancing
from csv_server.api.response_models import RebalanceRequest, RebalanceResponse

router = APIRouter(prefix="/rebalance", tags=["rebalance"])


@router.post("/calculate", response_model=RebalanceResponse)
def calculate(req: RebalanceRequest):
    plan = calculate_rebalancing(req.new_capital, req.current_values, req.target_allocations)
    return plan.to_dict()
