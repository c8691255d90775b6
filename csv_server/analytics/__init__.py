"""Aggregation engine and rebalancing calculator.

``csv_server.analytics.aggregate`` is the engine module; its entry point is
``aggregate.aggregate(snapshot, query)``.
"""
from .aggregate import (
    AggregationResult, Filter, FilterOp, GroupRow, Metric, MetricFn, Query,
    parse_query, validate_query,
)
from .rebalance import Allocation, RebalancePlan, calculate_rebalancing
