"""
Rebalancing calculator — how much new capital to put into each holding.

Only tickers present in both the current-value and target-allocation maps
take part. Targets are normalized to 100% over those tickers; a holding
already above its target receives nothing (no selling).
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from csv_server.errors import InvalidQuery

_CENT = Decimal("0.01")


def _money(value: Decimal) -> float:
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def _dec(value) -> Decimal:
    return Decimal(str(value))


@dataclass(frozen=True)
class Allocation:
    ticker: str
    current_value: float
    target_percentage: float
    target_value: float
    investment: float


@dataclass(frozen=True)
class RebalancePlan:
    total_current_value: float
    new_capital: float
    new_total_value: float
    total_investment: float
    allocations: tuple[Allocation, ...]

    def allocation(self, ticker: str) -> Allocation:
        for a in self.allocations:
            if a.ticker == ticker:
                return a
        raise KeyError(ticker)

    def to_dict(self) -> dict:
        return {
            "total_current_value": self.total_current_value,
            "new_capital": self.new_capital,
            "new_total_value": self.new_total_value,
            "total_investment": self.total_investment,
            "allocations": [a.__dict__.copy() for a in self.allocations],
        }


def calculate_rebalancing(
    new_capital: float,
    current_values: Mapping[str, float],
    target_allocations: Mapping[str, float],
) -> RebalancePlan:
    """Split ``new_capital`` across holdings to move toward the target mix."""
    if new_capital < 0:
        raise InvalidQuery("new_capital must not be negative", parameter="new_capital")

    tickers = sorted(t for t in current_values if t in target_allocations)
    if not tickers:
        raise InvalidQuery(
            "No ticker appears in both current values and target allocations",
            parameter="target_allocations",
        )

    for t in tickers:
        if current_values[t] < 0 or target_allocations[t] < 0:
            raise InvalidQuery(f"Negative value for {t}", parameter="target_allocations")

    target_sum = sum(_dec(target_allocations[t]) for t in tickers)
    if target_sum == 0:
        raise InvalidQuery("Target allocations sum to zero", parameter="target_allocations")

    capital = _dec(new_capital)
    total_current = sum(_dec(current_values[t]) for t in tickers)
    new_total = total_current + capital

    allocations = []
    total_investment = Decimal(0)
    for t in tickers:
        pct = _dec(target_allocations[t]) * 100 / target_sum
        target_value = new_total * pct / 100
        investment = max(target_value - _dec(current_values[t]), Decimal(0))
        total_investment += investment
        allocations.append(
            Allocation(
                ticker=t,
                current_value=_money(_dec(current_values[t])),
                target_percentage=round(float(pct), 4),
                target_value=_money(target_value),
                investment=_money(investment),
            )
        )

    return RebalancePlan(
        total_current_value=_money(total_current),
        new_capital=_money(capital),
        new_total_value=_money(new_total),
        total_investment=_money(total_investment),
        allocations=tuple(allocations),
    )
