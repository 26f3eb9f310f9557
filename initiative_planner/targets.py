from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from .models import QUARTER_IDS

Number = Union[int, float]
TargetValue = Optional[float]
# metric key -> quarter id -> value
QuarterlyTargets = Dict[str, Dict[str, TargetValue]]

REVENUE_KEY = "revenue"
HEADCOUNT_KEY = "team_headcount"

# percentage metric -> absolute metric derived from the same quarter's revenue
LINKED_PERCENTAGES: Dict[str, str] = {
    "gross_margin": "gross_profit",
    "net_margin": "net_profit",
}
LINKED_ABSOLUTES: Dict[str, str] = {value: key for key, value in LINKED_PERCENTAGES.items()}

_SPLIT_EVENLY = ("revenue", "gross_profit", "net_profit", "customers")


def _round_half_up(value: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def parse_target_value(value: object) -> TargetValue:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid target value: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip().replace(",", "")
        if not stripped:
            return None
        try:
            return float(stripped)
        except ValueError as exc:
            raise ValueError(f"invalid target value: {value!r}") from exc
    raise ValueError(f"invalid target value: {value!r}")


def _quarter_row(targets: Mapping[str, Mapping[str, TargetValue]], metric: str) -> Dict[str, TargetValue]:
    existing = targets.get(metric) or {}
    return {quarter_id: existing.get(quarter_id) for quarter_id in QUARTER_IDS}


def normalize_targets(raw: Mapping[str, Mapping[str, object]]) -> QuarterlyTargets:
    normalized: QuarterlyTargets = {}
    for metric, values in raw.items():
        values = values or {}
        normalized[str(metric)] = {
            quarter_id: parse_target_value(values.get(quarter_id)) for quarter_id in QUARTER_IDS
        }
    return normalized


def quarter_revenue(targets: Mapping[str, Mapping[str, TargetValue]], quarter_id: str) -> float:
    return (targets.get(REVENUE_KEY) or {}).get(quarter_id) or 0.0


def update_target(
    targets: Mapping[str, Mapping[str, TargetValue]],
    metric: str,
    quarter_id: str,
    value: object,
) -> QuarterlyTargets:
    """Set one quarterly target and keep its linked margin/profit pair in step.

    ``profit = revenue * margin / 100`` rounded to a whole unit and
    ``margin = profit / revenue * 100`` rounded to one decimal. Without a
    positive revenue figure for the quarter the edit is stored as entered.
    The paired field is written once; it is never fed back into this function.
    """
    if quarter_id not in QUARTER_IDS:
        raise ValueError(f"unknown quarter '{quarter_id}'")
    parsed = parse_target_value(value)
    updated: QuarterlyTargets = {key: dict(row) for key, row in targets.items()}
    row = _quarter_row(updated, metric)
    row[quarter_id] = parsed
    updated[metric] = row

    revenue = quarter_revenue(updated, quarter_id)
    if revenue <= 0:
        return updated
    if metric in LINKED_PERCENTAGES:
        paired = LINKED_PERCENTAGES[metric]
        paired_row = _quarter_row(updated, paired)
        paired_row[quarter_id] = None if parsed is None else _round_half_up(revenue * parsed / 100, 0)
        updated[paired] = paired_row
    elif metric in LINKED_ABSOLUTES:
        paired = LINKED_ABSOLUTES[metric]
        paired_row = _quarter_row(updated, paired)
        paired_row[quarter_id] = None if parsed is None else _round_half_up(parsed / revenue * 100, 1)
        updated[paired] = paired_row
    return updated


@dataclass(frozen=True)
class TargetTotals:
    total: float
    annual: float
    variance: float
    is_valid: bool


def quarterly_total(
    targets: Mapping[str, Mapping[str, TargetValue]],
    metric: str,
    annual: Number,
    tolerance_pct: float = 0.05,
) -> TargetTotals:
    """Compare the sum of a metric's quarters with its annual goal."""
    row = _quarter_row(targets, metric)
    total = sum(value or 0.0 for value in row.values())
    annual_value = float(annual or 0.0)
    variance = total - annual_value
    pct_diff = abs(variance / annual_value) if annual_value > 0 else 0.0
    return TargetTotals(
        total=total,
        annual=annual_value,
        variance=variance,
        is_valid=pct_diff < tolerance_pct,
    )


def has_any_target(
    targets: Mapping[str, Mapping[str, TargetValue]], quarter_ids: Iterable[str]
) -> bool:
    quarter_ids = list(quarter_ids)
    return any(
        ((row or {}).get(quarter_id) or 0.0) > 0
        for row in targets.values()
        for quarter_id in quarter_ids
    )


def monthly_breakdown(
    targets: Mapping[str, Mapping[str, TargetValue]], quarter_id: str
) -> List[Dict[str, float]]:
    """Split one quarter's targets into three equal months."""
    if quarter_id not in QUARTER_IDS:
        raise ValueError(f"unknown quarter '{quarter_id}'")
    month: Dict[str, float] = {}
    for metric in _SPLIT_EVENLY:
        value = (targets.get(metric) or {}).get(quarter_id) or 0.0
        month[metric] = _round_half_up(value / 3, 0)
    month["employees"] = _round_half_up((targets.get(HEADCOUNT_KEY) or {}).get(quarter_id) or 0.0, 0)
    revenue = month["revenue"]
    for percentage, absolute in LINKED_PERCENTAGES.items():
        month[percentage] = _round_half_up(month[absolute] / revenue * 100, 1) if revenue > 0 else 0.0
    return [dict(month) for _ in range(3)]


def targets_frame(targets: Mapping[str, Mapping[str, TargetValue]]) -> pd.DataFrame:
    rows = []
    for metric in sorted(targets):
        row = _quarter_row(targets, metric)
        rows.append({"metric": metric, **row})
    return pd.DataFrame(rows, columns=["metric", *QUARTER_IDS])
