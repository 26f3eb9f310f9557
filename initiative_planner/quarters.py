"""
Fiscal/calendar quarter boundaries and their lock state relative to "now".

Fiscal years end June 30 and are named after the year they end in, so fiscal
Q1 of plan year Y runs July-September of Y-1 while Q3 and Q4 fall inside Y.
Calendar quarters follow the months of the plan year directly.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from .models import QuarterInfo, YearType

Clock = Callable[[], datetime]

# (id, label, months, title, start month, year offset from plan year)
_FISCAL_LAYOUT: Tuple[Tuple[str, str, str, str, int, int], ...] = (
    ("q1", "Q1", "Jul-Sep", "Foundation", 7, -1),
    ("q2", "Q2", "Oct-Dec", "Execution", 10, -1),
    ("q3", "Q3", "Jan-Mar", "Scaling", 1, 0),
    ("q4", "Q4", "Apr-Jun", "Planning", 4, 0),
)
_CALENDAR_LAYOUT: Tuple[Tuple[str, str, str, str, int, int], ...] = (
    ("q1", "Q1", "Jan-Mar", "Foundation", 1, 0),
    ("q2", "Q2", "Apr-Jun", "Execution", 4, 0),
    ("q3", "Q3", "Jul-Sep", "Scaling", 7, 0),
    ("q4", "Q4", "Oct-Dec", "Planning", 10, 0),
)

_YEAR_TYPE_ALIASES = {
    "fiscal": "fiscal",
    "fy": "fiscal",
    "calendar": "calendar",
    "cy": "calendar",
}


def normalize_year_type(value: str) -> YearType:
    key = str(value).strip().lower()
    if key not in _YEAR_TYPE_ALIASES:
        raise ValueError(f"unsupported year type '{value}' (expected fiscal or calendar)")
    return _YEAR_TYPE_ALIASES[key]  # type: ignore[return-value]


def _layout_for(year_type: YearType):
    return _FISCAL_LAYOUT if normalize_year_type(year_type) == "fiscal" else _CALENDAR_LAYOUT


def compute_quarters(
    year_type: YearType, plan_year: int, now: Optional[datetime] = None
) -> List[QuarterInfo]:
    """Return the four quarters of ``plan_year`` in ordinal order.

    ``is_past`` and ``is_current`` are evaluated against ``now`` with each
    quarter ending at the last microsecond of its final day. ``is_next`` marks
    the quarter after the current one within this set only; when the current
    quarter is Q4 no quarter in the set is flagged.
    """
    moment = now if now is not None else datetime.now()
    quarters: List[QuarterInfo] = []
    for quarter_id, label, months, title, start_month, year_offset in _layout_for(year_type):
        start = datetime(plan_year + year_offset, start_month, 1)
        end = start + relativedelta(months=3, microseconds=-1)
        quarters.append(
            QuarterInfo(
                id=quarter_id,
                label=label,
                months=months,
                title=title,
                start_month=start.month,
                end_month=end.month,
                start=start,
                end=end,
                is_past=moment > end,
                is_current=start <= moment <= end,
            )
        )
    current_idx = next((idx for idx, q in enumerate(quarters) if q.is_current), None)
    return [
        replace(
            quarter,
            is_locked=quarter.is_past or quarter.is_current,
            is_next=current_idx is not None and idx == current_idx + 1,
        )
        for idx, quarter in enumerate(quarters)
    ]


def determine_plan_year(year_type: YearType, now: Optional[datetime] = None) -> int:
    """Pick the plan year whose quarter set is the current planning horizon."""
    moment = now if now is not None else datetime.now()
    if normalize_year_type(year_type) == "fiscal":
        # Jul-Dec already belongs to the fiscal year ending next June.
        return moment.year + 1 if moment.month >= 7 else moment.year
    # Late in the calendar year people are planning the next one.
    return moment.year + 1 if moment.month >= 11 else moment.year


def available_quarters(
    year_type: YearType, plan_year: int, now: Optional[datetime] = None
) -> List[QuarterInfo]:
    return [q for q in compute_quarters(year_type, plan_year, now) if not q.is_past]


def locked_quarter_ids(quarters: Sequence[QuarterInfo]) -> Tuple[str, ...]:
    return tuple(q.id for q in quarters if q.is_locked)


def planning_quarter(quarters: Sequence[QuarterInfo]) -> QuarterInfo:
    """Quarter targeted by execution planning: next, else current, else first."""
    for quarter in quarters:
        if quarter.is_next:
            return quarter
    for quarter in quarters:
        if quarter.is_current:
            return quarter
    return quarters[0]


def next_planning_quarter(
    year_type: YearType, plan_year: int, now: Optional[datetime] = None
) -> Tuple[int, QuarterInfo]:
    """Like :func:`planning_quarter` but rolls into the following plan year.

    When the current quarter is the last of ``plan_year`` the next quarter is
    Q1 of ``plan_year + 1``.
    """
    moment = now if now is not None else datetime.now()
    quarters = compute_quarters(year_type, plan_year, moment)
    if quarters[-1].is_current:
        following = compute_quarters(year_type, plan_year + 1, moment)
        return plan_year + 1, following[0]
    return plan_year, planning_quarter(quarters)
