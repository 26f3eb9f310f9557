from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pandas as pd

from .models import (
    QUARTER_IDS,
    CapacityConfig,
    Plan,
    WorkItem,
    empty_plan,
    find_item,
    normalize_plan,
    plan_item_ids,
)

# Quarter where each priority tier starts looking for room.
TIER_START_QUARTER: Dict[str, str] = {"high": "q1", "medium": "q2", "low": "q3"}
TIER_ORDER: Dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class PlanningError(RuntimeError):
    """Base class for recoverable planning errors."""


class AllocationError(PlanningError):
    pass


class CapacityExceeded(AllocationError):
    def __init__(self, quarter_id: str, limit: int) -> None:
        super().__init__(f"Quarter {quarter_id} is at capacity (max {limit} initiatives)")
        self.quarter_id = quarter_id
        self.limit = limit


class AssignmentCapacityExceeded(AllocationError):
    def __init__(self, quarter_id: str, assignee_id: str, limit: int) -> None:
        super().__init__(
            f"{assignee_id} already owns {limit} initiatives in {quarter_id} (max {limit})"
        )
        self.quarter_id = quarter_id
        self.assignee_id = assignee_id
        self.limit = limit


class ItemNotFound(AllocationError):
    def __init__(self, item_id: str, where: str) -> None:
        super().__init__(f"Initiative {item_id} not found in {where}")
        self.item_id = item_id
        self.where = where


class UnknownQuarter(AllocationError):
    def __init__(self, quarter_id: str) -> None:
        super().__init__(f"Unknown quarter '{quarter_id}' (expected one of {', '.join(QUARTER_IDS)})")
        self.quarter_id = quarter_id


@dataclass(frozen=True)
class DistributionResult:
    plan: Plan
    unplaced: Tuple[WorkItem, ...] = ()

    @property
    def unplaced_count(self) -> int:
        return len(self.unplaced)


def _require_quarter(quarter_id: str) -> None:
    if quarter_id not in QUARTER_IDS:
        raise UnknownQuarter(quarter_id)


def _without_item(items: Sequence[WorkItem], item_id: str) -> Tuple[WorkItem, ...]:
    return tuple(item for item in items if item.id != item_id)


def _locate(plan: Plan, item_id: str, quarter_id: str) -> Tuple[int, WorkItem]:
    for index, item in enumerate(plan.get(quarter_id, ())):
        if item.id == item_id:
            return index, item
    raise ItemNotFound(item_id, quarter_id)


def assignment_load(plan: Plan, quarter_id: str) -> Dict[str, int]:
    """Count of items per assignee within one quarter."""
    _require_quarter(quarter_id)
    counts = Counter(item.assigned_to for item in plan.get(quarter_id, ()) if item.assigned_to)
    return dict(counts)


def people_at_capacity(plan: Plan, quarter_id: str, per_assignee: int) -> Set[str]:
    return {
        person for person, count in assignment_load(plan, quarter_id).items() if count >= per_assignee
    }


def quarter_status(plan: Plan, quarter_id: str, per_quarter: int) -> str:
    _require_quarter(quarter_id)
    count = len(plan.get(quarter_id, ()))
    if count == 0:
        return "empty"
    if count >= per_quarter:
        return "full"
    return "active"


def place_in_quarter(
    plan: Plan,
    item: WorkItem,
    quarter_id: str,
    capacity: CapacityConfig = CapacityConfig(),
) -> Plan:
    """Append ``item`` to ``quarter_id``, removing it from wherever it was.

    An item already inside the target quarter does not count against the
    target's capacity; it is moved to the end.
    """
    _require_quarter(quarter_id)
    target_items = plan.get(quarter_id, ())
    occupied = len(_without_item(target_items, item.id))
    if occupied >= capacity.per_quarter:
        raise CapacityExceeded(quarter_id, capacity.per_quarter)
    updated = normalize_plan(plan)
    for key in QUARTER_IDS:
        updated[key] = _without_item(updated[key], item.id)
    updated[quarter_id] = updated[quarter_id] + (item,)
    return updated


def remove_from_quarter(plan: Plan, item_id: str, quarter_id: str) -> Plan:
    _require_quarter(quarter_id)
    _locate(plan, item_id, quarter_id)
    updated = normalize_plan(plan)
    updated[quarter_id] = _without_item(updated[quarter_id], item_id)
    return updated


def move_between_quarters(
    plan: Plan,
    item_id: str,
    from_quarter: str,
    to_quarter: str,
    index: Optional[int] = None,
    capacity: CapacityConfig = CapacityConfig(),
) -> Plan:
    """Move an item across quarters, or reorder it when both quarters match.

    ``index`` is the position in the target sequence after the move; ``None``
    appends. Same-quarter moves are never capacity checked.
    """
    _require_quarter(from_quarter)
    _require_quarter(to_quarter)
    _, item = _locate(plan, item_id, from_quarter)
    updated = normalize_plan(plan)
    if from_quarter != to_quarter and len(updated[to_quarter]) >= capacity.per_quarter:
        raise CapacityExceeded(to_quarter, capacity.per_quarter)
    updated[from_quarter] = _without_item(updated[from_quarter], item_id)
    target = list(updated[to_quarter])
    position = len(target) if index is None else max(0, min(index, len(target)))
    target.insert(position, item)
    updated[to_quarter] = tuple(target)
    return updated


def assign_person(
    plan: Plan,
    item_id: str,
    quarter_id: str,
    assignee_id: Optional[str],
    capacity: CapacityConfig = CapacityConfig(),
) -> Plan:
    """Set or clear the owner of an item in ``quarter_id``.

    Re-confirming the current owner always succeeds, even at capacity.
    """
    _require_quarter(quarter_id)
    index, item = _locate(plan, item_id, quarter_id)
    if assignee_id is not None and item.assigned_to != assignee_id:
        load = assignment_load(plan, quarter_id)
        if load.get(assignee_id, 0) >= capacity.per_assignee:
            raise AssignmentCapacityExceeded(quarter_id, assignee_id, capacity.per_assignee)
    updated = normalize_plan(plan)
    items = list(updated[quarter_id])
    items[index] = replace(item, assigned_to=assignee_id)
    updated[quarter_id] = tuple(items)
    return updated


def _candidate_quarters(tier: str, skip: Set[str]) -> List[str]:
    start_idx = QUARTER_IDS.index(TIER_START_QUARTER.get(tier, "q3"))
    later = list(QUARTER_IDS[start_idx:])
    # Wrap back towards the start of the year, nearest quarter first.
    earlier = list(reversed(QUARTER_IDS[:start_idx]))
    return [quarter_id for quarter_id in later + earlier if quarter_id not in skip]


def distribute_by_priority(
    items: Iterable[WorkItem],
    capacity_per_quarter: int = CapacityConfig().per_quarter,
    skip_quarters: Iterable[str] = (),
) -> DistributionResult:
    """Spread items over the year by priority tier.

    Items are ordered high, medium, low (ties keep input order). High items
    start at Q1, medium at Q2, low (and untagged) at Q3; each falls through
    to later quarters and then wraps back to earlier ones. Items that fit
    nowhere are reported in ``unplaced`` instead of being dropped.
    """
    skip = set(skip_quarters)
    for quarter_id in skip:
        _require_quarter(quarter_id)
    ordered = sorted(
        enumerate(items), key=lambda pair: (TIER_ORDER[pair[1].priority_tier()], pair[0])
    )
    distribution: Dict[str, List[WorkItem]] = {quarter_id: [] for quarter_id in QUARTER_IDS}
    unplaced: List[WorkItem] = []
    seen: Set[str] = set()
    for _, item in ordered:
        if item.id in seen:
            continue
        seen.add(item.id)
        for quarter_id in _candidate_quarters(item.priority_tier(), skip):
            if len(distribution[quarter_id]) < capacity_per_quarter:
                distribution[quarter_id].append(item)
                break
        else:
            unplaced.append(item)
    plan = empty_plan()
    for quarter_id, placed in distribution.items():
        plan[quarter_id] = tuple(placed)
    return DistributionResult(plan=plan, unplaced=tuple(unplaced))


def unassigned_items(selection: Iterable[WorkItem], plan: Plan) -> List[WorkItem]:
    planned = set(plan_item_ids(plan))
    return [item for item in selection if item.id not in planned]


def validate_plan(plan: Plan) -> None:
    """Raise ``ValueError`` when an item appears in more than one quarter."""
    ids = plan_item_ids(plan)
    duplicates = sorted(item_id for item_id, count in Counter(ids).items() if count > 1)
    if duplicates:
        raise ValueError(f"initiatives planned in more than one quarter: {', '.join(duplicates)}")
    unknown = sorted(set(plan) - set(QUARTER_IDS))
    if unknown:
        raise ValueError(f"unknown quarter keys in plan: {', '.join(unknown)}")


def locate_item(plan: Plan, item_id: str) -> Tuple[str, WorkItem]:
    found = find_item(plan, item_id)
    if found is None:
        raise ItemNotFound(item_id, "plan")
    quarter_id, _, item = found
    return quarter_id, item


def plan_frame(plan: Plan) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for quarter_id in QUARTER_IDS:
        for position, item in enumerate(plan.get(quarter_id, ()), start=1):
            rows.append(
                {
                    "quarter": quarter_id,
                    "position": position,
                    "id": item.id,
                    "title": item.title,
                    "priority": item.priority_tier(),
                    "category": item.category or "",
                    "assigned_to": item.assigned_to or "",
                }
            )
    return pd.DataFrame(
        rows,
        columns=["quarter", "position", "id", "title", "priority", "category", "assigned_to"],
    )


def assignment_load_frame(plan: Plan, per_assignee: int) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for quarter_id in QUARTER_IDS:
        for person, count in sorted(assignment_load(plan, quarter_id).items()):
            rows.append(
                {
                    "quarter": quarter_id,
                    "assignee": person,
                    "count": count,
                    "at_capacity": count >= per_assignee,
                }
            )
    return pd.DataFrame(rows, columns=["quarter", "assignee", "count", "at_capacity"])
