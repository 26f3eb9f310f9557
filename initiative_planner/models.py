from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Literal, Optional, Tuple


YearType = Literal["fiscal", "calendar"]
Priority = Literal["high", "medium", "low"]
TaskStatus = Literal["not_started", "in_progress", "done"]

QUARTER_IDS: Tuple[str, ...] = ("q1", "q2", "q3", "q4")
PRIORITY_TIERS: Tuple[str, ...] = ("high", "medium", "low")
DEFAULT_PER_QUARTER = 5
DEFAULT_PER_ASSIGNEE = 3


@dataclass(frozen=True)
class Milestone:
    id: str
    description: str = ""
    target_date: Optional[date] = None
    is_completed: bool = False


@dataclass(frozen=True)
class ExecutionTask:
    id: str
    task: str = ""
    assigned_to: Optional[str] = None
    minutes_allocated: int = 0
    due_date: Optional[date] = None
    status: TaskStatus = "not_started"
    order: int = 0


def total_hours_for(tasks: Iterable[ExecutionTask]) -> float:
    minutes = sum(max(task.minutes_allocated, 0) for task in tasks)
    return round(minutes / 60, 1)


@dataclass(frozen=True)
class ExecutionDetail:
    """Execution-only fields layered on top of a planned work item."""

    rationale: str = ""
    outcome: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    milestones: Tuple[Milestone, ...] = ()
    tasks: Tuple[ExecutionTask, ...] = ()
    total_hours: float = 0.0

    def with_tasks(self, tasks: Iterable[ExecutionTask]) -> "ExecutionDetail":
        task_tuple = tuple(tasks)
        return replace(self, tasks=task_tuple, total_hours=total_hours_for(task_tuple))

    def is_empty(self) -> bool:
        return self == ExecutionDetail()


@dataclass(frozen=True)
class WorkItem:
    """Initiative carried by the canonical quarter plan."""

    id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    source: str = "strategic_ideas"
    assigned_to: Optional[str] = None
    detail: Optional[ExecutionDetail] = None

    def priority_tier(self) -> str:
        return self.priority if self.priority in PRIORITY_TIERS else "low"


@dataclass(frozen=True)
class EnrichedWorkItem:
    """Working copy of a work item used during execution planning."""

    item: WorkItem
    detail: ExecutionDetail = field(default_factory=ExecutionDetail)

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def assigned_to(self) -> Optional[str]:
        return self.item.assigned_to

    @classmethod
    def from_work_item(cls, item: WorkItem) -> "EnrichedWorkItem":
        detail = item.detail or ExecutionDetail()
        return cls(item=replace(item, detail=None), detail=detail)

    def to_work_item(self) -> WorkItem:
        return replace(self.item, detail=None if self.detail.is_empty() else self.detail)


@dataclass(frozen=True)
class QuarterInfo:
    id: str
    label: str
    months: str
    title: str
    start_month: int
    end_month: int
    start: datetime
    end: datetime
    is_past: bool
    is_current: bool
    is_next: bool = False
    is_locked: bool = False

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class CapacityConfig:
    per_quarter: int = DEFAULT_PER_QUARTER
    per_assignee: int = DEFAULT_PER_ASSIGNEE


@dataclass(frozen=True)
class PlanningConfig:
    year_type: YearType = "fiscal"
    plan_year: Optional[int] = None
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    debounce_seconds: float = 0.5
    logging_level: str = "INFO"
    target_tolerance_pct: float = 0.05


# Quarter id -> ordered items. Order encodes execution priority within the quarter.
Plan = Dict[str, Tuple[WorkItem, ...]]


def empty_plan() -> Plan:
    return {quarter_id: () for quarter_id in QUARTER_IDS}


def normalize_plan(plan: Dict[str, Iterable[WorkItem]]) -> Plan:
    normalized = empty_plan()
    for quarter_id, items in plan.items():
        normalized[quarter_id] = tuple(items)
    return normalized


def plan_item_ids(plan: Plan) -> List[str]:
    return [item.id for quarter_id in QUARTER_IDS for item in plan.get(quarter_id, ())]


def find_item(plan: Plan, item_id: str) -> Optional[Tuple[str, int, WorkItem]]:
    for quarter_id in QUARTER_IDS:
        for index, item in enumerate(plan.get(quarter_id, ())):
            if item.id == item_id:
                return quarter_id, index, item
    return None
