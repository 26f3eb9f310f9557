"""
Shared fixtures: fixed clocks, a scheduler that only fires debounced
callbacks when told to, and a repository whose saves can be made to fail.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from initiative_planner.models import Plan, PlanningConfig, WorkItem, empty_plan
from initiative_planner.repository import InMemoryPlanRepository, PlanSnapshot
from initiative_planner.sync import PersistenceFailure
from initiative_planner.targets import QuarterlyTargets


class ManualHandle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Collects scheduled callbacks; ``fire_all`` runs the live ones in order."""

    def __init__(self) -> None:
        self.handles: List[ManualHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> List[ManualHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def fire_all(self) -> int:
        fired = 0
        for handle in self.live:
            handle.fired = True
            handle.callback()
            fired += 1
        return fired


class FailingRepository(InMemoryPlanRepository):
    """In-memory repository whose saves raise while ``failing`` is set."""

    def __init__(self, snapshots: Optional[Dict[str, PlanSnapshot]] = None) -> None:
        super().__init__(snapshots)
        self.failing = False
        self.attempts = 0

    def save(
        self,
        business_id: str,
        plan: Plan,
        targets: QuarterlyTargets,
        selection: Sequence[WorkItem] = (),
    ) -> Dict[str, str]:
        self.attempts += 1
        if self.failing:
            raise PersistenceFailure("backend unavailable")
        return super().save(business_id, plan, targets, selection)


def make_item(item_id: str, priority: Optional[str] = "high", **kwargs) -> WorkItem:
    return WorkItem(id=item_id, title=f"Initiative {item_id}", priority=priority, **kwargs)


def make_plan(**quarters: Sequence[WorkItem]) -> Plan:
    plan = empty_plan()
    for quarter_id, items in quarters.items():
        plan[quarter_id] = tuple(items)
    return plan


@pytest.fixture
def clock():
    """Factory for fixed time sources."""

    def _clock(*args: int) -> Callable[[], datetime]:
        moment = datetime(*args)
        return lambda: moment

    return _clock


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def fiscal_config() -> PlanningConfig:
    return PlanningConfig(year_type="fiscal", plan_year=2026, debounce_seconds=0.5)


@pytest.fixture
def selection() -> List[WorkItem]:
    return [
        make_item("h1", "high", category="growth"),
        make_item("h2", "high"),
        make_item("m1", "medium"),
        make_item("l1", "low"),
        make_item("m2", "medium"),
        make_item("h3", "high"),
    ]


@pytest.fixture
def repository(selection) -> FailingRepository:
    return FailingRepository({"biz-1": PlanSnapshot(selection=tuple(selection))})
