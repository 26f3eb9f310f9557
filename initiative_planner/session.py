"""
Planning session: owns the canonical quarter plan and quarterly targets for
one business and routes every change through the allocation engine, the
execution-plan reconciliation and the persistence collaborator.

All public methods are safe to call from request threads; the session and
its execution sync share one re-entrant lock so a debounced write-back
fired from a timer thread is sequenced with user actions.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .engine import (
    DistributionResult,
    ItemNotFound,
    PlanningError,
    UnknownQuarter,
    assign_person,
    assignment_load,
    distribute_by_priority,
    move_between_quarters,
    people_at_capacity,
    place_in_quarter,
    quarter_status,
    remove_from_quarter,
    unassigned_items,
    validate_plan,
)
from .models import (
    QUARTER_IDS,
    EnrichedWorkItem,
    Plan,
    PlanningConfig,
    QuarterInfo,
    WorkItem,
    find_item,
    normalize_plan,
)
from .quarters import (
    Clock,
    compute_quarters,
    determine_plan_year,
    locked_quarter_ids,
    planning_quarter,
)
from .repository import PlanRepository
from .sync import PersistenceFailure, ReconciliationSync, Scheduler
from .targets import (
    QuarterlyTargets,
    TargetTotals,
    has_any_target,
    monthly_breakdown,
    normalize_targets,
    quarterly_total,
    update_target,
)

logger = logging.getLogger(__name__)


class InvalidQuarterTransition(PlanningError):
    def __init__(self, quarter_id: str, action: str) -> None:
        super().__init__(f"Quarter {quarter_id} is locked; cannot {action}")
        self.quarter_id = quarter_id
        self.action = action


@dataclass(frozen=True)
class QuarterColumn:
    """One quarter of the allocation board as shown to the user."""

    quarter: QuarterInfo
    items: Tuple[WorkItem, ...]
    capacity: int
    status: str
    assignment_load: Dict[str, int]
    people_at_capacity: Tuple[str, ...]

    @property
    def remaining(self) -> int:
        return max(self.capacity - len(self.items), 0)

    @property
    def is_full(self) -> bool:
        return self.status == "full"


@dataclass(frozen=True)
class CompletionChecklist:
    has_targets: bool
    all_quarters_planned: bool
    counts: Dict[str, int]
    unassigned_count: int

    @property
    def fully_distributed(self) -> bool:
        return self.unassigned_count == 0

    @property
    def is_complete(self) -> bool:
        return self.has_targets and self.all_quarters_planned


class PlanningSession:
    def __init__(
        self,
        business_id: str,
        repository: PlanRepository,
        config: Optional[PlanningConfig] = None,
        now: Clock = datetime.now,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.business_id = business_id
        self.config = config or PlanningConfig()
        self._repository = repository
        self._now = now
        self._scheduler = scheduler
        self._lock = threading.RLock()
        snapshot = repository.load(business_id)
        plan = normalize_plan(snapshot.plan)
        validate_plan(plan)
        self._selection: Tuple[WorkItem, ...] = tuple(snapshot.selection)
        self._plan: Plan = plan
        self._targets: QuarterlyTargets = normalize_targets(snapshot.targets)
        self._sync: Optional[ReconciliationSync] = None
        self.has_unsaved_changes = False
        self.last_error: Optional[PersistenceFailure] = None
        self.save_count = 0
        logger.debug(
            "Opened session for %s (%d selected, %d planned)",
            business_id,
            len(self._selection),
            sum(len(items) for items in plan.values()),
        )

    @classmethod
    def open(
        cls,
        business_id: str,
        repository: PlanRepository,
        config: Optional[PlanningConfig] = None,
        now: Clock = datetime.now,
        scheduler: Optional[Scheduler] = None,
        selection: Optional[Sequence[WorkItem]] = None,
    ) -> "PlanningSession":
        """Load a session and optionally replace its selected initiatives."""
        session = cls(business_id, repository, config=config, now=now, scheduler=scheduler)
        if selection is not None:
            try:
                session.replace_selection(selection)
            except PersistenceFailure:
                logger.warning("Selection for %s kept locally until the next save", business_id)
        return session

    # read-only projections

    @property
    def plan_year(self) -> int:
        if self.config.plan_year is not None:
            return self.config.plan_year
        return determine_plan_year(self.config.year_type, self._now())

    @property
    def plan(self) -> Plan:
        with self._lock:
            return dict(self._plan)

    @property
    def selection(self) -> Tuple[WorkItem, ...]:
        with self._lock:
            return self._selection

    @property
    def targets(self) -> QuarterlyTargets:
        with self._lock:
            return copy.deepcopy(self._targets)

    def quarters(self) -> List[QuarterInfo]:
        return compute_quarters(self.config.year_type, self.plan_year, self._now())

    def quarter(self, quarter_id: str) -> QuarterInfo:
        for info in self.quarters():
            if info.id == quarter_id:
                return info
        raise UnknownQuarter(quarter_id)

    @property
    def planning_quarter(self) -> QuarterInfo:
        return planning_quarter(self.quarters())

    def board(self) -> List[QuarterColumn]:
        per_quarter = self.config.capacity.per_quarter
        per_assignee = self.config.capacity.per_assignee
        with self._lock:
            plan = self._plan
            return [
                QuarterColumn(
                    quarter=info,
                    items=plan[info.id],
                    capacity=per_quarter,
                    status=quarter_status(plan, info.id, per_quarter),
                    assignment_load=assignment_load(plan, info.id),
                    people_at_capacity=tuple(sorted(people_at_capacity(plan, info.id, per_assignee))),
                )
                for info in self.quarters()
            ]

    def assignment_load(self, quarter_id: str) -> Dict[str, int]:
        with self._lock:
            return assignment_load(self._plan, quarter_id)

    def unassigned_items(self) -> List[WorkItem]:
        with self._lock:
            return unassigned_items(self._selection, self._plan)

    def checklist(self) -> CompletionChecklist:
        with self._lock:
            open_quarters = [info.id for info in self.quarters() if not info.is_locked]
            counts = {quarter_id: len(self._plan[quarter_id]) for quarter_id in QUARTER_IDS}
            return CompletionChecklist(
                has_targets=has_any_target(self._targets, open_quarters),
                all_quarters_planned=all(counts[quarter_id] > 0 for quarter_id in open_quarters),
                counts=counts,
                unassigned_count=len(unassigned_items(self._selection, self._plan)),
            )

    def quarterly_total(self, metric: str, annual: float) -> TargetTotals:
        with self._lock:
            return quarterly_total(self._targets, metric, annual, self.config.target_tolerance_pct)

    def monthly_breakdown(self, quarter_id: str) -> List[Dict[str, float]]:
        with self._lock:
            return monthly_breakdown(self._targets, quarter_id)

    # allocation

    def _require_unlocked(self, quarter_id: str, action: str) -> None:
        if self.quarter(quarter_id).is_locked:
            logger.info("Rejected %s: quarter %s is locked", action, quarter_id)
            raise InvalidQuarterTransition(quarter_id, action)

    def _selected_item(self, item_id: str) -> WorkItem:
        found = find_item(self._plan, item_id)
        if found is not None:
            return found[2]
        for item in self._selection:
            if item.id == item_id:
                return item
        raise ItemNotFound(item_id, "selection")

    def place(self, item_id: str, quarter_id: str) -> Plan:
        with self._lock:
            self._require_unlocked(quarter_id, f"place {item_id}")
            found = find_item(self._plan, item_id)
            if found is not None and found[0] != quarter_id:
                self._require_unlocked(found[0], f"move {item_id} out")
            item = self._selected_item(item_id)
            plan = place_in_quarter(self._plan, item, quarter_id, self.config.capacity)
            self._commit(plan=plan)
            return self.plan

    def move(
        self, item_id: str, from_quarter: str, to_quarter: str, index: Optional[int] = None
    ) -> Plan:
        with self._lock:
            self._require_unlocked(from_quarter, f"move {item_id} out")
            if to_quarter != from_quarter:
                self._require_unlocked(to_quarter, f"move {item_id} in")
            plan = move_between_quarters(
                self._plan, item_id, from_quarter, to_quarter, index, self.config.capacity
            )
            self._commit(plan=plan)
            return self.plan

    def remove(self, item_id: str, quarter_id: str) -> Plan:
        with self._lock:
            self._require_unlocked(quarter_id, f"remove {item_id}")
            self._commit(plan=remove_from_quarter(self._plan, item_id, quarter_id))
            return self.plan

    def assign(self, item_id: str, quarter_id: str, assignee_id: Optional[str]) -> Plan:
        with self._lock:
            if self._sync is not None and self._sync.quarter_id == quarter_id:
                # Owner edits still waiting in the execution copy count towards the cap.
                self._sync.flush()
            plan = assign_person(
                self._plan, item_id, quarter_id, assignee_id or None, self.config.capacity
            )
            self._commit(plan=plan)
            return self.plan

    def distribute_by_priority(self) -> DistributionResult:
        """Spread every selected item not sitting in a locked quarter."""
        with self._lock:
            locked = locked_quarter_ids(self.quarters())
            kept_ids = {item.id for quarter_id in locked for item in self._plan[quarter_id]}
            current = {item.id: item for items in self._plan.values() for item in items}
            candidates = [
                current.get(item.id, item) for item in self._selection if item.id not in kept_ids
            ]
            result = distribute_by_priority(
                candidates, self.config.capacity.per_quarter, skip_quarters=locked
            )
            plan = dict(result.plan)
            for quarter_id in locked:
                plan[quarter_id] = self._plan[quarter_id]
            if result.unplaced:
                logger.info(
                    "%d initiatives did not fit in the open quarters", result.unplaced_count
                )
            distributed = DistributionResult(plan=plan, unplaced=result.unplaced)
            self._commit(plan=plan)
            return distributed

    def replace_selection(self, items: Iterable[WorkItem]) -> None:
        """Swap the selected initiatives, dropping plan entries no longer selected."""
        with self._lock:
            selection = tuple(items)
            keep = {item.id for item in selection}
            plan = {
                quarter_id: tuple(item for item in self._plan[quarter_id] if item.id in keep)
                for quarter_id in QUARTER_IDS
            }
            self._commit(plan=plan, selection=selection)

    # targets

    def update_target(self, metric: str, quarter_id: str, value: object) -> QuarterlyTargets:
        with self._lock:
            self._commit(targets=update_target(self._targets, metric, quarter_id, value))
            return self.targets

    # execution planning

    @property
    def execution(self) -> ReconciliationSync:
        """Enriched working copy for the planning quarter, created on first use.

        When the planning quarter rolls over, pending edits for the old quarter
        are flushed and a fresh copy is derived for the new one.
        """
        with self._lock:
            quarter_id = self.planning_quarter.id
            if self._sync is not None and self._sync.quarter_id != quarter_id:
                logger.info(
                    "Planning quarter moved from %s to %s", self._sync.quarter_id, quarter_id
                )
                self._sync.flush()
                self._sync.close()
                self._sync = None
            if self._sync is None:
                self._sync = ReconciliationSync(
                    quarter_id,
                    read_canonical=lambda: self._plan,
                    write_canonical=self._write_canonical,
                    debounce_seconds=self.config.debounce_seconds,
                    scheduler=self._scheduler,
                    lock=self._lock,
                    check_assignment=lambda plan, item_id, assignee_id: assign_person(
                        plan, item_id, quarter_id, assignee_id, self.config.capacity
                    ),
                )
            return self._sync

    def execution_items(self) -> Tuple[EnrichedWorkItem, ...]:
        return self.execution.items

    def _write_canonical(self, plan: Plan) -> None:
        self._commit(plan=plan)

    # persistence

    def _commit(
        self,
        plan: Optional[Plan] = None,
        targets: Optional[QuarterlyTargets] = None,
        selection: Optional[Tuple[WorkItem, ...]] = None,
    ) -> None:
        """Apply new state, let the execution copy observe it, then save.

        State is applied before saving; a ``PersistenceFailure`` only reports
        that the save is outstanding.
        """
        if plan is not None:
            self._plan = normalize_plan(plan)
        if targets is not None:
            self._targets = targets
        if selection is not None:
            self._selection = selection
        if self._sync is not None and plan is not None:
            self._sync.observe_canonical(self._plan)
        self._save()

    def _save(self) -> None:
        try:
            mapping = self._repository.save(
                self.business_id, self._plan, self._targets, self._selection
            )
        except PersistenceFailure as exc:
            self.has_unsaved_changes = True
            self.last_error = exc
            logger.warning("Save for %s failed, changes kept locally: %s", self.business_id, exc)
            raise
        self.has_unsaved_changes = False
        self.last_error = None
        self.save_count += 1
        if mapping:
            self._apply_id_remap(mapping)

    def _apply_id_remap(self, mapping: Dict[str, str]) -> None:
        def _renamed(items: Iterable[WorkItem]) -> Tuple[WorkItem, ...]:
            return tuple(replace(item, id=mapping.get(item.id, item.id)) for item in items)

        self._selection = _renamed(self._selection)
        self._plan = {quarter_id: _renamed(self._plan[quarter_id]) for quarter_id in QUARTER_IDS}
        if self._sync is not None:
            self._sync.rename_items(mapping)
        logger.debug("Adopted %d server-assigned ids for %s", len(mapping), self.business_id)

    def save(self) -> bool:
        """Flush pending execution edits and save. Returns ``False`` on failure."""
        with self._lock:
            try:
                if self._sync is not None and self._sync.is_dirty:
                    if self._sync.flush():
                        return True
                    if self._sync.last_error is not None:
                        return False
                self._save()
            except PersistenceFailure:
                return False
            return True

    def retry_save(self) -> bool:
        with self._lock:
            if not self.has_unsaved_changes and not (self._sync and self._sync.is_dirty):
                return True
            return self.save()

    def close(self) -> bool:
        with self._lock:
            saved = self.retry_save()
            if self._sync is not None:
                self._sync.close()
            return saved
