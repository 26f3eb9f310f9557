"""
Reconciliation between the canonical quarter plan and the enriched working
copy used for execution planning.

Two independent one-way paths keep them aligned:

- derive: canonical -> enriched, run only when the set of item ids in the
  active quarter changes. Enriched-only fields of surviving items are kept.
  Owners changed in the canonical plan are adopted even when the id set is
  not.
- persist: enriched -> canonical, debounced and skipped entirely when the
  content fingerprint matches the last persisted one. The fingerprint is
  recorded before the canonical write is applied, and the write leaves the
  id set untouched, so it never re-triggers a derive.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, replace
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol, Sequence, Tuple

from .engine import ItemNotFound, PlanningError
from .models import (
    EnrichedWorkItem,
    ExecutionDetail,
    ExecutionTask,
    Milestone,
    Plan,
    WorkItem,
    normalize_plan,
)

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.5
_EDITABLE_FIELDS = {"rationale", "outcome", "start_date", "end_date"}


class PersistenceFailure(PlanningError):
    """The persistence collaborator rejected a write; local state is kept."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]
AssignmentCheck = Callable[[Plan, str, Optional[str]], object]


def thread_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class Debouncer:
    """Runs ``callback`` once ``delay`` seconds after the last trigger."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], None],
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.delay = delay
        self._callback = callback
        self._scheduler = scheduler or thread_timer
        self._handle: Optional[TimerHandle] = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._handle is not None

    def trigger(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._generation += 1
            generation = self._generation
            self._handle = self._scheduler(self.delay, lambda: self._fire(generation))

    def cancel(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._handle = None
            self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer that lost the race with cancel()/trigger() is stale.
            if generation != self._generation:
                return
            self._handle = None
        self._callback()


def fingerprint(items: Sequence[EnrichedWorkItem]) -> str:
    """Stable digest of the fields that matter for write-back."""
    payload = [
        {
            "id": item.id,
            "assigned_to": item.assigned_to,
            "rationale": item.detail.rationale,
            "outcome": item.detail.outcome,
            "start_date": item.detail.start_date,
            "end_date": item.detail.end_date,
            "milestones": [asdict(milestone) for milestone in item.detail.milestones],
            "tasks": [asdict(task) for task in item.detail.tasks],
            "total_hours": item.detail.total_hours,
        }
        for item in items
    ]
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def derive_enriched(
    canonical_items: Sequence[WorkItem], previous: Sequence[EnrichedWorkItem]
) -> List[EnrichedWorkItem]:
    """Rebuild the enriched copy from canonical items, keeping local detail."""
    existing: Dict[str, EnrichedWorkItem] = {item.id: item for item in previous}
    derived: List[EnrichedWorkItem] = []
    for canonical in canonical_items:
        current = existing.get(canonical.id)
        if current is None:
            derived.append(EnrichedWorkItem.from_work_item(canonical))
            continue
        refreshed = replace(
            canonical,
            assigned_to=canonical.assigned_to,
            detail=None,
        )
        derived.append(replace(current, item=refreshed))
    return derived


def merge_into(plan: Plan, quarter_id: str, items: Sequence[EnrichedWorkItem]) -> Plan:
    """Write enriched fields back onto the matching canonical items."""
    by_id = {item.id: item for item in items}
    updated = normalize_plan(plan)
    merged: List[WorkItem] = []
    for canonical in updated[quarter_id]:
        enriched = by_id.get(canonical.id)
        if enriched is None:
            merged.append(canonical)
            continue
        merged.append(
            replace(
                canonical,
                assigned_to=enriched.assigned_to,
                detail=enriched.to_work_item().detail,
            )
        )
    updated[quarter_id] = tuple(merged)
    return updated


class ReconciliationSync:
    def __init__(
        self,
        quarter_id: str,
        read_canonical: Callable[[], Plan],
        write_canonical: Callable[[Plan], None],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        scheduler: Optional[Scheduler] = None,
        lock: Optional[threading.RLock] = None,
        check_assignment: Optional[AssignmentCheck] = None,
    ) -> None:
        self.quarter_id = quarter_id
        self._check_assignment = check_assignment
        self._read_canonical = read_canonical
        self._write_canonical = write_canonical
        self._lock = lock or threading.RLock()
        self._items: List[EnrichedWorkItem] = []
        self._known_ids: FrozenSet[str] = frozenset()
        self._canonical_assignees: Dict[str, Optional[str]] = {}
        self._last_persisted: Optional[str] = None
        self.write_count = 0
        self.last_error: Optional[PersistenceFailure] = None
        self._debouncer = Debouncer(debounce_seconds, self.persist, scheduler)
        self.observe_canonical(read_canonical(), force=True)

    @property
    def items(self) -> Tuple[EnrichedWorkItem, ...]:
        with self._lock:
            return tuple(self._items)

    @property
    def write_pending(self) -> bool:
        return self._debouncer.pending

    @property
    def is_dirty(self) -> bool:
        with self._lock:
            return fingerprint(self._items) != self._last_persisted

    def get(self, item_id: str) -> EnrichedWorkItem:
        with self._lock:
            return self._items[self._index_of(item_id)]

    # canonical -> enriched

    def observe_canonical(self, plan: Plan, *, force: bool = False) -> bool:
        """Derive the enriched copy if the active quarter's id set changed."""
        with self._lock:
            canonical_items = plan.get(self.quarter_id, ())
            ids = frozenset(item.id for item in canonical_items)
            if not force and ids == self._known_ids:
                self._refresh_assignees(canonical_items)
                return False
            self._items = derive_enriched(canonical_items, self._items)
            self._known_ids = ids
            self._canonical_assignees = {item.id: item.assigned_to for item in canonical_items}
            self._last_persisted = fingerprint(
                [EnrichedWorkItem.from_work_item(item) for item in canonical_items]
            )
            logger.debug("Derived %d enriched initiatives for %s", len(self._items), self.quarter_id)
            if fingerprint(self._items) != self._last_persisted:
                # Surviving local edits the canonical plan has not seen yet.
                self._debouncer.trigger()
            return True

    def _refresh_assignees(self, canonical_items: Sequence[WorkItem]) -> None:
        """Adopt owners changed in the canonical plan since it was last seen."""
        changed = {
            item.id: item.assigned_to
            for item in canonical_items
            if self._canonical_assignees.get(item.id) != item.assigned_to
        }
        if not changed:
            return
        was_clean = fingerprint(self._items) == self._last_persisted
        self._items = [
            replace(item, item=replace(item.item, assigned_to=changed[item.id]))
            if item.id in changed
            else item
            for item in self._items
        ]
        self._canonical_assignees.update(changed)
        if was_clean:
            self._last_persisted = fingerprint(self._items)
        logger.debug("Refreshed %d assignees in %s", len(changed), self.quarter_id)

    # enriched -> canonical

    def persist(self) -> bool:
        """Write the enriched copy back now. Returns ``True`` if a write happened."""
        with self._lock:
            current = fingerprint(self._items)
            if current == self._last_persisted:
                return False
            merged = merge_into(self._read_canonical(), self.quarter_id, self._items)
            previous = self._last_persisted
            self._last_persisted = current
            try:
                self._write_canonical(merged)
            except PersistenceFailure as exc:
                self._last_persisted = previous
                self.last_error = exc
                logger.warning(
                    "Write-back for %s failed, keeping local changes: %s", self.quarter_id, exc
                )
                return False
            self.last_error = None
            self.write_count += 1
            logger.info("Wrote %d enriched initiatives back to %s", len(self._items), self.quarter_id)
            return True

    def flush(self) -> bool:
        self._debouncer.cancel()
        return self.persist()

    def close(self) -> None:
        self._debouncer.cancel()

    def _changed(self) -> None:
        if fingerprint(self._items) == self._last_persisted:
            self._debouncer.cancel()
            return
        self._debouncer.trigger()

    # local edits

    def _index_of(self, item_id: str) -> int:
        for index, item in enumerate(self._items):
            if item.id == item_id:
                return index
        raise ItemNotFound(item_id, f"execution plan for {self.quarter_id}")

    def _replace_detail(self, item_id: str, detail: ExecutionDetail) -> EnrichedWorkItem:
        index = self._index_of(item_id)
        updated = replace(self._items[index], detail=detail)
        self._items[index] = updated
        self._changed()
        return updated

    def update_item(self, item_id: str, **changes: object) -> EnrichedWorkItem:
        unknown = set(changes) - _EDITABLE_FIELDS - {"assigned_to"}
        if unknown:
            raise ValueError(f"cannot edit fields: {', '.join(sorted(unknown))}")
        with self._lock:
            index = self._index_of(item_id)
            current = self._items[index]
            item = current.item
            if "assigned_to" in changes:
                assignee = changes.pop("assigned_to") or None
                if assignee != item.assigned_to and self._check_assignment is not None:
                    # Raises before anything changes if the owner is at capacity.
                    planned = merge_into(self._read_canonical(), self.quarter_id, self._items)
                    self._check_assignment(planned, item_id, assignee)
                item = replace(item, assigned_to=assignee)
            detail = replace(current.detail, **changes) if changes else current.detail
            self._items[index] = replace(current, item=item, detail=detail)
            self._changed()
            return self._items[index]

    def add_milestone(
        self, item_id: str, description: str = "", target_date=None
    ) -> Milestone:
        with self._lock:
            detail = self._items[self._index_of(item_id)].detail
            milestone = Milestone(
                id=f"milestone-{uuid.uuid4().hex[:12]}",
                description=description,
                target_date=target_date,
            )
            self._replace_detail(item_id, replace(detail, milestones=detail.milestones + (milestone,)))
            return milestone

    def update_milestone(self, item_id: str, milestone_id: str, **changes: object) -> Milestone:
        with self._lock:
            detail = self._items[self._index_of(item_id)].detail
            milestones = list(detail.milestones)
            for idx, milestone in enumerate(milestones):
                if milestone.id == milestone_id:
                    milestones[idx] = replace(milestone, **changes)
                    self._replace_detail(item_id, replace(detail, milestones=tuple(milestones)))
                    return milestones[idx]
            raise ItemNotFound(milestone_id, f"milestones of {item_id}")

    def remove_milestone(self, item_id: str, milestone_id: str) -> None:
        with self._lock:
            detail = self._items[self._index_of(item_id)].detail
            remaining = tuple(m for m in detail.milestones if m.id != milestone_id)
            if len(remaining) == len(detail.milestones):
                raise ItemNotFound(milestone_id, f"milestones of {item_id}")
            self._replace_detail(item_id, replace(detail, milestones=remaining))

    def add_task(
        self,
        item_id: str,
        task: str = "",
        assigned_to: Optional[str] = None,
        minutes_allocated: int = 0,
        due_date=None,
    ) -> ExecutionTask:
        with self._lock:
            detail = self._items[self._index_of(item_id)].detail
            new_task = ExecutionTask(
                id=f"task-{uuid.uuid4().hex[:12]}",
                task=task,
                assigned_to=assigned_to,
                minutes_allocated=minutes_allocated,
                due_date=due_date,
                order=len(detail.tasks) + 1,
            )
            self._replace_detail(item_id, detail.with_tasks(detail.tasks + (new_task,)))
            return new_task

    def update_task(self, item_id: str, task_id: str, **changes: object) -> ExecutionTask:
        with self._lock:
            detail = self._items[self._index_of(item_id)].detail
            tasks = list(detail.tasks)
            for idx, task in enumerate(tasks):
                if task.id == task_id:
                    tasks[idx] = replace(task, **changes)
                    self._replace_detail(item_id, detail.with_tasks(tasks))
                    return tasks[idx]
            raise ItemNotFound(task_id, f"tasks of {item_id}")

    def remove_task(self, item_id: str, task_id: str) -> None:
        with self._lock:
            detail = self._items[self._index_of(item_id)].detail
            remaining = [t for t in detail.tasks if t.id != task_id]
            if len(remaining) == len(detail.tasks):
                raise ItemNotFound(task_id, f"tasks of {item_id}")
            self._replace_detail(item_id, detail.with_tasks(remaining))

    def rename_items(self, mapping: Dict[str, str]) -> None:
        """Apply server-assigned ids without treating them as new items."""
        with self._lock:
            if not mapping:
                return
            was_clean = fingerprint(self._items) == self._last_persisted
            self._items = [
                replace(item, item=replace(item.item, id=mapping.get(item.id, item.id)))
                for item in self._items
            ]
            self._known_ids = frozenset(mapping.get(item_id, item_id) for item_id in self._known_ids)
            self._canonical_assignees = {
                mapping.get(item_id, item_id): assignee
                for item_id, assignee in self._canonical_assignees.items()
            }
            if was_clean:
                self._last_persisted = fingerprint(self._items)
