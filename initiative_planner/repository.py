"""
Persistence collaborators for planning sessions.

Rows are keyed by an opaque business id and a step (``selection`` for the
initiatives chosen in the earlier wizard stage, ``q1``..``q4`` for the
quarter plan). ``save`` is idempotent and returns a mapping of any
server-assigned ids so the session can adopt them.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import threading
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from .io_utils import format_optional_date, parse_optional_date, write_csv
from .models import (
    QUARTER_IDS,
    ExecutionDetail,
    ExecutionTask,
    Milestone,
    Plan,
    WorkItem,
    empty_plan,
)
from .sync import PersistenceFailure
from .targets import QuarterlyTargets, normalize_targets

logger = logging.getLogger(__name__)

SELECTION_STEP = "selection"
INITIATIVE_COLUMNS = [
    "business_id",
    "step_type",
    "order_index",
    "id",
    "title",
    "description",
    "category",
    "priority",
    "source",
    "assigned_to",
    "rationale",
    "outcome",
    "start_date",
    "end_date",
    "milestones",
    "tasks",
    "total_hours",
]
TARGET_COLUMNS = ["business_id", "metric", *QUARTER_IDS]
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


@dataclass(frozen=True)
class PlanSnapshot:
    selection: Tuple[WorkItem, ...] = ()
    plan: Plan = field(default_factory=empty_plan)
    targets: QuarterlyTargets = field(default_factory=dict)


class PlanRepository(Protocol):
    def load(self, business_id: str) -> PlanSnapshot: ...

    def save(
        self,
        business_id: str,
        plan: Plan,
        targets: QuarterlyTargets,
        selection: Sequence[WorkItem] = (),
    ) -> Dict[str, str]: ...


def is_server_id(value: str) -> bool:
    return bool(_UUID_RE.match(value or ""))


class InMemoryPlanRepository:
    """Dictionary-backed repository; returns rows exactly as saved."""

    def __init__(self, snapshots: Optional[Dict[str, PlanSnapshot]] = None) -> None:
        self._snapshots: Dict[str, PlanSnapshot] = dict(snapshots or {})
        self._lock = threading.Lock()
        self.save_count = 0

    def load(self, business_id: str) -> PlanSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(business_id)
            return copy.deepcopy(snapshot) if snapshot else PlanSnapshot()

    def save(
        self,
        business_id: str,
        plan: Plan,
        targets: QuarterlyTargets,
        selection: Sequence[WorkItem] = (),
    ) -> Dict[str, str]:
        with self._lock:
            self._snapshots[business_id] = PlanSnapshot(
                selection=tuple(selection),
                plan={key: tuple(items) for key, items in plan.items()},
                targets=copy.deepcopy(targets),
            )
            self.save_count += 1
        return {}


def _detail_to_row(detail: Optional[ExecutionDetail]) -> Dict[str, object]:
    detail = detail or ExecutionDetail()
    milestones = [
        {**asdict(m), "target_date": format_optional_date(m.target_date)} for m in detail.milestones
    ]
    tasks = [{**asdict(t), "due_date": format_optional_date(t.due_date)} for t in detail.tasks]
    return {
        "rationale": detail.rationale,
        "outcome": detail.outcome,
        "start_date": format_optional_date(detail.start_date),
        "end_date": format_optional_date(detail.end_date),
        "milestones": json.dumps(milestones) if milestones else "",
        "tasks": json.dumps(tasks) if tasks else "",
        "total_hours": detail.total_hours or "",
    }


def _detail_from_row(row: Dict[str, str]) -> Optional[ExecutionDetail]:
    milestones = tuple(
        Milestone(
            id=str(entry["id"]),
            description=str(entry.get("description") or ""),
            target_date=parse_optional_date(entry.get("target_date"), "milestones.target_date"),
            is_completed=bool(entry.get("is_completed", False)),
        )
        for entry in json.loads(row.get("milestones") or "[]")
    )
    tasks = tuple(
        ExecutionTask(
            id=str(entry["id"]),
            task=str(entry.get("task") or ""),
            assigned_to=entry.get("assigned_to") or None,
            minutes_allocated=int(entry.get("minutes_allocated") or 0),
            due_date=parse_optional_date(entry.get("due_date"), "tasks.due_date"),
            status=entry.get("status") or "not_started",
            order=int(entry.get("order") or 0),
        )
        for entry in json.loads(row.get("tasks") or "[]")
    )
    detail = ExecutionDetail(
        rationale=row.get("rationale") or "",
        outcome=row.get("outcome") or "",
        start_date=parse_optional_date(row.get("start_date"), "start_date"),
        end_date=parse_optional_date(row.get("end_date"), "end_date"),
        milestones=milestones,
        tasks=tasks,
        total_hours=float(row.get("total_hours") or 0.0),
    )
    return None if detail.is_empty() else detail


def _item_to_row(business_id: str, step: str, index: int, item: WorkItem) -> Dict[str, object]:
    return {
        "business_id": business_id,
        "step_type": step,
        "order_index": index,
        "id": item.id,
        "title": item.title or "Untitled",
        "description": item.description or "",
        "category": item.category or "",
        "priority": item.priority or "",
        "source": item.source or step,
        "assigned_to": item.assigned_to or "",
        **_detail_to_row(item.detail),
    }


def _item_from_row(row: Dict[str, str]) -> WorkItem:
    return WorkItem(
        id=row["id"],
        title=row.get("title") or "Untitled",
        description=row.get("description") or None,
        category=row.get("category") or None,
        priority=row.get("priority") or None,
        source=row.get("source") or "strategic_ideas",
        assigned_to=row.get("assigned_to") or None,
        detail=_detail_from_row(row),
    )


class CsvPlanRepository:
    """Stores every business in two CSV files under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.initiatives_path = self.root / "initiatives.csv"
        self.targets_path = self.root / "quarterly_targets.csv"
        self._lock = threading.Lock()

    def _read(self, path: Path, columns: List[str]) -> pd.DataFrame:
        if not path.exists():
            return pd.DataFrame(columns=columns)
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        for column in columns:
            if column not in df.columns:
                df[column] = ""
        return df[columns]

    @staticmethod
    def _replace_together(frames: Dict[Path, pd.DataFrame]) -> None:
        """Write every frame to a scratch file first, then swap them all in."""
        staged = {path: path.with_name(path.name + ".tmp") for path in frames}
        try:
            for path, df in frames.items():
                write_csv(df, staged[path])
            for path, scratch in staged.items():
                os.replace(scratch, path)
        finally:
            for scratch in staged.values():
                if scratch.exists():
                    scratch.unlink()

    def load(self, business_id: str) -> PlanSnapshot:
        with self._lock:
            initiatives = self._read(self.initiatives_path, INITIATIVE_COLUMNS)
            targets_df = self._read(self.targets_path, TARGET_COLUMNS)
        rows = initiatives[initiatives["business_id"] == business_id].copy()
        rows["order_index"] = pd.to_numeric(rows["order_index"], errors="coerce").fillna(0).astype(int)
        rows = rows.sort_values(["step_type", "order_index"], kind="stable")
        selection: List[WorkItem] = []
        plan = empty_plan()
        for step, group in rows.groupby("step_type", sort=False):
            items = tuple(_item_from_row(record) for record in group.to_dict("records"))
            if step == SELECTION_STEP:
                selection.extend(items)
            elif step in QUARTER_IDS:
                plan[step] = items
            else:
                logger.warning("Ignoring rows with unknown step '%s' for %s", step, business_id)
        raw_targets = {
            record["metric"]: {quarter_id: record[quarter_id] for quarter_id in QUARTER_IDS}
            for record in targets_df[targets_df["business_id"] == business_id].to_dict("records")
        }
        logger.debug("Loaded %d planned initiatives for %s", sum(len(v) for v in plan.values()), business_id)
        return PlanSnapshot(selection=tuple(selection), plan=plan, targets=normalize_targets(raw_targets))

    def _assign_ids(self, items: Iterable[WorkItem], mapping: Dict[str, str]) -> None:
        for item in items:
            if not is_server_id(item.id) and item.id not in mapping:
                mapping[item.id] = str(uuid.uuid4())

    def save(
        self,
        business_id: str,
        plan: Plan,
        targets: QuarterlyTargets,
        selection: Sequence[WorkItem] = (),
    ) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        self._assign_ids(selection, mapping)
        for quarter_id in QUARTER_IDS:
            self._assign_ids(plan.get(quarter_id, ()), mapping)

        def _rows(step: str, items: Sequence[WorkItem]) -> List[Dict[str, object]]:
            rows = []
            for index, item in enumerate(items):
                row = _item_to_row(business_id, step, index, item)
                row["id"] = mapping.get(item.id, item.id)
                rows.append(row)
            return rows

        new_rows = _rows(SELECTION_STEP, selection)
        for quarter_id in QUARTER_IDS:
            new_rows.extend(_rows(quarter_id, plan.get(quarter_id, ())))
        new_targets = [
            {"business_id": business_id, "metric": metric, **{q: ("" if v is None else v) for q, v in row.items()}}
            for metric, row in sorted(targets.items())
        ]
        try:
            with self._lock:
                initiatives = self._read(self.initiatives_path, INITIATIVE_COLUMNS)
                kept = initiatives[initiatives["business_id"] != business_id]
                targets_df = self._read(self.targets_path, TARGET_COLUMNS)
                kept_targets = targets_df[targets_df["business_id"] != business_id]
                self._replace_together(
                    {
                        self.initiatives_path: pd.concat(
                            [kept, pd.DataFrame(new_rows, columns=INITIATIVE_COLUMNS)]
                        ),
                        self.targets_path: pd.concat(
                            [kept_targets, pd.DataFrame(new_targets, columns=TARGET_COLUMNS)]
                        ),
                    }
                )
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"could not save plan for {business_id}: {exc}", exc) from exc
        logger.debug("Saved %d rows for %s (%d new ids)", len(new_rows), business_id, len(mapping))
        return mapping
