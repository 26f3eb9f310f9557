from __future__ import annotations

import logging
import os
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from flask import Flask, jsonify, request

from initiative_planner.engine import AllocationError, ItemNotFound, PlanningError, UnknownQuarter
from initiative_planner.io_utils import load_config, parse_optional_date
from initiative_planner.models import PlanningConfig
from initiative_planner.repository import CsvPlanRepository
from initiative_planner.session import InvalidQuarterTransition, PlanningSession
from initiative_planner.sync import PersistenceFailure

from .sessions import SessionStore

logger = logging.getLogger(__name__)

_TASK_STATUSES = ("not_started", "in_progress", "done")
_MILESTONE_FIELDS = {"description", "target_date", "is_completed"}
_TASK_FIELDS = {"task", "assigned_to", "minutes_allocated", "due_date", "status", "order"}
_ITEM_FIELDS = {"rationale", "outcome", "start_date", "end_date", "assigned_to"}


class BadPayload(ValueError):
    pass


def _default_plans_root() -> Path:
    return (Path(__file__).resolve().parent.parent / "plans").resolve()


def _resolve_plans_root() -> Path:
    env_value = os.getenv("PLANS_ROOT")
    if env_value:
        return Path(env_value).expanduser().resolve()
    return _default_plans_root()


def _resolve_config() -> PlanningConfig:
    env_value = os.getenv("PLANNER_CONFIG")
    if env_value:
        return load_config(Path(env_value).expanduser())
    return PlanningConfig()


def _jsonable(value: object) -> object:
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value


def _payload() -> Dict[str, object]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadPayload("request body must be a JSON object")
    return data


def _required(data: Dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise BadPayload(f"{key} is required")
    return value.strip()


def _pick_fields(data: Dict[str, object], allowed: set, what: str) -> Dict[str, object]:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise BadPayload(f"unsupported {what} fields: {', '.join(unknown)}")
    changes = dict(data)
    for key in ("start_date", "end_date", "target_date", "due_date"):
        if key in changes:
            changes[key] = parse_optional_date(changes[key], key)
    if "minutes_allocated" in changes:
        minutes = changes["minutes_allocated"]
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 0:
            raise BadPayload("minutes_allocated must be a non-negative integer")
    if "order" in changes and (isinstance(changes["order"], bool) or not isinstance(changes["order"], int)):
        raise BadPayload("order must be an integer")
    if "status" in changes and changes["status"] not in _TASK_STATUSES:
        raise BadPayload(f"status must be one of {', '.join(_TASK_STATUSES)}")
    if "is_completed" in changes and not isinstance(changes["is_completed"], bool):
        raise BadPayload("is_completed must be a boolean")
    for key in ("description", "task", "rationale", "outcome"):
        if key in changes and not isinstance(changes[key], str):
            raise BadPayload(f"{key} must be a string")
    if "assigned_to" in changes:
        owner = changes["assigned_to"]
        if owner is not None and not isinstance(owner, str):
            raise BadPayload("assigned_to must be a string or null")
        changes["assigned_to"] = owner or None
    return changes


def _board_payload(session: PlanningSession) -> Dict[str, object]:
    columns = [
        {
            "quarter": _jsonable(column.quarter),
            "items": _jsonable(column.items),
            "capacity": column.capacity,
            "remaining": column.remaining,
            "status": column.status,
            "assignment_load": column.assignment_load,
            "people_at_capacity": list(column.people_at_capacity),
        }
        for column in session.board()
    ]
    checklist = session.checklist()
    return {
        "business_id": session.business_id,
        "plan_year": session.plan_year,
        "year_type": session.config.year_type,
        "quarters": columns,
        "unassigned": _jsonable(session.unassigned_items()),
        "checklist": {
            **_jsonable(checklist),
            "fully_distributed": checklist.fully_distributed,
            "is_complete": checklist.is_complete,
        },
        "saved": not session.has_unsaved_changes,
    }


def _execution_payload(session: PlanningSession) -> Dict[str, object]:
    sync = session.execution
    return {
        "business_id": session.business_id,
        "quarter_id": sync.quarter_id,
        "items": [
            {**_jsonable(item.item), "detail": _jsonable(item.detail)} for item in sync.items
        ],
        "write_pending": sync.write_pending,
        "saved": not (session.has_unsaved_changes or sync.last_error is not None),
    }


def _error(message: str, status: int, **extra: object) -> Tuple[object, int]:
    return jsonify({"error": message, **extra}), status


def create_app(session_store: Optional[SessionStore] = None) -> Flask:
    app = Flask(__name__)
    if session_store is None:
        plans_root = _resolve_plans_root()
        session_store = SessionStore(CsvPlanRepository(plans_root), config=_resolve_config())
        app.config["PLANS_ROOT"] = plans_root
    app.config["SESSION_STORE"] = session_store
    store = session_store

    @app.errorhandler(PersistenceFailure)
    def persistence_failed(exc: PersistenceFailure):
        business_id = (request.view_args or {}).get("business_id")
        logger.info("Request %s %s kept changes locally: %s", request.method, request.path, exc)
        payload: Dict[str, object] = {"saved": False, "error": "Changes kept locally; sync will resume"}
        if business_id:
            payload.update(_board_payload(store.get(business_id)))
            payload["saved"] = False
        return jsonify(payload), 202

    @app.errorhandler(ItemNotFound)
    @app.errorhandler(UnknownQuarter)
    def not_found(exc: AllocationError):
        return _error(str(exc), 404)

    @app.errorhandler(AllocationError)
    @app.errorhandler(InvalidQuarterTransition)
    def conflict(exc: PlanningError):
        return _error(str(exc), 409, kind=type(exc).__name__)

    @app.errorhandler(ValueError)
    def bad_request(exc: ValueError):
        return _error(str(exc), 400)

    @app.get("/api/<business_id>/quarters")
    def quarters(business_id: str):
        session = store.get(business_id)
        return jsonify(
            {
                "plan_year": session.plan_year,
                "year_type": session.config.year_type,
                "planning_quarter": session.planning_quarter.id,
                "quarters": _jsonable(session.quarters()),
            }
        )

    @app.get("/api/<business_id>/board")
    def board(business_id: str):
        return jsonify(_board_payload(store.get(business_id)))

    @app.post("/api/<business_id>/place")
    def place(business_id: str):
        data = _payload()
        session = store.get(business_id)
        session.place(_required(data, "item_id"), _required(data, "quarter_id"))
        return jsonify(_board_payload(session))

    @app.post("/api/<business_id>/move")
    def move(business_id: str):
        data = _payload()
        index = data.get("index")
        if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
            raise BadPayload("index must be an integer")
        session = store.get(business_id)
        session.move(
            _required(data, "item_id"),
            _required(data, "from_quarter"),
            _required(data, "to_quarter"),
            index,
        )
        return jsonify(_board_payload(session))

    @app.post("/api/<business_id>/remove")
    def remove(business_id: str):
        data = _payload()
        session = store.get(business_id)
        session.remove(_required(data, "item_id"), _required(data, "quarter_id"))
        return jsonify(_board_payload(session))

    @app.post("/api/<business_id>/assign")
    def assign(business_id: str):
        data = _payload()
        assignee = data.get("assignee_id")
        if assignee is not None and not isinstance(assignee, str):
            raise BadPayload("assignee_id must be a string or null")
        session = store.get(business_id)
        session.assign(_required(data, "item_id"), _required(data, "quarter_id"), assignee)
        return jsonify(_board_payload(session))

    @app.post("/api/<business_id>/distribute")
    def distribute(business_id: str):
        session = store.get(business_id)
        result = session.distribute_by_priority()
        payload = _board_payload(session)
        payload["unplaced"] = [item.id for item in result.unplaced]
        return jsonify(payload)

    @app.get("/api/<business_id>/targets")
    def get_targets(business_id: str):
        session = store.get(business_id)
        return jsonify({"targets": session.targets, "saved": not session.has_unsaved_changes})

    @app.post("/api/<business_id>/targets")
    def set_target(business_id: str):
        data = _payload()
        if "value" not in data:
            raise BadPayload("value is required")
        session = store.get(business_id)
        targets = session.update_target(
            _required(data, "metric"), _required(data, "quarter_id"), data["value"]
        )
        return jsonify({"targets": targets, "saved": True})

    @app.get("/api/<business_id>/targets/<metric>/total")
    def target_total(business_id: str, metric: str):
        annual = request.args.get("annual", type=float)
        if annual is None:
            raise BadPayload("annual query parameter is required")
        totals = store.get(business_id).quarterly_total(metric, annual)
        return jsonify(_jsonable(totals))

    @app.get("/api/<business_id>/targets/monthly/<quarter_id>")
    def target_monthly(business_id: str, quarter_id: str):
        return jsonify({"months": store.get(business_id).monthly_breakdown(quarter_id)})

    @app.get("/api/<business_id>/execution")
    def execution(business_id: str):
        return jsonify(_execution_payload(store.get(business_id)))

    @app.patch("/api/<business_id>/execution/<item_id>")
    def edit_execution_item(business_id: str, item_id: str):
        changes = _pick_fields(_payload(), _ITEM_FIELDS, "initiative")
        session = store.get(business_id)
        session.execution.update_item(item_id, **changes)
        return jsonify(_execution_payload(session))

    @app.post("/api/<business_id>/execution/<item_id>/milestones")
    def add_milestone(business_id: str, item_id: str):
        changes = _pick_fields(_payload(), {"description", "target_date"}, "milestone")
        session = store.get(business_id)
        milestone = session.execution.add_milestone(item_id, **changes)
        return jsonify({"milestone": _jsonable(milestone), **_execution_payload(session)}), 201

    @app.patch("/api/<business_id>/execution/<item_id>/milestones/<milestone_id>")
    def edit_milestone(business_id: str, item_id: str, milestone_id: str):
        changes = _pick_fields(_payload(), _MILESTONE_FIELDS, "milestone")
        session = store.get(business_id)
        session.execution.update_milestone(item_id, milestone_id, **changes)
        return jsonify(_execution_payload(session))

    @app.delete("/api/<business_id>/execution/<item_id>/milestones/<milestone_id>")
    def delete_milestone(business_id: str, item_id: str, milestone_id: str):
        session = store.get(business_id)
        session.execution.remove_milestone(item_id, milestone_id)
        return jsonify(_execution_payload(session))

    @app.post("/api/<business_id>/execution/<item_id>/tasks")
    def add_task(business_id: str, item_id: str):
        changes = _pick_fields(
            _payload(), {"task", "assigned_to", "minutes_allocated", "due_date"}, "task"
        )
        session = store.get(business_id)
        task = session.execution.add_task(item_id, **changes)
        return jsonify({"task": _jsonable(task), **_execution_payload(session)}), 201

    @app.patch("/api/<business_id>/execution/<item_id>/tasks/<task_id>")
    def edit_task(business_id: str, item_id: str, task_id: str):
        changes = _pick_fields(_payload(), _TASK_FIELDS, "task")
        session = store.get(business_id)
        session.execution.update_task(item_id, task_id, **changes)
        return jsonify(_execution_payload(session))

    @app.delete("/api/<business_id>/execution/<item_id>/tasks/<task_id>")
    def delete_task(business_id: str, item_id: str, task_id: str):
        session = store.get(business_id)
        session.execution.remove_task(item_id, task_id)
        return jsonify(_execution_payload(session))

    @app.post("/api/<business_id>/save")
    def save(business_id: str):
        session = store.get(business_id)
        saved = session.retry_save()
        payload = _board_payload(session)
        payload["saved"] = saved
        return jsonify(payload), (200 if saved else 202)

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
