from datetime import date

import pandas as pd
import pytest

from conftest import make_item, make_plan
from initiative_planner import repository as repository_module
from initiative_planner.models import ExecutionDetail, ExecutionTask, Milestone, empty_plan
from initiative_planner.repository import CsvPlanRepository, InMemoryPlanRepository, is_server_id
from initiative_planner.sync import PersistenceFailure
from initiative_planner.targets import normalize_targets

SERVER_ID = "7a1d5e2c-3b4f-4a6e-8c9d-0e1f2a3b4c5d"


def test_load_missing_business_returns_empty_snapshot(tmp_path):
    snapshot = CsvPlanRepository(tmp_path).load("nobody")
    assert snapshot.selection == ()
    assert snapshot.plan == empty_plan()
    assert snapshot.targets == {}


def test_round_trip_with_execution_detail(tmp_path):
    detail = ExecutionDetail(
        rationale="Largest revenue lever",
        outcome="20 new accounts",
        start_date=date(2025, 10, 1),
        end_date=date(2025, 12, 15),
        milestones=(Milestone(id="m-1", description="Pilot", target_date=date(2025, 11, 1)),),
        tasks=(
            ExecutionTask(
                id="t-1",
                task="Draft offer",
                assigned_to="pat",
                minutes_allocated=90,
                due_date=date(2025, 10, 10),
                status="in_progress",
                order=1,
            ),
        ),
        total_hours=1.5,
    )
    planned = make_item(SERVER_ID, "high", category="growth", assigned_to="pat", detail=detail)
    other = make_item("8b2e6f3d-4c5a-4b7f-9d0e-1f2a3b4c5d6e", "low")
    targets = normalize_targets({"revenue": {"q2": 100000}, "gross_margin": {"q2": 40.5}})
    repository = CsvPlanRepository(tmp_path)

    mapping = repository.save("biz", make_plan(q2=[planned, other]), targets, [planned, other])
    assert mapping == {}

    snapshot = repository.load("biz")
    assert snapshot.plan["q2"] == (planned, other)
    assert snapshot.selection == (planned, other)
    assert snapshot.targets["revenue"] == {"q1": None, "q2": 100000.0, "q3": None, "q4": None}
    assert snapshot.targets["gross_margin"]["q2"] == 40.5


def test_client_ids_receive_server_ids(tmp_path):
    repository = CsvPlanRepository(tmp_path)
    local = make_item("idea-1")
    kept = make_item(SERVER_ID)
    mapping = repository.save("biz", make_plan(q3=[local, kept]), {}, [local, kept])
    assert set(mapping) == {"idea-1"}
    assert is_server_id(mapping["idea-1"])

    snapshot = repository.load("biz")
    assert [item.id for item in snapshot.plan["q3"]] == [mapping["idea-1"], SERVER_ID]
    assert [item.id for item in snapshot.selection] == [mapping["idea-1"], SERVER_ID]


def test_save_is_idempotent_and_isolated_per_business(tmp_path):
    repository = CsvPlanRepository(tmp_path)
    item = make_item(SERVER_ID)
    repository.save("a", make_plan(q1=[item]), {}, [item])
    repository.save("b", make_plan(q4=[item]), {}, [item])
    repository.save("a", make_plan(q1=[item]), {}, [item])

    rows = pd.read_csv(tmp_path / "initiatives.csv", dtype=str, keep_default_na=False)
    assert len(rows) == 4
    assert repository.load("a").plan["q1"] == (item,)
    assert repository.load("b").plan["q4"] == (item,)


def test_order_index_is_preserved(tmp_path):
    ids = [
        "00000000-0000-4000-8000-00000000000%d" % n for n in range(3)
    ]
    items = [make_item(item_id) for item_id in reversed(ids)]
    repository = CsvPlanRepository(tmp_path)
    repository.save("biz", make_plan(q2=items), {}, [])
    assert [item.id for item in repository.load("biz").plan["q2"]] == list(reversed(ids))


def test_write_failure_is_wrapped(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied")
    repository = CsvPlanRepository(blocker)
    with pytest.raises(PersistenceFailure) as excinfo:
        repository.save("biz", make_plan(q1=[make_item(SERVER_ID)]), {}, [])
    assert isinstance(excinfo.value.cause, OSError)


def test_failed_save_leaves_both_files_untouched(tmp_path, monkeypatch):
    repository = CsvPlanRepository(tmp_path)
    item = make_item(SERVER_ID)
    repository.save("biz", make_plan(q1=[item]), normalize_targets({"revenue": {"q1": 10}}), [item])

    real_write = repository_module.write_csv

    def targets_disk_full(df, path):
        if path.name.startswith("quarterly_targets"):
            raise OSError("disk full")
        real_write(df, path)

    monkeypatch.setattr(repository_module, "write_csv", targets_disk_full)
    with pytest.raises(PersistenceFailure):
        repository.save(
            "biz", make_plan(q2=[item]), normalize_targets({"revenue": {"q1": 99}}), [item]
        )

    snapshot = repository.load("biz")
    assert snapshot.plan["q1"] == (item,)
    assert snapshot.plan["q2"] == ()
    assert snapshot.targets["revenue"]["q1"] == 10.0
    assert list(tmp_path.glob("*.tmp")) == []


def test_in_memory_repository_returns_copies():
    repository = InMemoryPlanRepository()
    targets = normalize_targets({"revenue": {"q1": 5}})
    repository.save("biz", make_plan(q1=[make_item("a")]), targets, [])
    targets["revenue"]["q1"] = 99.0
    snapshot = repository.load("biz")
    assert snapshot.targets["revenue"]["q1"] == 5.0
    assert repository.save_count == 1
