import json

import pandas as pd
import pytest

from initiative_planner.io_utils import initiatives_from_df, load_config, load_initiatives
from initiative_planner.main import main


def _write_inputs(root, rows, config=None):
    input_dir = root / "input"
    input_dir.mkdir(parents=True)
    lines = ["id,title,description,category,priority,assigned_to"]
    lines.extend(rows)
    (input_dir / "initiatives.csv").write_text("\n".join(lines) + "\n")
    cfg = {"year_type": "calendar", "plan_year": 2030, "logging_level": "WARNING"}
    cfg.update(config or {})
    (input_dir / "config.json").write_text(json.dumps(cfg))
    return root


@pytest.fixture
def project_dir(tmp_path):
    rows = [f"h{n},High {n},,growth,high," for n in range(7)]
    rows.append("m1,Medium one,Some detail,ops,Medium,pat")
    rows.append("l1,Low one,,,low,")
    return _write_inputs(tmp_path / "biz", rows)


def test_writes_outputs(project_dir, capsys):
    main(["--project-dir", str(project_dir), "--distribute"])
    outdir = project_dir / "output"
    plan = pd.read_csv(outdir / "quarter_plan.csv", dtype=str, keep_default_na=False)
    assert list(plan.loc[plan["quarter"] == "q1", "id"]) == ["h0", "h1", "h2", "h3", "h4"]
    assert list(plan.loc[plan["quarter"] == "q2", "id"]) == ["h5", "h6", "m1"]
    assert list(plan.loc[plan["quarter"] == "q3", "id"]) == ["l1"]
    load = pd.read_csv(outdir / "assignment_load.csv")
    assert load.to_dict("records") == [
        {"quarter": "q2", "assignee": "pat", "count": 1, "at_capacity": False}
    ]
    assert "All initiatives were placed." in (outdir / "unplaced_items.md").read_text()
    assert "Wrote" in capsys.readouterr().out


def test_dry_run_prints_board(project_dir, capsys):
    main(["--project-dir", str(project_dir), "--distribute", "--dry-run"])
    out = capsys.readouterr().out
    assert "Q1 Foundation (Jan-Mar 2030): 5/5" in out
    assert "1. h0 High 0 [high]" in out
    assert "Unplaced initiatives: none" in out
    assert not (project_dir / "output").exists()


def test_strict_fails_when_items_do_not_fit(tmp_path, capsys):
    rows = [f"h{n},High {n},,,high," for n in range(5)]
    root = _write_inputs(tmp_path / "biz", rows, {"capacity": {"per_quarter": 1}})
    with pytest.raises(SystemExit) as excinfo:
        main(["--project-dir", str(root), "--distribute", "--strict"])
    assert excinfo.value.code == 1
    assert "h4" in capsys.readouterr().err


def test_unplaced_report_without_distribution(project_dir):
    main(["--project-dir", str(project_dir)])
    report = (project_dir / "output" / "unplaced_items.md").read_text()
    assert "**m1 – Medium one**" in report
    assert "Reason: not yet placed in a quarter" in report


def test_store_persists_plan(project_dir, tmp_path):
    store = tmp_path / "store"
    main(["--project-dir", str(project_dir), "--distribute", "--store", str(store)])
    rows = pd.read_csv(store / "initiatives.csv", dtype=str, keep_default_na=False)
    assert set(rows["step_type"]) == {"selection", "q1", "q2", "q3"}
    # Client ids are swapped for server-assigned ones on save.
    assert "h0" not in set(rows["id"])


def test_missing_inputs_exit_with_usage_error(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--project-dir", str(tmp_path)])
    assert excinfo.value.code == 2
    assert "initiatives file not found" in capsys.readouterr().err


def test_load_initiatives_validation(tmp_path):
    path = tmp_path / "initiatives.csv"
    path.write_text("id,title,priority\na,One,HIGH\nb,Two,\n")
    items = initiatives_from_df(load_initiatives(path))
    assert [(item.id, item.priority) for item in items] == [("a", "high"), ("b", None)]

    path.write_text("id,title,priority\na,One,urgent\n")
    with pytest.raises(ValueError, match="urgent"):
        load_initiatives(path)
    path.write_text("id,title\na,One\na,Again\n")
    with pytest.raises(ValueError, match="duplicate"):
        load_initiatives(path)
    path.write_text("title\nOne\n")
    with pytest.raises(ValueError, match="id"):
        load_initiatives(path)


def test_load_config_validation(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"year_type": "FY", "capacity": {"per_quarter": 4}}))
    cfg = load_config(path)
    assert cfg.year_type == "fiscal"
    assert cfg.capacity.per_quarter == 4
    assert cfg.capacity.per_assignee == 3
    assert cfg.plan_year is None

    for bad in (
        {"year_type": "lunar"},
        {"plan_year": "2026"},
        {"capacity": {"per_assignee": 0}},
        {"debounce_seconds": -1},
        {"target_tolerance_pct": 2},
    ):
        path.write_text(json.dumps(bad))
        with pytest.raises(ValueError):
            load_config(path)
