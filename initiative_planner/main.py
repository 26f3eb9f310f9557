from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from . import engine
from .io_utils import ensure_directory, initiatives_from_df, load_config, load_initiatives, write_csv
from .models import QuarterInfo, WorkItem
from .repository import CsvPlanRepository, InMemoryPlanRepository, PlanRepository
from .session import PlanningSession, QuarterColumn
from .sync import PersistenceFailure


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Quarterly initiative planning batch tool (CSV in/out, no UI)."
    )
    parser.add_argument(
        "--project-dir",
        help="Business directory containing input/ and output/ subfolders",
    )
    parser.add_argument(
        "--initiatives", help="Path to selected initiatives CSV (overrides project-dir default)"
    )
    parser.add_argument("--config", help="Path to configuration JSON file (overrides project-dir default)")
    parser.add_argument(
        "--outdir",
        default=None,
        help="Output directory for generated files (default: <project-dir>/output or ./out)",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="Directory holding the saved plan CSVs; without it the plan is not persisted",
    )
    parser.add_argument("--business-id", default="default", help="Business the plan belongs to")
    parser.add_argument("--plan-year", type=int, help="Override config.plan_year")
    parser.add_argument(
        "--distribute",
        action="store_true",
        help="Spread initiatives over the open quarters by priority before writing",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail if any initiative is left without a quarter",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan and print the quarter board without writing output files",
    )
    return parser.parse_args(argv)


def _resolve_io_paths(args: argparse.Namespace) -> Tuple[Path, Path, Path]:
    project_dir = Path(args.project_dir).resolve() if args.project_dir else None
    if project_dir and not project_dir.exists():
        raise ValueError(f"project directory not found: {project_dir}")
    input_dir = project_dir / "input" if project_dir else None

    def _pick(path_value: Optional[str], default_name: str) -> Optional[Path]:
        if path_value:
            return Path(path_value)
        if input_dir:
            return input_dir / default_name
        return None

    initiatives_path = _pick(args.initiatives, "initiatives.csv")
    config_path = _pick(args.config, "config.json")

    missing = [
        name
        for name, value in (("initiatives", initiatives_path), ("config", config_path))
        if value is None
    ]
    if missing:
        joined = ", ".join(f"--{name}" for name in missing)
        raise ValueError(f"missing required input paths: {joined} (or provide --project-dir)")

    for label, path in (("initiatives", initiatives_path), ("config", config_path)):
        if not path.exists():
            raise ValueError(f"{label} file not found at {path}")

    if args.outdir:
        outdir = Path(args.outdir)
    elif project_dir:
        outdir = project_dir / "output"
    else:
        outdir = Path("out")

    return initiatives_path, config_path, outdir


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(message)s")


def _quarter_heading(info: QuarterInfo) -> str:
    flags = []
    if info.is_locked:
        flags.append("locked")
    if info.is_next:
        flags.append("next")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"{info.label} {info.title} ({info.months} {info.start.year}){suffix}"


def _print_board(board: List[QuarterColumn], unplaced: List[WorkItem]) -> None:
    for column in board:
        print(f"{_quarter_heading(column.quarter)}: {len(column.items)}/{column.capacity}")
        if not column.items:
            print("  (empty)")
        for position, item in enumerate(column.items, start=1):
            owner = f" @{item.assigned_to}" if item.assigned_to else ""
            print(f"  {position}. {item.id} {item.title} [{item.priority_tier()}]{owner}")
    if unplaced:
        print("\nUnplaced initiatives:")
        for item in unplaced:
            print(f"- {item.id} {item.title} [{item.priority_tier()}]")
    else:
        print("\nUnplaced initiatives: none")


def _write_unplaced_markdown(
    unplaced: List[WorkItem], board: List[QuarterColumn], outdir: Path
) -> Path:
    path = outdir / "unplaced_items.md"
    lines: List[str] = ["# Unplaced Initiatives", ""]
    if not unplaced:
        lines.append("All initiatives were placed.")
    else:
        open_columns = [column for column in board if not column.quarter.is_locked]
        full = [column.quarter.label for column in open_columns if column.is_full]
        for item in unplaced:
            lines.append(f"- **{item.id} – {item.title}**")
            lines.append(f"  - Priority: {item.priority_tier()}")
            if item.category:
                lines.append(f"  - Category: {item.category}")
            if not open_columns:
                lines.append("  - Reason: every quarter of the plan year is locked")
            elif full and len(full) == len(open_columns):
                lines.append(f"  - Reason: open quarters at capacity ({', '.join(full)})")
            else:
                lines.append("  - Reason: not yet placed in a quarter")
            lines.append("")
    path.write_text("\n".join(lines).strip() + "\n")
    return path


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    try:
        initiatives_path, config_path, outdir = _resolve_io_paths(args)
        items = initiatives_from_df(load_initiatives(initiatives_path))
        cfg = load_config(config_path)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)
    if args.plan_year is not None:
        cfg = replace(cfg, plan_year=args.plan_year)
    _configure_logging(cfg.logging_level)

    repository: PlanRepository = (
        CsvPlanRepository(args.store) if args.store else InMemoryPlanRepository()
    )
    try:
        session = PlanningSession.open(args.business_id, repository, config=cfg, selection=items)
        if args.distribute:
            session.distribute_by_priority()
    except PersistenceFailure:
        pass
    except (engine.PlanningError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)
    if session.has_unsaved_changes:
        print(f"Plan could not be saved: {session.last_error}", file=sys.stderr)

    board = session.board()
    unplaced = session.unassigned_items()
    if args.strict and unplaced:
        ids = ", ".join(item.id for item in unplaced)
        print(f"{len(unplaced)} initiatives left without a quarter: {ids}", file=sys.stderr)
        sys.exit(1)

    if args.dry_run:
        _print_board(board, unplaced)
        return

    outdir_path = ensure_directory(outdir)
    plan_path = outdir_path / "quarter_plan.csv"
    load_path = outdir_path / "assignment_load.csv"
    write_csv(engine.plan_frame(session.plan), plan_path)
    write_csv(engine.assignment_load_frame(session.plan, cfg.capacity.per_assignee), load_path)
    unplaced_path = _write_unplaced_markdown(unplaced, board, outdir_path)
    print(f"Wrote {plan_path}")
    print(f"Wrote {load_path}")
    print(f"Wrote {unplaced_path}")
    if unplaced:
        print("Unplaced initiatives:")
        for item in unplaced:
            print(f"- {item.id} {item.title}")


if __name__ == "__main__":
    main()
