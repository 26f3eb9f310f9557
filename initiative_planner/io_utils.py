from __future__ import annotations

import json
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd
from dateutil import parser as dateparser

from .models import PRIORITY_TIERS, CapacityConfig, PlanningConfig, WorkItem
from .quarters import normalize_year_type

DATE_FMT = "%Y-%m-%d"

_INITIATIVE_REQUIRED_COLUMNS = {"id", "title"}
_INITIATIVE_OPTIONAL_COLUMNS = ("description", "category", "priority", "source", "assigned_to")


def _require_columns(df: pd.DataFrame, required: Iterable[str], source: str) -> None:
    missing = [col for col in sorted(required) if col not in df.columns]
    if missing:
        raise ValueError(f"{source} missing required columns: {', '.join(missing)}")


def _is_blank(value: object) -> bool:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return True
    return isinstance(value, str) and value.strip() == ""


def _optional_str(value: object) -> Optional[str]:
    return None if _is_blank(value) else str(value).strip()


def parse_optional_date(value: object, field_name: str) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if _is_blank(value):
        return None
    try:
        return dateparser.isoparse(str(value)).date()
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid date in '{field_name}': {value}") from exc


def format_optional_date(value: Optional[date]) -> str:
    return value.strftime(DATE_FMT) if value else ""


def load_initiatives(path: str | Path) -> pd.DataFrame:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    if df.empty:
        raise ValueError("initiatives file is empty")
    _require_columns(df, _INITIATIVE_REQUIRED_COLUMNS, "initiatives.csv")
    for column in _INITIATIVE_OPTIONAL_COLUMNS:
        if column not in df.columns:
            df[column] = ""
    if (df["id"].str.strip() == "").any():
        raise ValueError("column 'id' contains blank values")
    duplicated = df.loc[df["id"].duplicated(), "id"].tolist()
    if duplicated:
        raise ValueError(f"duplicate initiative ids: {', '.join(duplicated)}")
    df["priority"] = df["priority"].str.strip().str.lower()
    invalid = sorted(set(df["priority"]) - set(PRIORITY_TIERS) - {""})
    if invalid:
        raise ValueError(f"unsupported priority values: {', '.join(invalid)}")
    df["input_row"] = df.index + 1
    return df


def initiatives_from_df(df: pd.DataFrame) -> List[WorkItem]:
    items: List[WorkItem] = []
    for row in df.sort_values("input_row").itertuples(index=False):
        items.append(
            WorkItem(
                id=str(row.id).strip(),
                title=str(row.title).strip() or "Untitled",
                description=_optional_str(row.description),
                category=_optional_str(row.category),
                priority=_optional_str(row.priority),
                source=_optional_str(row.source) or "strategic_ideas",
                assigned_to=_optional_str(row.assigned_to),
            )
        )
    return items


def _positive_int(data: dict, key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    value_int = int(value)
    if value_int <= 0:
        raise ValueError(f"{key} must be positive")
    return value_int


def load_config(path: str | Path) -> PlanningConfig:
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("config file must be a JSON object")
    try:
        year_type = normalize_year_type(data.get("year_type", "fiscal"))
    except ValueError as exc:
        raise ValueError(f"year_type: {exc}") from exc
    plan_year = data.get("plan_year")
    if plan_year is not None and (isinstance(plan_year, bool) or not isinstance(plan_year, int)):
        raise ValueError("plan_year must be an integer if provided")
    capacity_cfg = data.get("capacity") or {}
    if not isinstance(capacity_cfg, dict):
        raise ValueError("capacity must be an object")
    defaults = CapacityConfig()
    capacity = CapacityConfig(
        per_quarter=_positive_int(capacity_cfg, "per_quarter", defaults.per_quarter),
        per_assignee=_positive_int(capacity_cfg, "per_assignee", defaults.per_assignee),
    )
    debounce = data.get("debounce_seconds", 0.5)
    if isinstance(debounce, bool) or not isinstance(debounce, (int, float)) or debounce < 0:
        raise ValueError("debounce_seconds must be a non-negative number")
    tolerance = data.get("target_tolerance_pct", 0.05)
    if isinstance(tolerance, bool) or not isinstance(tolerance, (int, float)):
        raise ValueError("target_tolerance_pct must be a number")
    if not (0 <= float(tolerance) <= 1):
        raise ValueError("target_tolerance_pct must be in [0, 1]")
    logging_level = data.get("logging_level", "INFO")
    if not isinstance(logging_level, str):
        raise ValueError("logging_level must be a string")
    return PlanningConfig(
        year_type=year_type,
        plan_year=plan_year,
        capacity=capacity,
        debounce_seconds=float(debounce),
        logging_level=logging_level,
        target_tolerance_pct=float(tolerance),
    )


def ensure_directory(path: str | Path) -> Path:
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target


def write_csv(df: pd.DataFrame, path: str | Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
