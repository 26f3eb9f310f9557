from datetime import datetime, timedelta

import pytest

from initiative_planner.quarters import (
    available_quarters,
    compute_quarters,
    determine_plan_year,
    locked_quarter_ids,
    next_planning_quarter,
    normalize_year_type,
    planning_quarter,
)


def test_fiscal_q1_starts_july_of_previous_year():
    quarters = compute_quarters("fiscal", 2026, now=datetime(2025, 1, 1))
    q1 = quarters[0]
    assert q1.id == "q1"
    assert q1.start == datetime(2025, 7, 1)
    assert q1.end == datetime(2025, 9, 30, 23, 59, 59, 999999)
    assert [q.start.year for q in quarters] == [2025, 2025, 2026, 2026]
    assert quarters[3].end == datetime(2026, 6, 30, 23, 59, 59, 999999)


def test_calendar_quarters_follow_plan_year():
    quarters = compute_quarters("calendar", 2026, now=datetime(2025, 1, 1))
    assert [q.start for q in quarters] == [
        datetime(2026, 1, 1),
        datetime(2026, 4, 1),
        datetime(2026, 7, 1),
        datetime(2026, 10, 1),
    ]
    assert [q.months for q in quarters] == ["Jan-Mar", "Apr-Jun", "Jul-Sep", "Oct-Dec"]


@pytest.mark.parametrize("year_type", ["fiscal", "calendar"])
@pytest.mark.parametrize("plan_year", [2024, 2025, 2026, 2030])
def test_quarters_are_contiguous_with_single_current(year_type, plan_year):
    now = datetime(2025, 8, 15, 12, 0)
    quarters = compute_quarters(year_type, plan_year, now=now)
    assert len(quarters) == 4
    for previous, following in zip(quarters, quarters[1:]):
        assert following.start == previous.end + timedelta(microseconds=1)
    assert sum(q.is_current for q in quarters) <= 1
    assert sum(q.is_next for q in quarters) <= 1
    assert not any(q.is_next and q.is_locked for q in quarters)


def test_flags_mid_quarter():
    quarters = compute_quarters("fiscal", 2026, now=datetime(2025, 11, 3))
    by_id = {q.id: q for q in quarters}
    assert by_id["q1"].is_past and by_id["q1"].is_locked
    assert by_id["q2"].is_current and by_id["q2"].is_locked
    assert by_id["q3"].is_next and not by_id["q3"].is_locked
    assert not by_id["q4"].is_next
    assert locked_quarter_ids(quarters) == ("q1", "q2")


def test_end_day_is_inclusive():
    last_moment = datetime(2025, 9, 30, 23, 59, 59, 999999)
    quarters = compute_quarters("fiscal", 2026, now=last_moment)
    assert quarters[0].is_current and not quarters[0].is_past

    quarters = compute_quarters("fiscal", 2026, now=datetime(2025, 10, 1))
    assert quarters[0].is_past
    assert quarters[1].is_current


def test_last_quarter_current_has_no_next_in_set():
    quarters = compute_quarters("fiscal", 2026, now=datetime(2026, 5, 10))
    assert quarters[3].is_current
    assert not any(q.is_next for q in quarters)
    # Falls back to the current quarter when nothing follows inside the year.
    assert planning_quarter(quarters).id == "q4"


def test_next_planning_quarter_rolls_into_following_year():
    year, quarter = next_planning_quarter("fiscal", 2026, now=datetime(2026, 5, 10))
    assert year == 2027
    assert quarter.id == "q1"
    assert quarter.start == datetime(2026, 7, 1)
    assert not quarter.is_locked

    year, quarter = next_planning_quarter("calendar", 2026, now=datetime(2026, 2, 1))
    assert (year, quarter.id) == (2026, "q2")


def test_elapsed_year_has_no_current_quarter():
    quarters = compute_quarters("calendar", 2020, now=datetime(2025, 3, 1))
    assert all(q.is_past and q.is_locked for q in quarters)
    assert not any(q.is_current or q.is_next for q in quarters)
    assert available_quarters("calendar", 2020, now=datetime(2025, 3, 1)) == []


def test_future_year_uses_first_quarter_for_planning():
    quarters = compute_quarters("calendar", 2030, now=datetime(2025, 3, 1))
    assert not any(q.is_locked for q in quarters)
    assert planning_quarter(quarters).id == "q1"


def test_available_quarters_drop_past_ones():
    quarters = available_quarters("fiscal", 2026, now=datetime(2025, 11, 3))
    assert [q.id for q in quarters] == ["q2", "q3", "q4"]


@pytest.mark.parametrize(
    "year_type, now, expected",
    [
        ("fiscal", datetime(2025, 8, 1), 2026),
        ("fiscal", datetime(2025, 6, 30), 2025),
        ("fiscal", datetime(2026, 3, 1), 2026),
        ("calendar", datetime(2025, 10, 31), 2025),
        ("calendar", datetime(2025, 11, 5), 2026),
        ("calendar", datetime(2026, 1, 2), 2026),
    ],
)
def test_determine_plan_year(year_type, now, expected):
    assert determine_plan_year(year_type, now) == expected


def test_year_type_aliases():
    assert normalize_year_type("FY") == "fiscal"
    assert normalize_year_type(" Calendar ") == "calendar"
    with pytest.raises(ValueError):
        normalize_year_type("weekly")


def test_quarter_titles_and_month_bounds():
    quarters = compute_quarters("fiscal", 2026, now=datetime(2025, 1, 1))
    assert [q.title for q in quarters] == ["Foundation", "Execution", "Scaling", "Planning"]
    assert [(q.start_month, q.end_month) for q in quarters] == [(7, 9), (10, 12), (1, 3), (4, 6)]
    assert quarters[0].contains(datetime(2025, 8, 1))
