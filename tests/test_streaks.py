"""Tests for check-in dates and the streak engine."""

from datetime import date, datetime, timedelta, timezone

import pytest

from errors import AlreadyCheckedInError, ValidationError
from models import Habit, Notification
from streaks import (
    StreakEngine,
    is_date_valid_for_habit,
    normalize_date,
    reset_lapsed_streaks,
)

START = date(2024, 3, 1)


def _check_in(db, engine, habit, day):
    result = engine.update_streak(habit, day)
    db.commit()
    return result


# --- Recurrence rule ---

def test_daily_accepts_any_day():
    habit = Habit(frequency_type="daily")
    assert is_date_valid_for_habit(habit, date(2024, 3, 2)) is True


def test_weekly_only_listed_weekdays():
    habit = Habit(frequency_type="weekly", frequency_days=["mon", "wed"])
    assert is_date_valid_for_habit(habit, date(2024, 3, 4)) is True   # Monday
    assert is_date_valid_for_habit(habit, date(2024, 3, 5)) is False  # Tuesday


def test_monthly_only_listed_dates():
    habit = Habit(frequency_type="monthly", frequency_dates=[1, 15])
    assert is_date_valid_for_habit(habit, date(2024, 3, 15)) is True
    assert is_date_valid_for_habit(habit, date(2024, 3, 16)) is False


def test_unknown_rule_rejected():
    habit = Habit(frequency_type="yearly")
    assert is_date_valid_for_habit(habit, date(2024, 3, 1)) is False


# --- Date normalization ---

def test_aware_datetime_uses_user_timezone():
    moment = datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc)
    assert normalize_date(moment, "Asia/Tokyo") == date(2024, 1, 2)
    assert normalize_date(moment, "UTC") == date(2024, 1, 1)


def test_naive_datetime_is_utc():
    assert normalize_date(datetime(2024, 1, 1, 23, 30), "America/New_York") == date(2024, 1, 1)


def test_date_and_string_pass_through():
    assert normalize_date(date(2024, 2, 29)) == date(2024, 2, 29)
    assert normalize_date("2024-02-29") == date(2024, 2, 29)


def test_invalid_string_raises():
    with pytest.raises(ValidationError):
        normalize_date("yesterday")


def test_unknown_timezone_falls_back_to_utc():
    moment = datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc)
    assert normalize_date(moment, "Mars/Olympus") == date(2024, 1, 1)


# --- Streak engine ---

def test_consecutive_days_build_streak(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    engine = StreakEngine(db, notifier)

    for i in range(5):
        result = _check_in(db, engine, habit, START + timedelta(days=i))

    assert result.streak == 5
    assert habit.streak == 5
    assert habit.longest_streak == 5
    assert habit.total_completions == 5
    assert habit.completed_dates[-1] == "2024-03-05"


def test_duplicate_date_rejected_without_changes(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    engine = StreakEngine(db, notifier)
    _check_in(db, engine, habit, START)

    with pytest.raises(AlreadyCheckedInError) as exc:
        engine.update_streak(habit, START)
    db.rollback()
    db.refresh(habit)

    assert exc.value.date == "2024-03-01"
    assert habit.completed_dates == ["2024-03-01"]
    assert habit.streak == 1
    assert habit.total_completions == 1


def test_gap_breaks_streak_and_notifies(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    engine = StreakEngine(db, notifier)
    for i in range(5):
        _check_in(db, engine, habit, START + timedelta(days=i))

    result = _check_in(db, engine, habit, START + timedelta(days=7))
    engine.notify_streak_break(habit, result)
    db.commit()

    assert result.broken is True
    assert result.previous_streak == 5
    assert habit.streak == 1
    assert habit.longest_streak == 5

    notification = db.query(Notification).filter(Notification.user_id == habit.user_id).one()
    assert notification.type == "streak"
    assert notification.data == {"habit_id": habit.id, "streak": 5}


def test_first_check_in_is_not_a_break(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    result = _check_in(db, StreakEngine(db, notifier), habit, START)
    assert result.streak == 1
    assert result.broken is False


def test_longest_streak_never_decreases(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    engine = StreakEngine(db, notifier)
    days = [0, 1, 2, 5, 6, 10]
    longest = []
    for offset in days:
        _check_in(db, engine, habit, START + timedelta(days=offset))
        longest.append(habit.longest_streak)

    assert longest == sorted(longest)
    assert habit.longest_streak == 3
    assert habit.streak == 1


def test_backfill_fills_hole(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    engine = StreakEngine(db, notifier)
    for offset in (0, 1, 3):
        _check_in(db, engine, habit, START + timedelta(days=offset))
    assert habit.streak == 1

    result = _check_in(db, engine, habit, START + timedelta(days=2))

    assert result.backfilled is True
    assert result.broken is False
    assert habit.streak == 4
    assert habit.longest_streak == 4
    assert habit.total_completions == 4


def test_versioned_update_bumps_version(db, notifier, make_user, make_habit):
    habit = make_habit(make_user())
    version = habit.version_id
    _check_in(db, StreakEngine(db, notifier), habit, START)
    assert habit.version_id == version + 1


# --- Nightly reset ---

def test_reset_lapsed_streaks(db, notifier, make_user, make_habit):
    user = make_user()
    lapsed = make_habit(user, name="Run", streak=2, longest_streak=4,
                        completed_dates=["2024-03-06", "2024-03-07"])
    fresh = make_habit(user, name="Read", streak=3, longest_streak=3,
                       completed_dates=["2024-03-07", "2024-03-08", "2024-03-09"])

    count = reset_lapsed_streaks(db, notifier, now=datetime(2024, 3, 10, 12, 0))

    assert count == 1
    db.refresh(lapsed)
    db.refresh(fresh)
    assert lapsed.streak == 0
    assert lapsed.longest_streak == 4
    assert fresh.streak == 3

    notification = db.query(Notification).one()
    assert notification.data == {"habit_id": lapsed.id, "streak": 2}


def test_reset_uses_user_timezone(db, notifier, make_user, make_habit):
    user = make_user(timezone="Pacific/Kiritimati")  # UTC+14
    habit = make_habit(user, streak=1, longest_streak=1, completed_dates=["2024-03-09"])

    # 12:00 UTC on the 10th is already the 11th in Kiritimati
    count = reset_lapsed_streaks(db, notifier, now=datetime(2024, 3, 10, 12, 0))

    assert count == 1
    db.refresh(habit)
    assert habit.streak == 0


# --- Scenarios ---

def test_contiguous_day_extends_streak(db, notifier, make_user, make_habit):
    habit = make_habit(make_user(), streak=2, longest_streak=2,
                       completed_dates=["2024-01-01", "2024-01-02"])

    result = _check_in(db, StreakEngine(db, notifier), habit, date(2024, 1, 3))

    assert result.streak == 3
    assert habit.longest_streak == 3


def test_gap_after_five_day_streak(db, notifier, make_user, make_habit):
    habit = make_habit(make_user(), streak=5, longest_streak=5,
                       completed_dates=["2023-12-30", "2023-12-31", "2024-01-01",
                                        "2024-01-02", "2024-01-03"])
    engine = StreakEngine(db, notifier)

    result = _check_in(db, engine, habit, date(2024, 1, 6))
    engine.notify_streak_break(habit, result)
    db.commit()

    assert habit.streak == 1
    assert habit.longest_streak == 5
    assert db.query(Notification).one().data["streak"] == 5
