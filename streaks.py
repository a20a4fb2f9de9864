"""
=============================================================================
STREAKS.PY — Check-in dates and streaks
=============================================================================
  - Which dates are valid check-in days for a habit (recurrence rule)
  - Dates normalized to the user's timezone ("YYYY-MM-DD")
  - The streak engine: new streak + longest streak after a check-in
  - The nightly reset of streaks that lapsed

Streak logic:
  - Completed yesterday too       → streak + 1
  - Gap and a streak was running  → streak broken, back to 1 (notify)
  - No streak running             → 1
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

import pytz
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import DEFAULT_TIMEZONE
from errors import AlreadyCheckedInError, ValidationError
from models import Habit, HabitStatus, NotificationType, User, utcnow
from notifications import Notifier
from schemas import DAY_NAMES

logger = logging.getLogger("growtrack.streaks")


# =============================================================================
# ===================== DATES =================================================
# =============================================================================

def get_timezone(tz_name: Optional[str]):
    """pytz timezone for a user; unknown names fall back to UTC"""
    try:
        return pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"⚠️ Unknown timezone {tz_name!r}, using {DEFAULT_TIMEZONE}")
        return pytz.timezone(DEFAULT_TIMEZONE)


def normalize_date(value=None, tz_name: Optional[str] = None) -> date:
    """
    Calendar date of a check-in in the user's timezone.

      None              → today in that timezone
      datetime (aware)  → converted to the timezone, then its date
      datetime (naive)  → treated as UTC
      date              → used as is
      "YYYY-MM-DD"      → parsed
    """
    tz = get_timezone(tz_name)

    if value is None:
        return datetime.now(tz).date()

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = pytz.utc.localize(value)
        return value.astimezone(tz).date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid date: {value!r}")

    raise ValidationError(f"Invalid date: {value!r}")


def is_date_valid_for_habit(habit: Habit, day: date) -> bool:
    """
    daily   → always
    weekly  → the weekday is in frequency_days
    monthly → the day of the month is in frequency_dates
    Anything else is rejected.
    """
    rule = habit.frequency_type

    if rule == "daily":
        return True

    if rule == "weekly":
        return DAY_NAMES[day.weekday()] in (habit.frequency_days or [])

    if rule == "monthly":
        return day.day in (habit.frequency_dates or [])

    return False


def _run_ending_at(days: set, end: date) -> int:
    """Consecutive days in `days` ending at `end` (inclusive)"""
    run = 0
    current = end
    while current in days:
        run += 1
        current -= timedelta(days=1)
    return run


def _longest_run(days: set) -> int:
    best = 0
    for day in days:
        # only start counting at the first day of a run
        if day - timedelta(days=1) not in days:
            length = 0
            current = day
            while current in days:
                length += 1
                current += timedelta(days=1)
            best = max(best, length)
    return best


# =============================================================================
# ===================== STREAK ENGINE =========================================
# =============================================================================

@dataclass
class StreakResult:
    streak: int
    longest_streak: int
    previous_streak: int
    broken: bool = False
    backfilled: bool = False


class StreakEngine:
    """Updates the streak fields of a habit for one completed check-in"""

    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    def update_streak(self, habit: Habit, check_in_date: date) -> StreakResult:
        """
        Stages the new streak, longest streak and completed dates on the habit
        and flushes them as one versioned UPDATE. The caller commits.

        Raises AlreadyCheckedInError (nothing changed) if the date is
        already completed, and StaleDataError if another writer updated the
        habit since it was loaded.
        """
        day_str = check_in_date.isoformat()
        completed = list(habit.completed_dates or [])

        if day_str in completed:
            raise AlreadyCheckedInError(day_str)

        previous = habit.streak or 0
        longest = habit.longest_streak or 0
        latest = max(completed) if completed else None
        broken = False
        backfilled = False

        if latest is not None and day_str < latest:
            # Backfill: the streak is still the run ending at the latest
            # completed day; filling a hole can only lengthen it.
            backfilled = True
            days = {date.fromisoformat(d) for d in completed}
            days.add(check_in_date)
            if previous > 0:
                new_streak = _run_ending_at(days, date.fromisoformat(latest))
            else:
                new_streak = 0
            new_longest = max(longest, _longest_run(days), new_streak)
        else:
            preceding = (check_in_date - timedelta(days=1)).isoformat()
            if preceding in completed:
                new_streak = previous + 1
            elif previous > 0:
                broken = True
                new_streak = 1
            else:
                new_streak = 1
            new_longest = max(longest, new_streak)

        now = utcnow()
        habit.completed_dates = completed + [day_str]
        habit.streak = new_streak
        habit.longest_streak = new_longest
        habit.total_completions = (habit.total_completions or 0) + 1
        habit.last_check_in = now
        habit.updated_at = now

        self.db.flush()

        return StreakResult(
            streak=new_streak,
            longest_streak=new_longest,
            previous_streak=previous,
            broken=broken,
            backfilled=backfilled,
        )

    def notify_streak_break(self, habit: Habit, result: StreakResult):
        """Best effort: "streak ended" notification after a broken streak"""
        if result.broken:
            notify_streak_ended(self.notifier, habit, result.previous_streak)


def notify_streak_ended(notifier: Notifier, habit: Habit, previous_streak: int):
    notifier.create(
        habit.user_id,
        NotificationType.streak.value,
        "Streak ended",
        f"Your {previous_streak}-day streak on '{habit.name}' has ended. Today is a new start!",
        {"habit_id": habit.id, "streak": previous_streak},
    )
    logger.info(f"💔 Streak ended: habit {habit.id} ({previous_streak} days)")


# =============================================================================
# ===================== NIGHTLY RESET =========================================
# =============================================================================

def reset_lapsed_streaks(db: Session, notifier: Notifier, now: Optional[datetime] = None) -> int:
    """
    Sets streak = 0 on every active habit whose latest completed day is
    before yesterday (in its owner's timezone) and notifies the owner.
    longest_streak is untouched. Returns how many habits were reset.
    """
    habits = db.query(Habit).join(User).filter(
        Habit.status == HabitStatus.active.value,
        Habit.streak > 0
    ).all()

    reset = 0
    for habit in habits:
        if not habit.completed_dates:
            continue

        today = normalize_date(now or utcnow(), habit.user.timezone)
        yesterday = (today - timedelta(days=1)).isoformat()
        if max(habit.completed_dates) >= yesterday:
            continue

        previous = habit.streak
        habit.streak = 0
        habit.updated_at = utcnow()
        try:
            db.commit()
        except StaleDataError:
            # A check-in touched the habit meanwhile; it owns the streak now.
            db.rollback()
            continue

        notify_streak_ended(notifier, habit, previous)
        db.commit()
        reset += 1

    if reset:
        logger.info(f"🌙 Lapsed streaks reset: {reset}")
    return reset
