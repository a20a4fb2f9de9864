"""
=============================================================================
ANALYTICS.PY — Progress summaries
=============================================================================
Everything here is computed from Habit.completed_dates, the same set the
streak engine maintains, so the numbers always agree with streaks and
completion counts.

  daily_summary       → which habits are done on one day
  weekly_summary      → completions per day, Monday to Sunday
  monthly_summary     → completions per day of a calendar month
  category_breakdown  → streak and completion totals per category

Archived habits are left out. Paused habits still count.
"""

import calendar
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from errors import ValidationError
from models import Habit, HabitStatus, User
from streaks import normalize_date

logger = logging.getLogger("growtrack.analytics")


def tracked_habits(db: Session, user_id: int) -> list[Habit]:
    return db.query(Habit).filter(
        Habit.user_id == user_id,
        Habit.status != HabitStatus.archived.value
    ).order_by(Habit.created_at, Habit.id).all()


def _completions_by_day(habits: list[Habit]) -> dict[str, int]:
    counts = defaultdict(int)
    for habit in habits:
        for day in set(habit.completed_dates or []):
            counts[day] += 1
    return counts


def _day_series(habits: list[Habit], start: date, days: int) -> list[dict]:
    counts = _completions_by_day(habits)
    series = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        series.append({"day": day, "completed": counts.get(day.isoformat(), 0), "total": len(habits)})
    return series


# =============================================================================
# ===================== SUMMARIES =============================================
# =============================================================================

def daily_summary(db: Session, user: User, day: Optional[date] = None) -> dict:
    day = day or normalize_date(None, user.timezone)
    habits = tracked_habits(db, user.id)

    statuses = [
        {
            "id": h.id,
            "name": h.name,
            "category": h.category or "Other",
            "completed": day.isoformat() in (h.completed_dates or []),
            "streak": h.streak or 0,
        }
        for h in habits
    ]
    completed = sum(1 for s in statuses if s["completed"])
    rate = round(completed / len(habits) * 100, 2) if habits else 0.0

    return {
        "day": day,
        "total_habits": len(habits),
        "completed_habits": completed,
        "completion_rate": rate,
        "habits": statuses,
    }


def weekly_summary(db: Session, user: User, start: Optional[date] = None) -> dict:
    """The week containing `start` (default: today), Monday first"""
    start = start or normalize_date(None, user.timezone)
    monday = start - timedelta(days=start.weekday())
    habits = tracked_habits(db, user.id)

    series = _day_series(habits, monday, 7)
    total = sum(d["completed"] for d in series)

    return {
        "week_start": monday,
        "week_end": monday + timedelta(days=6),
        "total_habits": len(habits),
        "total_completions": total,
        "average_daily": round(total / 7, 2),
        "daily_data": series,
    }


def monthly_summary(db: Session, user: User, year: Optional[int] = None, month: Optional[int] = None) -> dict:
    today = normalize_date(None, user.timezone)
    year = year or today.year
    month = month or today.month
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")

    days_in_month = calendar.monthrange(year, month)[1]
    habits = tracked_habits(db, user.id)

    series = _day_series(habits, date(year, month, 1), days_in_month)
    total = sum(d["completed"] for d in series)
    possible = len(habits) * days_in_month

    return {
        "year": year,
        "month": month,
        "month_name": calendar.month_name[month],
        "total_habits": len(habits),
        "total_completions": total,
        "average_daily": round(total / days_in_month, 2),
        "completion_rate": round(total / possible * 100, 2) if possible else 0.0,
        "daily_data": series,
    }


def category_breakdown(db: Session, user: User) -> dict:
    groups = defaultdict(list)
    for habit in tracked_habits(db, user.id):
        groups[habit.category or "Other"].append(habit)

    categories = []
    for name, habits in sorted(groups.items()):
        total_streak = sum(h.streak or 0 for h in habits)
        categories.append({
            "category": name,
            "total_habits": len(habits),
            "total_streak": total_streak,
            "total_completions": sum(len(set(h.completed_dates or [])) for h in habits),
            "average_streak": round(total_streak / len(habits), 2),
        })

    return {"total_categories": len(categories), "categories": categories}


# =============================================================================
# ===================== AI CONTEXT ============================================
# =============================================================================

def habit_snapshot(habits: list[Habit]) -> list[dict]:
    """Plain dicts describing habits, safe to hand to prompts outside the session"""
    return [
        {
            "name": h.name,
            "category": h.category,
            "status": h.status,
            "frequency": h.frequency_type,
            "streak": h.streak or 0,
            "longest_streak": h.longest_streak or 0,
            "total_completions": h.total_completions or 0,
            "last_check_in": max(h.completed_dates) if h.completed_dates else None,
        }
        for h in habits
    ]


def recent_completions(habits: list[Habit], today: date, days: int = 30) -> list[dict]:
    """(habit, date) pairs of the last `days` days, oldest first"""
    since = (today - timedelta(days=days)).isoformat()
    rows = [
        {"habit": h.name, "date": d}
        for h in habits
        for d in (h.completed_dates or [])
        if since < d <= today.isoformat()
    ]
    return sorted(rows, key=lambda r: r["date"])
