"""
=============================================================================
MODELS.PY — Database tables
=============================================================================
Each class = one table. Each attribute = one column.

  USER
  ├── habits[] ──→ checkins[]
  ├── achievements[]   (unlocked milestones, one row per milestone)
  ├── notifications[]  (durable records; push delivery reads them later)
  ├── reminders[]
  └── feedback[]       (AI ratings and issue reports)

Habits are never deleted from the API, only archived, so their check-in
history and achievements stay consistent.
"""

from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Date, DateTime, ForeignKey, JSON,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ===================== ENUMS =================================================
# =============================================================================

class FrequencyType(str, enum.Enum):
    """How often a habit repeats"""
    daily = "daily"        # every day
    weekly = "weekly"      # specific weekdays (frequency_days)
    monthly = "monthly"    # specific days of the month (frequency_dates)

class HabitStatus(str, enum.Enum):
    active = "active"
    paused = "paused"
    archived = "archived"

class AchievementType(str, enum.Enum):
    streak = "streak"
    completion = "completion"
    level = "level"
    badge = "badge"
    milestone = "milestone"

class NotificationType(str, enum.Enum):
    reminder = "reminder"
    streak = "streak"
    achievement = "achievement"
    ai_insight = "ai_insight"
    system = "system"


# =============================================================================
# ===================== TABLE 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False)

    timezone = Column(String(50), default="UTC")
    # timezone → IANA name; "today" and check-in dates are computed in it
    telegram_id = Column(String(50), unique=True, nullable=True)
    # telegram_id → push target for notification delivery

    # ── Gamification ──
    xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)

    goals = Column(JSON, default=list)
    # goals → free-text goals, fed to habit recommendations

    # ── Account state ──
    deactivated = Column(Boolean, default=False, nullable=False)
    deactivated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    last_activity = Column(DateTime, default=utcnow)

    habits = relationship("Habit", back_populates="user", cascade="all, delete-orphan")
    achievements = relationship("Achievement", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")
    reminders = relationship("Reminder", back_populates="user", cascade="all, delete-orphan")
    feedback = relationship("Feedback", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLE 2: HABITS =======================================
# =============================================================================

class Habit(Base):
    __tablename__ = "habits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    category = Column(String(30), default="Other")
    difficulty = Column(String(10), default="medium")
    color = Column(String(10), default="#3B82F6")

    # ── Recurrence rule ──
    frequency_type = Column(String(10), default=FrequencyType.daily.value, nullable=False)
    frequency_days = Column(JSON, nullable=True)
    # frequency_days → ["mon", "wed", "fri"] for weekly habits
    frequency_dates = Column(JSON, nullable=True)
    # frequency_dates → [1, 15] for monthly habits
    frequency_time = Column(String(5), nullable=True)
    # frequency_time → "06:00" (informative, used by reminders)

    status = Column(String(10), default=HabitStatus.active.value, nullable=False)

    # ── Streaks ──
    streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    total_completions = Column(Integer, default=0, nullable=False)
    completed_dates = Column(JSON, default=list, nullable=False)
    # completed_dates → ["2024-01-01", "2024-01-02", ...] append order, no duplicates
    last_check_in = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    # Every UPDATE carries "WHERE version_id = <read value>". Two writers that
    # read the same row cannot both append to completed_dates: the second
    # one gets StaleDataError.
    version_id = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    user = relationship("User", back_populates="habits")
    checkins = relationship("CheckIn", back_populates="habit", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLE 3: CHECKINS =====================================
# =============================================================================
# One row per check-in event. Several per day are allowed here; the streak
# only counts the first completed one through habit.completed_dates.

class CheckIn(Base):
    __tablename__ = "checkins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    habit_id = Column(Integer, ForeignKey("habits.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    date = Column(Date, nullable=False)
    completed = Column(Boolean, default=True, nullable=False)
    completion_percentage = Column(Integer, default=100, nullable=False)
    notes = Column(Text, nullable=True)
    photo_url = Column(String(500), nullable=True)
    mood = Column(String(30), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_checkins_user_habit_completed", "user_id", "habit_id", "completed"),
    )

    habit = relationship("Habit", back_populates="checkins")


# =============================================================================
# ===================== TABLE 4: ACHIEVEMENTS =================================
# =============================================================================
# Unlocked achievements. milestone_key identifies the milestone
# ("streak:7", "completion:12:50", "level:3"); the unique constraint makes
# the unlock idempotent even when two requests race.

class Achievement(Base):
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    type = Column(String(20), nullable=False)
    title = Column(String(100), nullable=False)
    description = Column(String(300), nullable=False)
    icon = Column(String(10), default="🏆")
    xp_reward = Column(Integer, default=10, nullable=False)

    meta = Column("metadata", JSON, nullable=True)
    # meta → {"type": "streak", "streak": 7, "habit_id": 3}, see schemas.AchievementMetadata
    milestone_key = Column(String(100), nullable=False)

    unlocked_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "milestone_key", name="uq_user_milestone"),
    )

    user = relationship("User", back_populates="achievements")


# =============================================================================
# ===================== TABLE 5: NOTIFICATIONS ================================
# =============================================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    type = Column(String(20), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    # data → {"habit_id": 3, "achievement_id": 9}; ids only, never objects

    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    delivered_at = Column(DateTime, nullable=True)
    # delivered_at → set by the push delivery job

    user = relationship("User", back_populates="notifications")


# =============================================================================
# ===================== TABLE 6: REMINDERS ====================================
# =============================================================================

class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    habit_id = Column(Integer, ForeignKey("habits.id"), nullable=False)

    time = Column(String(5), nullable=False)
    # time → "07:00" in the user's timezone
    days = Column(JSON, nullable=True)
    # days → ["mon","tue",...]; null = every day
    message = Column(Text, nullable=True)

    status = Column(String(10), default="active", nullable=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="reminders")
    habit = relationship("Habit")


# =============================================================================
# ===================== TABLE 7: FEEDBACK =====================================
# =============================================================================

class FeedbackType(str, enum.Enum):
    ai_rating = "ai_rating"
    issue_report = "issue_report"


class Feedback(Base):
    __tablename__ = "feedback"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(20), nullable=False)

    # ── AI rating ──
    rating = Column(Integer, nullable=True)         # 1-5
    feature = Column(String(50), nullable=True)     # "motivation", "analysis", "general"...
    comment = Column(Text, nullable=True)

    # ── Issue report ──
    issue_type = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    severity = Column(String(10), nullable=True)    # low / medium / high
    status = Column(String(10), nullable=True)      # open / closed

    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="feedback")
