"""
=============================================================================
SCHEMAS.PY — Validation schemas (Pydantic)
=============================================================================
Models (SQLAlchemy) define the TABLES; schemas define what the API accepts
and returns. Invalid input never reaches a service: FastAPI answers 422.

Naming:
  XxxCreate   → body of a POST
  XxxUpdate   → body of a PATCH/PUT (every field optional)
  XxxResponse → what the API returns
"""

from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

import pytz
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
# index = date.weekday()

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def _check_timezone(v: str) -> str:
    if v not in pytz.all_timezones_set:
        raise ValueError(f"Unknown timezone: {v}")
    return v


# =============================================================================
# ===================== AUTH ==================================================
# =============================================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=1, max_length=100)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v):
        return _check_timezone(v)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    name: str

class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    timezone: str
    telegram_id: Optional[str] = None
    xp: int
    level: int
    created_at: datetime
    last_activity: datetime
    goals: Optional[list[str]] = None
    model_config = {"from_attributes": True}

class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    timezone: Optional[str] = None
    telegram_id: Optional[str] = Field(default=None, max_length=50)
    goals: Optional[list[str]] = None

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v):
        return v if v is None else _check_timezone(v)


# =============================================================================
# ===================== HABITS ================================================
# =============================================================================

class FrequencyRule(BaseModel):
    """Recurrence rule of a habit"""
    type: Literal["daily", "weekly", "monthly"] = "daily"
    days: Optional[list[str]] = None
    # days → weekday names, only for weekly
    dates: Optional[list[int]] = None
    # dates → days of the month 1..31, only for monthly
    time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)

    @field_validator("days")
    @classmethod
    def _known_days(cls, value):
        if value is None:
            return value
        days = [d.lower() for d in value]
        unknown = [d for d in days if d not in DAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown day names: {unknown}")
        return sorted(set(days), key=DAY_NAMES.index)

    @field_validator("dates")
    @classmethod
    def _valid_dates(cls, value):
        if value is None:
            return value
        if any(d < 1 or d > 31 for d in value):
            raise ValueError("Days of the month go from 1 to 31")
        return sorted(set(value))

    @model_validator(mode="after")
    def _rule_is_complete(self):
        if self.type == "weekly" and not self.days:
            raise ValueError("A weekly habit needs at least one day")
        if self.type == "monthly" and not self.dates:
            raise ValueError("A monthly habit needs at least one date")
        return self

class HabitCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    category: str = "Other"
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    color: str = "#3B82F6"
    frequency: FrequencyRule = FrequencyRule()

class HabitUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None
    color: Optional[str] = None
    frequency: Optional[FrequencyRule] = None

class HabitResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    category: str
    difficulty: str
    color: str
    frequency_type: str
    frequency_days: Optional[list[str]]
    frequency_dates: Optional[list[int]]
    frequency_time: Optional[str]
    status: str
    streak: int
    longest_streak: int
    total_completions: int
    completed_dates: list[str]
    last_check_in: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== CHECK-INS =============================================
# =============================================================================

class CheckInCreate(BaseModel):
    habit_id: int
    date: Optional[Union[date, datetime]] = None
    # date → None = today in the user's timezone
    completed: bool = True
    completion_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    mood: Optional[str] = None

class CheckInUpdate(BaseModel):
    """Only the user-editable parts; date and completed shape the streak"""
    completion_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    mood: Optional[str] = None

class CheckInResponse(BaseModel):
    id: int
    habit_id: int
    user_id: int
    date: date
    completed: bool
    completion_percentage: int
    notes: Optional[str]
    photo_url: Optional[str]
    mood: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    model_config = {"from_attributes": True}

class StreakResponse(BaseModel):
    streak: int
    longest_streak: int
    broken: bool = False
    updated: bool = True


# =============================================================================
# ===================== ACHIEVEMENTS ==========================================
# =============================================================================
# One metadata shape per achievement type. The "type" key picks the shape.

class StreakMetadata(BaseModel):
    type: Literal["streak"] = "streak"
    streak: int
    habit_id: Optional[int] = None

class CompletionMetadata(BaseModel):
    type: Literal["completion"] = "completion"
    completions: int
    habit_id: int

class LevelMetadata(BaseModel):
    type: Literal["level"] = "level"
    level: int

class BadgeMetadata(BaseModel):
    type: Literal["badge"] = "badge"
    badge: str

class MilestoneMetadata(BaseModel):
    type: Literal["milestone"] = "milestone"
    name: str
    value: Optional[int] = None

AchievementMetadata = Annotated[
    Union[StreakMetadata, CompletionMetadata, LevelMetadata, BadgeMetadata, MilestoneMetadata],
    Field(discriminator="type"),
]

class AchievementResponse(BaseModel):
    id: int
    type: str
    title: str
    description: str
    icon: str
    xp_reward: int
    unlocked_at: datetime
    metadata: Optional[AchievementMetadata] = Field(default=None, validation_alias="meta")
    model_config = {"from_attributes": True, "populate_by_name": True}

class LevelInfo(BaseModel):
    level: int
    xp: int
    xp_in_level: int
    xp_next_level: Optional[int]
    xp_progress: float
    title: str

class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    name: str
    xp: int
    level: int

class CheckInResult(BaseModel):
    """Answer of POST /checkins"""
    check_in: CheckInResponse
    streak: StreakResponse
    achievements: list[AchievementResponse] = []


# =============================================================================
# ===================== NOTIFICATIONS =========================================
# =============================================================================

class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    message: str
    data: Optional[dict]
    read: bool
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== REMINDERS =============================================
# =============================================================================

class ReminderCreate(BaseModel):
    habit_id: int
    time: str = Field(pattern=TIME_PATTERN)
    days: Optional[list[str]] = None
    message: Optional[str] = None

    @field_validator("days")
    @classmethod
    def _known_days(cls, value):
        if value is not None and any(d not in DAY_NAMES for d in value):
            raise ValueError(f"Days must be among {DAY_NAMES}")
        return value

class ReminderUpdate(BaseModel):
    time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    days: Optional[list[str]] = None
    message: Optional[str] = None
    status: Optional[Literal["active", "paused"]] = None

class ReminderResponse(BaseModel):
    id: int
    habit_id: int
    time: str
    days: Optional[list[str]]
    message: Optional[str]
    status: str
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== AI ====================================================
# =============================================================================

class MotivationResponse(BaseModel):
    message: str
    generated: bool
    # generated → False when the fallback text was used


class InsightResponse(BaseModel):
    insight: dict
    generated: bool


# =============================================================================
# ===================== ANALYTICS =============================================
# =============================================================================

class DailyHabitStatus(BaseModel):
    id: int
    name: str
    category: str
    completed: bool
    streak: int

class DailyAnalytics(BaseModel):
    day: date
    total_habits: int
    completed_habits: int
    completion_rate: float
    habits: list[DailyHabitStatus]

class DayCount(BaseModel):
    day: date
    completed: int
    total: int

class WeeklyAnalytics(BaseModel):
    week_start: date
    week_end: date
    total_habits: int
    total_completions: int
    average_daily: float
    daily_data: list[DayCount]

class MonthlyAnalytics(BaseModel):
    year: int
    month: int
    month_name: str
    total_habits: int
    total_completions: int
    average_daily: float
    completion_rate: float
    daily_data: list[DayCount]

class CategoryStats(BaseModel):
    category: str
    total_habits: int
    total_streak: int
    total_completions: int
    average_streak: float

class CategoryAnalytics(BaseModel):
    total_categories: int
    categories: list[CategoryStats]


# =============================================================================
# ===================== FEEDBACK ==============================================
# =============================================================================

class AIRatingCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    feature: str = "general"

class IssueReportCreate(BaseModel):
    issue_type: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"] = "medium"

class FeedbackResponse(BaseModel):
    id: int
    type: str
    rating: Optional[int] = None
    feature: Optional[str] = None
    comment: Optional[str] = None
    issue_type: Optional[str] = None
    description: Optional[str] = None
    severity: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime
    model_config = {"from_attributes": True}
