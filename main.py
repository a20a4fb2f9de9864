"""
=============================================================================
MAIN.PY — GrowTrack API
=============================================================================
Every REST endpoint of the backend.

Sections:
  1. AUTH           → register, login, profile, update, deactivate
  2. HABITS         → CRUD, pause, archive (never hard-deleted)
  3. CHECK-INS      → check in (streak + XP + achievements), history, edit
  4. GAMIFICATION   → level, achievements, leaderboard
  5. NOTIFICATIONS  → list, mark read, delete
  6. REMINDERS      → CRUD
  7. AI             → motivation, progress analysis, recommendations, streak risk
  8. ANALYTICS      → daily, weekly, monthly, per category
  9. FEEDBACK       → AI ratings, issue reports

Routes stay thin: the work lives in checkins.py, streaks.py,
gamification.py, notifications.py and analytics.py. Domain errors (errors.py) become
HTTP answers through the exception handlers below.
"""

import logging
import traceback
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ai import AIClient, analyze_progress, forecast_streak_risk, get_motivation, recommend_habits
from analytics import (
    category_breakdown, daily_summary, habit_snapshot, monthly_summary,
    recent_completions, tracked_habits, weekly_summary,
)
from auth import hash_password, verify_password, create_access_token, get_current_user
from checkins import CheckInService, get_owned_habit
from config import LOG_LEVEL, TELEGRAM_BOT_TOKEN
from database import get_db, init_db
from errors import GrowTrackError, ValidationError
from gamification import get_leaderboard, get_level_info, list_achievements
from models import Feedback, FeedbackType, Habit, HabitStatus, Reminder, User, utcnow
from notifications import Notifier
from schemas import (
    UserRegister, UserLogin, TokenResponse, UserResponse, UserUpdate,
    HabitCreate, HabitUpdate, HabitResponse, FrequencyRule,
    CheckInCreate, CheckInUpdate, CheckInResponse, CheckInResult, StreakResponse,
    AchievementResponse, LevelInfo, LeaderboardEntry,
    NotificationResponse,
    ReminderCreate, ReminderUpdate, ReminderResponse,
    MotivationResponse, InsightResponse,
    DailyAnalytics, WeeklyAnalytics, MonthlyAnalytics, CategoryAnalytics,
    AIRatingCreate, IssueReportCreate, FeedbackResponse,
)
from streaks import normalize_date

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("growtrack.api")


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Create tables
      2. Telegram bot for push delivery (only with TELEGRAM_BOT_TOKEN)
      3. Background jobs
    """
    logger.info("🚀 Starting GrowTrack...")

    init_db()
    logger.info("✅ Database ready")

    bot = None
    if TELEGRAM_BOT_TOKEN:
        from telegram import Bot
        bot = Bot(TELEGRAM_BOT_TOKEN)
    else:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set, push delivery disabled")

    from scheduler import create_scheduler, start_scheduler, stop_scheduler
    try:
        create_scheduler(bot)
        start_scheduler()
    except Exception as e:
        logger.error(f"❌ Error starting scheduler: {e}")

    yield

    logger.info("🛑 Shutting down GrowTrack...")
    stop_scheduler()


app = FastAPI(
    title="GrowTrack API",
    description="Habit tracking backend: habits, check-ins, streaks, XP and achievements",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(GrowTrackError)
async def domain_error_handler(request: Request, exc: GrowTrackError):
    """Validation 400, duplicate 409, ownership 403, missing 404, AI 503"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "type": type(exc).__name__}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"❌ Unhandled error on {request.url}: {exc}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


@app.get("/", tags=["Health"])
def health_check():
    return {
        "status": "ok",
        "app": "GrowTrack",
        "version": "1.0.0",
        "timestamp": utcnow().isoformat()
    }


# =============================================================================
# ===================== SECTION 1: AUTH =======================================
# =============================================================================

@app.post("/auth/register", response_model=TokenResponse, tags=["Auth"])
def register(data: UserRegister, db: Session = Depends(get_db)):
    existing = db.query(User).filter(User.email == data.email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists"
        )

    user = User(
        email=data.email,
        password_hash=hash_password(data.password),
        name=data.name,
        timezone=data.timezone,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"👤 New user: {user.name} ({user.email})")
    return TokenResponse(
        access_token=create_access_token(user.id, user.email),
        user_id=user.id,
        name=user.name
    )


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(data: UserLogin, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email).first()

    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Wrong email or password"
        )

    if user.deactivated:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated"
        )

    return TokenResponse(
        access_token=create_access_token(user.id, user.email),
        user_id=user.id,
        name=user.name
    )


@app.get("/auth/me", response_model=UserResponse, tags=["Auth"])
def get_me(user: User = Depends(get_current_user)):
    return user


@app.patch("/auth/me", response_model=UserResponse, tags=["Auth"])
def update_me(data: UserUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Name, timezone, goals and the Telegram chat used for push delivery"""
    update_data = data.model_dump(exclude_unset=True)

    if "telegram_id" in update_data:
        telegram_id = update_data["telegram_id"] or None
        if telegram_id:
            linked = db.query(User).filter(User.telegram_id == telegram_id, User.id != user.id).first()
            if linked:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="This Telegram account is already linked to another user"
                )
        user.telegram_id = telegram_id

    for key in ("name", "timezone", "goals"):
        if update_data.get(key) is not None:
            setattr(user, key, update_data[key])

    db.commit()
    db.refresh(user)
    logger.info(f"✏️ Profile updated: user {user.id} ({', '.join(update_data) or 'no changes'})")
    return user


@app.delete("/auth/me", tags=["Auth"])
def deactivate_me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Archives every habit and locks the account; history is kept"""
    archived = db.query(Habit).filter(
        Habit.user_id == user.id,
        Habit.status != HabitStatus.archived.value
    ).update({
        "status": HabitStatus.archived.value,
        "updated_at": utcnow(),
        "version_id": Habit.version_id + 1,
    }, synchronize_session=False)

    user.deactivated = True
    user.deactivated_at = utcnow()
    db.commit()

    logger.info(f"🚪 User {user.id} deactivated ({archived} habits archived)")
    return {"message": "Account deactivated", "archived_habits": archived}


# =============================================================================
# ===================== SECTION 2: HABITS =====================================
# =============================================================================

def _apply_frequency(habit: Habit, rule: FrequencyRule):
    habit.frequency_type = rule.type
    habit.frequency_days = rule.days if rule.type == "weekly" else None
    habit.frequency_dates = rule.dates if rule.type == "monthly" else None
    habit.frequency_time = rule.time


@app.post("/habits", response_model=HabitResponse, status_code=201, tags=["Habits"])
def create_habit(data: HabitCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    habit = Habit(
        user_id=user.id,
        name=data.name,
        description=data.description,
        category=data.category,
        difficulty=data.difficulty,
        color=data.color,
        completed_dates=[],
    )
    _apply_frequency(habit, data.frequency)
    db.add(habit)
    db.commit()
    db.refresh(habit)

    logger.info(f"➕ Habit created: {habit.name} (user {user.id})")
    return habit


@app.get("/habits", response_model=list[HabitResponse], tags=["Habits"])
def list_habits(
    habit_status: Optional[str] = Query(default=None, alias="status"),
    category: Optional[str] = None,
    include_archived: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = db.query(Habit).filter(Habit.user_id == user.id)

    if habit_status:
        query = query.filter(Habit.status == habit_status)
    elif not include_archived:
        query = query.filter(Habit.status != HabitStatus.archived.value)
    if category:
        query = query.filter(Habit.category == category)

    return query.order_by(Habit.created_at, Habit.id).all()


@app.get("/habits/{habit_id}", response_model=HabitResponse, tags=["Habits"])
def get_habit(habit_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return get_owned_habit(db, user, habit_id)


@app.patch("/habits/{habit_id}", response_model=HabitResponse, tags=["Habits"])
def update_habit(
    habit_id: int, data: HabitUpdate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Streak fields are not editable here; only check-ins move them"""
    habit = get_owned_habit(db, user, habit_id)

    update_data = data.model_dump(exclude_unset=True, exclude={"frequency"})
    for key, value in update_data.items():
        setattr(habit, key, value)
    if data.frequency is not None:
        _apply_frequency(habit, data.frequency)

    habit.updated_at = utcnow()
    db.commit()
    db.refresh(habit)
    return habit


@app.patch("/habits/{habit_id}/pause", response_model=HabitResponse, tags=["Habits"])
def toggle_pause(habit_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """active ↔ paused"""
    habit = get_owned_habit(db, user, habit_id)
    if habit.status == HabitStatus.archived.value:
        raise ValidationError("Archived habits cannot be paused or resumed")

    paused = habit.status == HabitStatus.paused.value
    habit.status = HabitStatus.active.value if paused else HabitStatus.paused.value
    habit.updated_at = utcnow()
    db.commit()
    db.refresh(habit)
    return habit


@app.patch("/habits/{habit_id}/archive", response_model=HabitResponse, tags=["Habits"])
def archive_habit(habit_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Soft delete: history and achievements are kept"""
    habit = get_owned_habit(db, user, habit_id)
    habit.status = HabitStatus.archived.value
    habit.updated_at = utcnow()
    db.commit()
    db.refresh(habit)
    logger.info(f"📦 Habit archived: {habit.name} (user {user.id})")
    return habit


# =============================================================================
# ===================== SECTION 3: CHECK-INS ==================================
# =============================================================================

@app.post("/checkins", response_model=CheckInResult, tags=["Check-ins"])
def create_check_in(data: CheckInCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Records a check-in. If completed:
      - updates streak / longest streak (409 if that date is already done)
      - awards XP and unlocks achievements (best effort)
    """
    outcome = CheckInService(db).create_check_in(user, data)

    if outcome.streak is not None:
        streak = StreakResponse(
            streak=outcome.streak.streak,
            longest_streak=outcome.streak.longest_streak,
            broken=outcome.streak.broken,
        )
    else:
        habit = db.query(Habit).filter(Habit.id == data.habit_id).first()
        streak = StreakResponse(streak=habit.streak, longest_streak=habit.longest_streak, updated=False)

    return CheckInResult(
        check_in=CheckInResponse.model_validate(outcome.check_in),
        streak=streak,
        achievements=[AchievementResponse.model_validate(a) for a in outcome.achievements],
    )


@app.get("/checkins/habit/{habit_id}", response_model=list[CheckInResponse], tags=["Check-ins"])
def list_check_ins(
    habit_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    before_id: Optional[int] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return CheckInService(db).list_check_ins(user, habit_id, limit, before_id)


@app.put("/checkins/{check_in_id}", response_model=CheckInResponse, tags=["Check-ins"])
def update_check_in(
    check_in_id: int, data: CheckInUpdate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return CheckInService(db).update_check_in(user, check_in_id, data)


@app.delete("/checkins/{check_in_id}", tags=["Check-ins"])
def delete_check_in(check_in_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    CheckInService(db).delete_check_in(user, check_in_id)
    return {"message": "Check-in deleted"}


# =============================================================================
# ===================== SECTION 4: GAMIFICATION ===============================
# =============================================================================

@app.get("/gamification/level", response_model=LevelInfo, tags=["Gamification"])
def get_my_level(user: User = Depends(get_current_user)):
    return get_level_info(user)


@app.get("/achievements", response_model=list[AchievementResponse], tags=["Gamification"])
def get_my_achievements(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return list_achievements(db, user.id)


@app.get("/achievements/leaderboard", response_model=list[LeaderboardEntry], tags=["Gamification"])
def leaderboard(
    limit: int = Query(default=100, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return get_leaderboard(db, limit)


# =============================================================================
# ===================== SECTION 5: NOTIFICATIONS ==============================
# =============================================================================

@app.get("/notifications", response_model=list[NotificationResponse], tags=["Notifications"])
def list_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    unread_only: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return Notifier(db).list_for_user(user.id, limit, unread_only)


@app.put("/notifications/read-all", tags=["Notifications"])
def mark_all_read(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    count = Notifier(db).mark_all_read(user.id)
    return {"message": f"Marked {count} notifications as read", "count": count}


@app.put("/notifications/{notification_id}/read", response_model=NotificationResponse, tags=["Notifications"])
def mark_read(notification_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return Notifier(db).mark_read(user.id, notification_id)


@app.delete("/notifications/{notification_id}", tags=["Notifications"])
def delete_notification(notification_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    Notifier(db).delete(user.id, notification_id)
    return {"message": "Notification deleted"}


# =============================================================================
# ===================== SECTION 6: REMINDERS ==================================
# =============================================================================

def _get_owned_reminder(db: Session, user: User, reminder_id: int) -> Reminder:
    reminder = db.query(Reminder).filter(
        Reminder.id == reminder_id, Reminder.user_id == user.id
    ).first()
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@app.post("/reminders", response_model=ReminderResponse, status_code=201, tags=["Reminders"])
def create_reminder(data: ReminderCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    get_owned_habit(db, user, data.habit_id)

    reminder = Reminder(
        user_id=user.id,
        habit_id=data.habit_id,
        time=data.time,
        days=data.days,
        message=data.message,
    )
    db.add(reminder)
    db.commit()
    db.refresh(reminder)
    return reminder


@app.get("/reminders", response_model=list[ReminderResponse], tags=["Reminders"])
def list_reminders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.query(Reminder).filter(Reminder.user_id == user.id).order_by(Reminder.time).all()


@app.patch("/reminders/{reminder_id}", response_model=ReminderResponse, tags=["Reminders"])
def update_reminder(
    reminder_id: int, data: ReminderUpdate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    reminder = _get_owned_reminder(db, user, reminder_id)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(reminder, key, value)
    db.commit()
    db.refresh(reminder)
    return reminder


@app.delete("/reminders/{reminder_id}", tags=["Reminders"])
def delete_reminder(reminder_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    reminder = _get_owned_reminder(db, user, reminder_id)
    db.delete(reminder)
    db.commit()
    return {"message": "Reminder deleted"}


# =============================================================================
# ===================== SECTION 7: AI =========================================
# =============================================================================
# The handlers are async because the AI call is. Database reads go through
# run_in_threadpool so the event loop never blocks on the session.

def get_ai_client() -> AIClient:
    return AIClient()


def _ai_context(db: Session, user: User) -> dict:
    """Everything the prompts need, read and turned into plain data in one go"""
    habits = tracked_habits(db, user.id)
    active = [h for h in habits if h.status == HabitStatus.active.value]
    return {
        "habits": habit_snapshot(habits),
        "active_habits": habit_snapshot(active),
        "total_streak": sum(h.streak or 0 for h in active),
        "recent": recent_completions(habits, normalize_date(None, user.timezone)),
        "goals": list(user.goals or []),
    }


@app.get("/ai/motivation", response_model=MotivationResponse, tags=["AI"])
async def motivation(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: AIClient = Depends(get_ai_client)
):
    """Never fails because of the AI: falls back to a fixed message"""
    context = await run_in_threadpool(_ai_context, db, user)
    message, generated = await get_motivation(client, context["total_streak"], context["active_habits"])
    return MotivationResponse(message=message, generated=generated)


@app.post("/ai/analyze-progress", response_model=InsightResponse, tags=["AI"])
async def ai_analyze_progress(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: AIClient = Depends(get_ai_client)
):
    context = await run_in_threadpool(_ai_context, db, user)
    insight, generated = await analyze_progress(client, context["habits"], context["recent"])
    return InsightResponse(insight=insight, generated=generated)


@app.post("/ai/recommend-habits", response_model=InsightResponse, tags=["AI"])
async def ai_recommend_habits(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: AIClient = Depends(get_ai_client)
):
    context = await run_in_threadpool(_ai_context, db, user)
    insight, generated = await recommend_habits(client, context["habits"], context["goals"])
    return InsightResponse(insight=insight, generated=generated)


@app.post("/ai/forecast-streak-risk", response_model=InsightResponse, tags=["AI"])
async def ai_forecast_streak_risk(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: AIClient = Depends(get_ai_client)
):
    context = await run_in_threadpool(_ai_context, db, user)
    insight, generated = await forecast_streak_risk(client, context["active_habits"])
    return InsightResponse(insight=insight, generated=generated)


# =============================================================================
# ===================== SECTION 8: ANALYTICS ==================================
# =============================================================================

@app.get("/analytics/daily", response_model=DailyAnalytics, tags=["Analytics"])
def analytics_daily(
    day: Optional[date] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Default: today in the user's timezone"""
    return daily_summary(db, user, day)


@app.get("/analytics/weekly", response_model=WeeklyAnalytics, tags=["Analytics"])
def analytics_weekly(
    start: Optional[date] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return weekly_summary(db, user, start)


@app.get("/analytics/monthly", response_model=MonthlyAnalytics, tags=["Analytics"])
def analytics_monthly(
    year: Optional[int] = Query(default=None, ge=1970, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return monthly_summary(db, user, year, month)


@app.get("/analytics/categories", response_model=CategoryAnalytics, tags=["Analytics"])
def analytics_categories(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return category_breakdown(db, user)


# =============================================================================
# ===================== SECTION 9: FEEDBACK ===================================
# =============================================================================

@app.post("/feedback/ai-rating", response_model=FeedbackResponse, status_code=201, tags=["Feedback"])
def rate_ai(data: AIRatingCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    feedback = Feedback(
        user_id=user.id,
        type=FeedbackType.ai_rating.value,
        rating=data.rating,
        comment=data.comment,
        feature=data.feature,
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)

    logger.info(f"⭐ AI rated {data.rating}/5 for {data.feature} (user {user.id})")
    return feedback


@app.post("/feedback/issues", response_model=FeedbackResponse, status_code=201, tags=["Feedback"])
def report_issue(data: IssueReportCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    feedback = Feedback(
        user_id=user.id,
        type=FeedbackType.issue_report.value,
        issue_type=data.issue_type,
        description=data.description,
        severity=data.severity,
        status="open",
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)

    logger.info(f"🐛 Issue reported: {data.issue_type} [{data.severity}] (user {user.id})")
    return feedback


@app.get("/feedback", response_model=list[FeedbackResponse], tags=["Feedback"])
def list_feedback(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.query(Feedback).filter(
        Feedback.user_id == user.id
    ).order_by(Feedback.created_at.desc(), Feedback.id.desc()).all()
