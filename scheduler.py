"""
=============================================================================
SCHEDULER.PY — Background jobs
=============================================================================
APScheduler (AsyncIOScheduler + CronTrigger) runs:

  1. Every minute: reminders due now (user's timezone) → notification rows
  2. Every minute: push undelivered notifications through Telegram
  3. Every hour at :05: reset streaks that lapsed (each user's own midnight)
  4. Every day at 08:00 UTC: motivational message (AI, fallback text)
  5. Every day at 21:00 UTC: re-engagement message for inactive users
  6. Every day at 22:00 UTC: alert for habits sitting on a milestone streak

Jobs open their own session and never touch the check-in critical path:
they only read committed state and write notification rows.
"""

import html
import logging
from datetime import datetime, timedelta
from typing import Optional

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from ai import AIClient, detect_inactive_user, get_motivation
from analytics import habit_snapshot, tracked_habits
from config import INACTIVE_AFTER_DAYS
from database import SessionLocal
from gamification import is_streak_milestone
from models import Habit, HabitStatus, Notification, NotificationType, Reminder, User, utcnow
from notifications import Notifier
from schemas import DAY_NAMES
from streaks import get_timezone, reset_lapsed_streaks

logger = logging.getLogger("growtrack.scheduler")

# Set when the scheduler is created
bot_instance: Optional[Bot] = None
scheduler: Optional[AsyncIOScheduler] = None


# =============================================================================
# ===================== REMINDERS =============================================
# =============================================================================

def queue_due_reminders(db: Session, now: Optional[datetime] = None) -> int:
    """
    Creates a reminder notification for every active reminder whose time
    is the current minute in its user's timezone, unless the habit is
    already completed today. Returns how many were queued.
    """
    now = now or utcnow()
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    notifier = Notifier(db)

    reminders = db.query(Reminder).join(Habit).filter(
        Reminder.status == "active",
        Habit.status == HabitStatus.active.value
    ).all()

    queued = 0
    for reminder in reminders:
        user_now = now.astimezone(get_timezone(reminder.user.timezone))

        if user_now.strftime("%H:%M") != reminder.time:
            continue
        if reminder.days and DAY_NAMES[user_now.weekday()] not in reminder.days:
            continue

        habit = reminder.habit
        if user_now.date().isoformat() in (habit.completed_dates or []):
            continue

        notifier.create(
            reminder.user_id,
            NotificationType.reminder.value,
            "Habit Reminder",
            reminder.message or f"Time to check in: {habit.name}",
            {"habit_id": habit.id, "reminder_id": reminder.id},
        )
        queued += 1

    db.commit()
    return queued


async def check_reminders():
    db = SessionLocal()
    try:
        queued = queue_due_reminders(db)
        if queued:
            logger.info(f"⏰ {queued} reminders queued")
    except Exception as e:
        logger.error(f"Error in check_reminders: {e}")
        db.rollback()
    finally:
        db.close()


# =============================================================================
# ===================== PUSH DELIVERY =========================================
# =============================================================================

async def deliver_pending(db: Session, bot: Bot, batch_size: int = 100) -> int:
    """
    Sends undelivered notifications of users linked to Telegram and stamps
    delivered_at. A failed send stays pending for the next run.
    """
    rows = db.query(Notification, User.telegram_id).join(User).filter(
        Notification.delivered_at == None,  # noqa: E711
        User.telegram_id != None  # noqa: E711
    ).order_by(Notification.id).limit(batch_size).all()

    sent = 0
    for notification, telegram_id in rows:
        text = f"<b>{html.escape(notification.title)}</b>\n{html.escape(notification.message)}"
        try:
            await bot.send_message(chat_id=telegram_id, text=text, parse_mode=ParseMode.HTML)
        except TelegramError as e:
            logger.error(f"Error sending notification {notification.id} to {telegram_id}: {e}")
            continue
        notification.delivered_at = utcnow()
        db.commit()
        sent += 1

    return sent


async def deliver_pending_notifications():
    if not bot_instance:
        logger.warning("Bot not initialised, skipping delivery")
        return

    db = SessionLocal()
    try:
        await deliver_pending(db, bot_instance)
    except Exception as e:
        logger.error(f"Error in deliver_pending_notifications: {e}")
        db.rollback()
    finally:
        db.close()


# =============================================================================
# ===================== STREAKS ===============================================
# =============================================================================

async def streak_check():
    """Lapsed streaks go back to 0 and their owners are told"""
    db = SessionLocal()
    try:
        reset_lapsed_streaks(db, Notifier(db))
    except Exception as e:
        logger.error(f"Error in streak_check: {e}")
        db.rollback()
    finally:
        db.close()


# =============================================================================
# ===================== STREAK ALERTS =========================================
# =============================================================================

def queue_streak_alerts(db: Session) -> int:
    """An evening nudge for every active habit sitting on a milestone streak"""
    notifier = Notifier(db)
    habits = db.query(Habit).join(User).filter(
        Habit.status == HabitStatus.active.value,
        Habit.streak > 0,
        User.deactivated == False  # noqa: E712
    ).all()

    queued = 0
    for habit in habits:
        if not is_streak_milestone(habit.streak):
            continue
        notifier.create(
            habit.user_id,
            NotificationType.streak.value,
            "🔥 Streak Alert!",
            f"You're on a {habit.streak}-day streak with {habit.name}! Keep it up!",
            {"habit_id": habit.id, "streak": habit.streak},
        )
        queued += 1

    db.commit()
    return queued


async def streak_alerts():
    db = SessionLocal()
    try:
        queued = queue_streak_alerts(db)
        if queued:
            logger.info(f"🔥 {queued} streak alerts queued")
    except Exception as e:
        logger.error(f"Error in streak_alerts: {e}")
        db.rollback()
    finally:
        db.close()


# =============================================================================
# ===================== MOTIVATION ============================================
# =============================================================================

def _active_users_with_habits(db: Session) -> list[tuple[User, list[Habit]]]:
    result = []
    for user in db.query(User).filter(User.deactivated == False).order_by(User.id).all():  # noqa: E712
        habits = tracked_habits(db, user.id)
        if habits:
            result.append((user, habits))
    return result


async def queue_daily_motivations(db: Session, client: AIClient) -> int:
    """
    One motivation notification per user with habits. A failure for one
    user is logged and skipped; the others still get theirs.
    """
    notifier = Notifier(db)
    queued = 0

    for user, habits in _active_users_with_habits(db):
        user_id = user.id
        try:
            total_streak = sum(h.streak or 0 for h in habits)
            message, _ = await get_motivation(client, total_streak, habit_snapshot(habits))
            notifier.create(user_id, NotificationType.ai_insight.value, "Daily motivation", message)
            db.commit()
            queued += 1
        except Exception as e:
            logger.error(f"Error sending motivation to user {user_id}: {e}")
            db.rollback()

    return queued


async def send_daily_motivations(client: Optional[AIClient] = None):
    db = SessionLocal()
    try:
        queued = await queue_daily_motivations(db, client or AIClient())
        logger.info(f"💬 {queued} daily motivations queued")
    except Exception as e:
        logger.error(f"Error in send_daily_motivations: {e}")
        db.rollback()
    finally:
        db.close()


# =============================================================================
# ===================== INACTIVE USERS ========================================
# =============================================================================

async def queue_inactivity_nudges(db: Session, client: AIClient, now: Optional[datetime] = None,
                                  inactive_days: int = INACTIVE_AFTER_DAYS) -> int:
    """Users silent for more than `inactive_days` get a re-engagement message"""
    now = now or utcnow()
    cutoff = now - timedelta(days=inactive_days)
    notifier = Notifier(db)
    queued = 0

    for user, habits in _active_users_with_habits(db):
        if user.last_activity is None or user.last_activity >= cutoff:
            continue

        user_id = user.id
        try:
            days = (now - user.last_activity).days
            message, _ = await detect_inactive_user(client, days, habit_snapshot(habits))
            notifier.create(user_id, NotificationType.ai_insight.value, "We miss you!", message,
                            {"days_inactive": days})
            db.commit()
            queued += 1
        except Exception as e:
            logger.error(f"Error checking inactive user {user_id}: {e}")
            db.rollback()

    return queued


async def check_inactive_users(client: Optional[AIClient] = None):
    db = SessionLocal()
    try:
        queued = await queue_inactivity_nudges(db, client or AIClient())
        if queued:
            logger.info(f"👋 {queued} inactive users nudged")
    except Exception as e:
        logger.error(f"Error in check_inactive_users: {e}")
        db.rollback()
    finally:
        db.close()


# =============================================================================
# ===================== SETUP =================================================
# =============================================================================

def create_scheduler(bot: Optional[Bot] = None) -> AsyncIOScheduler:
    global bot_instance, scheduler
    bot_instance = bot

    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        check_reminders,
        CronTrigger(second=0),
        id="check_reminders",
        name="Queue due reminders",
        replace_existing=True
    )

    if bot is not None:
        scheduler.add_job(
            deliver_pending_notifications,
            CronTrigger(second=30),
            id="deliver_notifications",
            name="Push notifications through Telegram",
            replace_existing=True
        )

    scheduler.add_job(
        streak_check,
        CronTrigger(minute=5),
        id="streak_check",
        name="Reset lapsed streaks",
        replace_existing=True
    )

    scheduler.add_job(
        send_daily_motivations,
        CronTrigger(hour=8, minute=0),
        id="daily_motivation",
        name="Daily motivation",
        replace_existing=True
    )

    scheduler.add_job(
        check_inactive_users,
        CronTrigger(hour=21, minute=0),
        id="inactive_users",
        name="Re-engage inactive users",
        replace_existing=True
    )

    scheduler.add_job(
        streak_alerts,
        CronTrigger(hour=22, minute=0),
        id="streak_alerts",
        name="Milestone streak alerts",
        replace_existing=True
    )

    logger.info("⏰ Scheduler configured")
    return scheduler


def start_scheduler():
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler started")


def stop_scheduler():
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler stopped")
