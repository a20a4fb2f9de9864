"""
=============================================================================
CHECKINS.PY — The check-in pipeline
=============================================================================
Order matters:

  1. Validate: habit exists, belongs to the user, is active, the date is
     not in the future and fits the recurrence rule
  2. Write the check-in row and the streak fields in ONE commit
     (versioned UPDATE on the habit, retried if another request won)
  3. Only then, best effort: streak-ended notification, XP, achievements,
     last activity. A failure here is logged; the check-in stays.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import XP_CHECK_IN
from errors import AlreadyCheckedInError, AuthorizationError, NotFoundError, ValidationError
from gamification import AchievementEvaluator, CheckInContext, XPCalculator
from models import Achievement, CheckIn, Habit, HabitStatus, User, utcnow
from notifications import Notifier
from schemas import CheckInCreate, CheckInUpdate
from streaks import StreakEngine, StreakResult, is_date_valid_for_habit, normalize_date

logger = logging.getLogger("growtrack.checkins")

MAX_WRITE_ATTEMPTS = 3


@dataclass
class CheckInOutcome:
    check_in: CheckIn
    streak: Optional[StreakResult] = None
    achievements: list[Achievement] = field(default_factory=list)


def get_owned_habit(db: Session, user: User, habit_id: int) -> Habit:
    """404 if missing, 403 if it belongs to someone else"""
    habit = db.query(Habit).filter(Habit.id == habit_id).first()
    if not habit:
        raise NotFoundError("Habit not found")
    if habit.user_id != user.id:
        raise AuthorizationError("Unauthorized")
    return habit


class CheckInService:
    """Wires notifier, streak engine, XP and achievements around one session"""

    def __init__(self, db: Session, notifier: Optional[Notifier] = None,
                 xp: Optional[XPCalculator] = None):
        self.db = db
        self.notifier = notifier or Notifier(db)
        self.streaks = StreakEngine(db, self.notifier)
        self.xp = xp or XPCalculator(db, self.notifier)
        self.achievements = AchievementEvaluator(db, self.xp, self.notifier)

    # ─────────────────────────────────────────────────────────────────────
    # CREATE
    # ─────────────────────────────────────────────────────────────────────

    def create_check_in(self, user: User, data: CheckInCreate) -> CheckInOutcome:
        habit = get_owned_habit(self.db, user, data.habit_id)

        if habit.status != HabitStatus.active.value:
            raise ValidationError("Habit is not active")

        day = normalize_date(data.date, user.timezone)
        if day > normalize_date(None, user.timezone):
            raise ValidationError("Cannot check in for a future date")
        if not is_date_valid_for_habit(habit, day):
            raise ValidationError("Check-in date is not valid for this habit frequency")

        percentage = data.completion_percentage
        if percentage is None:
            percentage = 100 if data.completed else 0

        user_id = user.id
        check_in, result = self._write(habit, user_id, day, data, percentage)
        outcome = CheckInOutcome(check_in=check_in, streak=result)

        if result is not None:
            outcome.achievements = self._after_completion(habit, user_id, result)

        self._touch_activity(user_id)
        return outcome

    def _write(self, habit: Habit, user_id: int, day, data: CheckInCreate, percentage: int):
        """
        Check-in row + streak update, one transaction. StaleDataError means
        another request updated the habit first: reload and try again, which
        turns a duplicate submission into AlreadyCheckedInError.
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            check_in = CheckIn(
                habit_id=habit.id,
                user_id=user_id,
                date=day,
                completed=data.completed,
                completion_percentage=percentage,
                notes=data.notes,
                photo_url=data.photo_url,
                mood=data.mood,
            )
            try:
                self.db.add(check_in)
                result = None
                if data.completed:
                    result = self.streaks.update_streak(habit, day)
                self.db.commit()
            except AlreadyCheckedInError:
                self.db.rollback()
                raise
            except StaleDataError:
                self.db.rollback()
                logger.warning(f"⚠️ Concurrent update on habit {habit.id} (attempt {attempt})")
                self.db.refresh(habit)
                continue

            self.db.refresh(check_in)
            logger.info(f"✅ Check-in {check_in.id}: habit {habit.id} on {day.isoformat()}")
            return check_in, result

        raise ValidationError("Habit is being updated by another request, try again")

    def _after_completion(self, habit: Habit, user_id: int, result: StreakResult) -> list[Achievement]:
        """Side effects of a completed check-in; never raises"""
        try:
            self.streaks.notify_streak_break(habit, result)
            self.db.commit()
        except Exception:
            logger.exception(f"❌ Streak notification failed for habit {habit.id}")
            self.db.rollback()

        try:
            self.xp.add_xp(user_id, XP_CHECK_IN, "check_in")
        except Exception:
            logger.exception(f"❌ Check-in XP failed for user {user_id}")
            self.db.rollback()

        return self.achievements.check_achievements(
            user_id, CheckInContext(habit_id=habit.id, streak=result.streak)
        )

    def _touch_activity(self, user_id: int):
        try:
            self.db.query(User).filter(User.id == user_id).update(
                {User.last_activity: utcnow()}, synchronize_session=False
            )
            self.db.commit()
        except Exception:
            logger.exception(f"❌ Could not update last activity of user {user_id}")
            self.db.rollback()

    # ─────────────────────────────────────────────────────────────────────
    # READ / EDIT / DELETE
    # ─────────────────────────────────────────────────────────────────────

    def list_check_ins(self, user: User, habit_id: int, limit: int = 50,
                       before_id: Optional[int] = None) -> list[CheckIn]:
        """Newest first; before_id pages past a check-in already seen"""
        habit = self.db.query(Habit).filter(Habit.id == habit_id).first()
        if not habit or habit.user_id != user.id:
            raise NotFoundError("Habit not found")

        query = self.db.query(CheckIn).filter(
            CheckIn.habit_id == habit_id,
            CheckIn.user_id == user.id
        )
        if before_id is not None:
            query = query.filter(CheckIn.id < before_id)
        return query.order_by(CheckIn.date.desc(), CheckIn.id.desc()).limit(limit).all()

    def _get_owned(self, user: User, check_in_id: int) -> CheckIn:
        check_in = self.db.query(CheckIn).filter(CheckIn.id == check_in_id).first()
        if not check_in:
            raise NotFoundError("Check-in not found")
        if check_in.user_id != user.id:
            raise AuthorizationError("Unauthorized")
        return check_in

    def update_check_in(self, user: User, check_in_id: int, data: CheckInUpdate) -> CheckIn:
        check_in = self._get_owned(user, check_in_id)
        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(check_in, key, value)
        check_in.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(check_in)
        return check_in

    def delete_check_in(self, user: User, check_in_id: int):
        """
        Removes the record only. The habit's completed_dates and streak are
        left alone, and completion milestones already unlocked stay unlocked.
        """
        check_in = self._get_owned(user, check_in_id)
        self.db.delete(check_in)
        self.db.commit()
        logger.info(f"🗑️ Check-in {check_in_id} deleted (user {user.id})")
