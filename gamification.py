"""
=============================================================================
GAMIFICATION.PY — XP, levels and achievements
=============================================================================
  - XP: every completed check-in, achievement and level-up gives points
  - Levels: a fixed ascending XP table (config.LEVEL_XP_REQUIREMENTS)
  - Achievements: streak milestones and completion milestones, each
    unlocked at most once per user

Idempotency: every achievement carries a milestone_key ("streak:7",
"completion:12:50", "level:3"). The evaluator looks the key up before
inserting, and the (user_id, milestone_key) unique constraint turns a racing
duplicate into an IntegrityError that is treated as "already unlocked".

Everything here runs AFTER the check-in is committed. Failures are logged
and never undo the check-in.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import (
    LEVEL_XP_REQUIREMENTS, LEVEL_TITLES, XP_LEVEL_UP_BONUS,
    XP_STREAK_7, XP_STREAK_30, XP_STREAK_100,
    STREAK_MILESTONES, COMPLETION_MILESTONES
)
from errors import NotFoundError, ValidationError
from models import Achievement, AchievementType, CheckIn, NotificationType, User
from notifications import Notifier
from schemas import CompletionMetadata, LevelMetadata, StreakMetadata

logger = logging.getLogger("growtrack.gamification")


# =============================================================================
# ===================== LEVELS ================================================
# =============================================================================

def level_for_xp(xp: int, thresholds=LEVEL_XP_REQUIREMENTS) -> int:
    """Greatest i + 1 with xp >= thresholds[i], walking from the top"""
    for i in range(len(thresholds) - 1, -1, -1):
        if xp >= thresholds[i]:
            return i + 1
    return 1


def get_level_title(level: int) -> str:
    title = LEVEL_TITLES[1]
    for lvl, name in sorted(LEVEL_TITLES.items()):
        if level >= lvl:
            title = name
    return title


def get_level_info(user: User, thresholds=LEVEL_XP_REQUIREMENTS) -> dict:
    """Level, XP inside the current level and progress to the next one"""
    level = user.level or 1
    xp = user.xp or 0

    floor = thresholds[min(level, len(thresholds)) - 1]
    ceiling = thresholds[level] if level < len(thresholds) else None

    if ceiling is None:
        progress = 100.0
    else:
        progress = round((xp - floor) / (ceiling - floor) * 100, 1)

    return {
        "level": level,
        "xp": xp,
        "xp_in_level": xp - floor,
        "xp_next_level": ceiling,
        "xp_progress": progress,
        "title": get_level_title(level),
    }


def get_leaderboard(db: Session, limit: int = 100) -> list[dict]:
    users = db.query(User).order_by(User.xp.desc(), User.id).limit(limit).all()
    return [
        {"rank": rank, "user_id": u.id, "name": u.name, "xp": u.xp or 0, "level": u.level or 1}
        for rank, u in enumerate(users, start=1)
    ]


# =============================================================================
# ===================== UNLOCKING =============================================
# =============================================================================

@dataclass
class Milestone:
    """An achievement that may be unlocked, identified by its key"""
    key: str
    type: str
    title: str
    description: str
    icon: str
    xp_reward: int
    metadata: BaseModel


def unlock_achievement(db: Session, user_id: int, milestone: Milestone) -> Optional[Achievement]:
    """
    Inserts the achievement unless the user already has its key.
    Returns None when it was already unlocked. The caller commits.
    """
    existing = db.query(Achievement.id).filter(
        Achievement.user_id == user_id,
        Achievement.milestone_key == milestone.key
    ).first()
    if existing:
        return None

    try:
        with db.begin_nested():
            achievement = Achievement(
                user_id=user_id,
                type=milestone.type,
                title=milestone.title,
                description=milestone.description,
                icon=milestone.icon,
                xp_reward=milestone.xp_reward,
                meta=milestone.metadata.model_dump(),
                milestone_key=milestone.key,
            )
            db.add(achievement)
    except IntegrityError:
        logger.info(f"Achievement {milestone.key} already unlocked for user {user_id}")
        return None

    logger.info(f"🏆 User {user_id} unlocked: {milestone.title}")
    return achievement


def list_achievements(db: Session, user_id: int) -> list[Achievement]:
    return db.query(Achievement).filter(
        Achievement.user_id == user_id
    ).order_by(Achievement.unlocked_at.desc(), Achievement.id.desc()).all()


# =============================================================================
# ===================== XP ====================================================
# =============================================================================

@dataclass
class XPResult:
    xp: int
    level: int
    level_up: bool


class XPCalculator:
    """Adds XP to users and handles level-ups"""

    def __init__(self, db: Session, notifier: Notifier, thresholds=None,
                 level_up_bonus: int = XP_LEVEL_UP_BONUS):
        self.db = db
        self.notifier = notifier
        self.thresholds = LEVEL_XP_REQUIREMENTS if thresholds is None else thresholds
        self.level_up_bonus = level_up_bonus

    def level_for_xp(self, xp: int) -> int:
        return level_for_xp(xp, self.thresholds)

    def add_xp(self, user_id: int, amount: int, source: str = "check_in") -> XPResult:
        """
        Adds `amount` XP and stores xp + level in one commit.

        A level-up creates a level achievement and a notification, then
        awards the level-up bonus through add_xp again (which can level up
        once more; the table is finite so this ends). The result describes
        this award only.
        """
        if amount < 0:
            raise ValidationError("XP amount cannot be negative")

        user = self.db.query(User).filter(User.id == user_id).with_for_update().first()
        if not user:
            raise NotFoundError("User not found")

        current_level = user.level or 1
        new_xp = (user.xp or 0) + amount
        new_level = max(current_level, self.level_for_xp(new_xp))

        user.xp = new_xp
        user.level = new_level
        self.db.commit()

        level_up = new_level > current_level
        logger.debug(f"User {user_id} +{amount} XP ({source}) → {new_xp} XP, level {new_level}")

        if level_up:
            try:
                self._handle_level_up(user_id, new_level)
            except Exception:
                logger.exception(f"❌ Level-up handling failed for user {user_id}")
                self.db.rollback()

        return XPResult(xp=new_xp, level=new_level, level_up=level_up)

    def _handle_level_up(self, user_id: int, new_level: int):
        achievement = unlock_achievement(self.db, user_id, Milestone(
            key=f"level:{new_level}",
            type=AchievementType.level.value,
            title=f"Level {new_level}!",
            description=f"You've reached level {new_level}!",
            icon="⭐",
            xp_reward=self.level_up_bonus,
            metadata=LevelMetadata(level=new_level),
        ))
        if achievement is None:
            return

        self.notifier.create(
            user_id,
            NotificationType.achievement.value,
            "Level Up!",
            f"Congratulations! You've reached level {new_level}!",
            {"achievement_id": achievement.id, "level": new_level},
        )
        self.db.commit()
        logger.info(f"⬆️ User {user_id} reached level {new_level}")

        if self.level_up_bonus:
            self.add_xp(user_id, self.level_up_bonus, "level_up")


# =============================================================================
# ===================== ACHIEVEMENTS ==========================================
# =============================================================================

def is_streak_milestone(streak: int) -> bool:
    """7, 30, 50, 100 and every multiple of 100"""
    return streak in STREAK_MILESTONES or (streak > 0 and streak % 100 == 0)


def streak_reward(streak: int) -> tuple[int, str]:
    """(xp_reward, icon) by tier"""
    if streak >= 100:
        return XP_STREAK_100, "🔥"
    if streak >= 30:
        return XP_STREAK_30, "⭐"
    return XP_STREAK_7, "✨"


def completion_reward(completions: int) -> int:
    if completions >= 100:
        return 100
    if completions >= 50:
        return 50
    return 25


@dataclass
class CheckInContext:
    habit_id: int
    streak: int
    type: str = "check_in"


class AchievementEvaluator:
    """Unlocks streak and completion achievements after a check-in"""

    def __init__(self, db: Session, xp: XPCalculator, notifier: Notifier):
        self.db = db
        self.xp = xp
        self.notifier = notifier

    def check_achievements(self, user_id: int, context: CheckInContext) -> list[Achievement]:
        """
        Returns the achievements unlocked by this call (possibly none).
        Each one gets a notification and its XP reward. A failure on one
        milestone is logged and the others still run.
        """
        if context.type != "check_in":
            return []

        candidates = []
        try:
            if context.streak:
                candidates += self._streak_milestones(context)
            candidates += self._completion_milestones(user_id, context.habit_id)
        except Exception:
            logger.exception(f"❌ Could not evaluate achievements for user {user_id}")
            self.db.rollback()
            return []

        unlocked = []
        for milestone in candidates:
            try:
                achievement = unlock_achievement(self.db, user_id, milestone)
                if achievement is None:
                    continue

                self.notifier.create(
                    user_id,
                    NotificationType.achievement.value,
                    achievement.title,
                    achievement.description,
                    {"achievement_id": achievement.id},
                )
                self.db.commit()
                unlocked.append(achievement)

                if achievement.xp_reward:
                    self.xp.add_xp(user_id, achievement.xp_reward, "achievement")
            except Exception:
                logger.exception(f"❌ Achievement {milestone.key} failed for user {user_id}")
                self.db.rollback()

        return unlocked

    def _streak_milestones(self, context: CheckInContext) -> list[Milestone]:
        streak = context.streak
        if not is_streak_milestone(streak):
            return []

        xp_reward, icon = streak_reward(streak)
        return [Milestone(
            key=f"streak:{streak}",
            type=AchievementType.streak.value,
            title=f"{streak} Day Streak!",
            description=f"Amazing! You've maintained a {streak}-day streak!",
            icon=icon,
            xp_reward=xp_reward,
            metadata=StreakMetadata(streak=streak, habit_id=context.habit_id),
        )]

    def _completion_milestones(self, user_id: int, habit_id: int) -> list[Milestone]:
        """Every milestone at or below the completed count; unlocking skips known keys"""
        total = self.db.query(func.count(CheckIn.id)).filter(
            CheckIn.user_id == user_id,
            CheckIn.habit_id == habit_id,
            CheckIn.completed == True  # noqa: E712
        ).scalar() or 0

        return [
            Milestone(
                key=f"completion:{habit_id}:{milestone}",
                type=AchievementType.completion.value,
                title=f"{milestone} Completions!",
                description=f"You've completed this habit {milestone} times!",
                icon="🎯",
                xp_reward=completion_reward(milestone),
                metadata=CompletionMetadata(completions=milestone, habit_id=habit_id),
            )
            for milestone in COMPLETION_MILESTONES
            if total >= milestone
        ]
