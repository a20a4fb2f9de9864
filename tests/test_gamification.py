"""Tests for XP, levels and achievements."""

import pytest

from errors import NotFoundError, ValidationError
from gamification import (
    AchievementEvaluator,
    CheckInContext,
    Milestone,
    XPCalculator,
    get_leaderboard,
    get_level_info,
    is_streak_milestone,
    level_for_xp,
    unlock_achievement,
)
from models import Achievement, CheckIn, Notification, User
from schemas import AchievementResponse, CompletionMetadata, StreakMetadata

THRESHOLDS = [0, 100, 250]


def _achievements(db, user_id):
    return db.query(Achievement).filter(Achievement.user_id == user_id).all()


def _completed_check_ins(db, user, habit, count):
    from datetime import date, timedelta
    for i in range(count):
        db.add(CheckIn(habit_id=habit.id, user_id=user.id,
                       date=date(2023, 1, 1) + timedelta(days=i), completed=True))
    db.commit()


# --- Levels ---

def test_level_for_xp():
    assert level_for_xp(0, THRESHOLDS) == 1
    assert level_for_xp(99, THRESHOLDS) == 1
    assert level_for_xp(100, THRESHOLDS) == 2
    assert level_for_xp(249, THRESHOLDS) == 2
    assert level_for_xp(10_000, THRESHOLDS) == 3


def test_level_info_progress():
    info = get_level_info(User(xp=175, level=2), THRESHOLDS)
    assert info["xp_in_level"] == 75
    assert info["xp_next_level"] == 250
    assert info["xp_progress"] == 50.0


def test_level_info_at_max_level():
    info = get_level_info(User(xp=900, level=3), THRESHOLDS)
    assert info["xp_next_level"] is None
    assert info["xp_progress"] == 100.0


def test_streak_milestones():
    assert [s for s in range(1, 301) if is_streak_milestone(s)] == [7, 30, 50, 100, 200, 300]


# --- XP ---

def test_add_xp_without_level_up(db, notifier, make_user):
    user = make_user(xp=10, level=1)
    result = XPCalculator(db, notifier, THRESHOLDS).add_xp(user.id, 20)
    assert (result.xp, result.level, result.level_up) == (30, 1, False)


def test_level_up_awards_bonus_once(db, notifier, make_user):
    user = make_user(xp=95, level=1)

    result = XPCalculator(db, notifier, THRESHOLDS, level_up_bonus=50).add_xp(user.id, 10)

    assert (result.xp, result.level, result.level_up) == (105, 2, True)
    db.refresh(user)
    assert user.xp == 155
    assert user.level == 2

    achievements = _achievements(db, user.id)
    assert [a.milestone_key for a in achievements] == ["level:2"]
    notifications = db.query(Notification).filter(Notification.user_id == user.id).all()
    assert [n.title for n in notifications] == ["Level Up!"]


def test_bonus_can_chain_level_ups(db, notifier, make_user):
    user = make_user(xp=95, level=1)

    XPCalculator(db, notifier, THRESHOLDS, level_up_bonus=150).add_xp(user.id, 10)

    db.refresh(user)
    assert user.level == 3
    assert user.xp == 105 + 150 + 150
    assert sorted(a.milestone_key for a in _achievements(db, user.id)) == ["level:2", "level:3"]


def test_level_never_decreases(db, notifier, make_user):
    user = make_user(xp=10, level=3)
    result = XPCalculator(db, notifier, THRESHOLDS).add_xp(user.id, 5)
    assert result.level == 3
    assert result.level_up is False


def test_explicit_empty_table_is_kept(db, notifier, make_user):
    user = make_user(xp=0, level=1)
    xp = XPCalculator(db, notifier, [])

    result = xp.add_xp(user.id, 500)

    assert xp.thresholds == []
    assert (result.level, result.level_up) == (1, False)


def test_default_table_when_none(db, notifier):
    from config import LEVEL_XP_REQUIREMENTS
    assert XPCalculator(db, notifier).thresholds is LEVEL_XP_REQUIREMENTS


def test_negative_xp_rejected(db, notifier, make_user):
    user = make_user(xp=50)
    with pytest.raises(ValidationError):
        XPCalculator(db, notifier, THRESHOLDS).add_xp(user.id, -5)
    db.refresh(user)
    assert user.xp == 50


def test_unknown_user(db, notifier):
    with pytest.raises(NotFoundError):
        XPCalculator(db, notifier, THRESHOLDS).add_xp(999, 5)


# --- Unlocking ---

def test_unlock_is_idempotent(db, make_user):
    user = make_user()
    milestone = Milestone(
        key="streak:7", type="streak", title="7 Day Streak!", description="d",
        icon="✨", xp_reward=50, metadata=StreakMetadata(streak=7, habit_id=1),
    )

    first = unlock_achievement(db, user.id, milestone)
    db.commit()
    second = unlock_achievement(db, user.id, milestone)

    assert first is not None
    assert second is None
    assert len(_achievements(db, user.id)) == 1


def test_achievement_metadata_round_trip(db, make_user):
    user = make_user()
    achievement = unlock_achievement(db, user.id, Milestone(
        key="streak:30", type="streak", title="30 Day Streak!", description="d",
        icon="⭐", xp_reward=200, metadata=StreakMetadata(streak=30, habit_id=4),
    ))
    db.commit()

    response = AchievementResponse.model_validate(achievement)
    assert isinstance(response.metadata, StreakMetadata)
    assert response.metadata.streak == 30


# --- Evaluator ---

def test_streak_seven_unlocks_once(db, notifier, make_user, make_habit):
    user = make_user()
    habit = make_habit(user)
    xp = XPCalculator(db, notifier)
    evaluator = AchievementEvaluator(db, xp, notifier)

    first = evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=7))
    second = evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=7))

    assert [a.milestone_key for a in first] == ["streak:7"]
    assert first[0].xp_reward == 50
    assert second == []
    db.refresh(user)
    assert user.xp == 50


def test_non_milestone_streak_unlocks_nothing(db, notifier, make_user, make_habit):
    user = make_user()
    habit = make_habit(user)
    evaluator = AchievementEvaluator(db, XPCalculator(db, notifier), notifier)
    assert evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=8)) == []


def test_other_context_types_ignored(db, notifier, make_user, make_habit):
    user = make_user()
    habit = make_habit(user)
    evaluator = AchievementEvaluator(db, XPCalculator(db, notifier), notifier)
    context = CheckInContext(habit_id=habit.id, streak=7, type="manual")
    assert evaluator.check_achievements(user.id, context) == []


def test_completion_fifty_with_lower_ones_already_unlocked(db, notifier, make_user, make_habit):
    user = make_user()
    habit = make_habit(user)
    for n in (10, 25):
        unlock_achievement(db, user.id, Milestone(
            key=f"completion:{habit.id}:{n}", type="completion", title=f"{n} Completions!",
            description="d", icon="🎯", xp_reward=25, metadata=CompletionMetadata(completions=n, habit_id=habit.id),
        ))
    db.commit()
    _completed_check_ins(db, user, habit, 50)

    evaluator = AchievementEvaluator(db, XPCalculator(db, notifier), notifier)
    unlocked = evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=3))

    assert [a.milestone_key for a in unlocked] == [f"completion:{habit.id}:50"]
    assert unlocked[0].xp_reward == 50
    assert unlocked[0].meta == {"type": "completion", "completions": 50, "habit_id": habit.id}


def test_completion_catch_up(db, notifier, make_user, make_habit):
    user = make_user()
    habit = make_habit(user)
    _completed_check_ins(db, user, habit, 26)

    evaluator = AchievementEvaluator(db, XPCalculator(db, notifier), notifier)
    unlocked = evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=1))

    assert [a.milestone_key for a in unlocked] == [
        f"completion:{habit.id}:10", f"completion:{habit.id}:25"
    ]


def test_evaluator_failure_is_swallowed(db, notifier, make_user, make_habit, monkeypatch):
    user = make_user()
    habit = make_habit(user)
    evaluator = AchievementEvaluator(db, XPCalculator(db, notifier), notifier)

    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(evaluator, "_completion_milestones", boom)
    assert evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=7)) == []


def test_xp_failure_keeps_achievement(db, notifier, make_user, make_habit, monkeypatch):
    user = make_user()
    habit = make_habit(user)
    xp = XPCalculator(db, notifier)

    def boom(*args, **kwargs):
        raise RuntimeError("xp store down")

    monkeypatch.setattr(xp, "add_xp", boom)
    evaluator = AchievementEvaluator(db, xp, notifier)
    unlocked = evaluator.check_achievements(user.id, CheckInContext(habit_id=habit.id, streak=7))

    assert [a.milestone_key for a in unlocked] == ["streak:7"]
    assert [a.milestone_key for a in _achievements(db, user.id)] == ["streak:7"]
    db.refresh(user)
    assert user.xp == 0


# --- Leaderboard ---

def test_leaderboard_orders_by_xp(db, make_user):
    make_user(name="Low", xp=10)
    make_user(name="High", xp=500, level=4)
    make_user(name="Mid", xp=200, level=2)

    board = get_leaderboard(db, limit=2)

    assert [e["name"] for e in board] == ["High", "Mid"]
    assert [e["rank"] for e in board] == [1, 2]


def test_fiftieth_completion_unlocks_once(db, notifier, make_user, make_habit):
    user = make_user()
    habit = make_habit(user)
    _completed_check_ins(db, user, habit, 50)
    evaluator = AchievementEvaluator(db, XPCalculator(db, notifier), notifier)
    context = CheckInContext(habit_id=habit.id, streak=2)

    first = evaluator.check_achievements(user.id, context)
    second = evaluator.check_achievements(user.id, context)

    assert f"completion:{habit.id}:50" in [a.milestone_key for a in first]
    assert second == []
    fifty = [a for a in _achievements(db, user.id) if a.meta.get("completions") == 50]
    assert len(fifty) == 1
