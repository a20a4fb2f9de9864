"""
=============================================================================
CONFIG.PY — Settings and game constants
=============================================================================
Everything that changes between environments is read from environment
variables. Local development works with no variables at all:
  - SQLite file database
  - a development JWT secret
  - no Telegram push delivery
  - AI features answer with fallback messages

The second half of the file holds the gamification tables. They are plain
constants so tests (and future tuning) can read them directly.
"""

import os

# ─────────────────────────────────────────────────────────────────────────────
# ENVIRONMENT
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./growtrack.db")

SECRET_KEY = os.getenv("SECRET_KEY", "growtrack-dev-secret-key-change-me")
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", "30"))

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
# Without a token the push delivery job is not scheduled.

AI_API_KEY = os.getenv("AI_API_KEY") or os.getenv("GEMINI_API_KEY")
AI_MODEL = os.getenv("AI_MODEL", "gemini-1.5-flash")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_TIMEZONE = "UTC"

# ─────────────────────────────────────────────────────────────────────────────
# LEVELS
# ─────────────────────────────────────────────────────────────────────────────
# LEVEL_XP_REQUIREMENTS[i] = minimum total XP for level i + 1

LEVEL_XP_REQUIREMENTS = [
    0, 100, 250, 500, 1000, 1750, 2750, 4000, 5500, 7500,
    10000, 13000, 16500, 20500, 25000, 30000, 36000, 43000, 51000, 60000,
]

LEVEL_TITLES = {
    1: "Seedling",
    3: "Sprout",
    5: "Consistent",
    8: "Disciplined",
    10: "Veteran",
    15: "Master",
    20: "Legend",
}

# ─────────────────────────────────────────────────────────────────────────────
# XP REWARDS
# ─────────────────────────────────────────────────────────────────────────────

XP_CHECK_IN = 10
XP_LEVEL_UP_BONUS = 50
XP_STREAK_7 = 50
XP_STREAK_30 = 200
XP_STREAK_100 = 500

# ─────────────────────────────────────────────────────────────────────────────
# MILESTONES
# ─────────────────────────────────────────────────────────────────────────────

STREAK_MILESTONES = (7, 30, 50, 100)
# ...and every multiple of 100 after that (see gamification.is_streak_milestone)

COMPLETION_MILESTONES = (10, 25, 50, 100, 250, 500)

# ─────────────────────────────────────────────────────────────────────────────
# ENGAGEMENT
# ─────────────────────────────────────────────────────────────────────────────

INACTIVE_AFTER_DAYS = int(os.getenv("INACTIVE_AFTER_DAYS", "2"))
# days without any authenticated request before the re-engagement message
