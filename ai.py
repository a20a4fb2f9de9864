"""
=============================================================================
AI.PY — Generative AI client (Gemini REST API)
=============================================================================
Motivational text and insights are ENRICHMENT: nothing in streaks, XP or
achievements waits for them or depends on them. Every caller must cope with
AIUnavailableError, or use the helpers below that fall back to fixed
text or a fixed JSON payload.
"""

import asyncio
import copy
import json
import logging
import re
from typing import Optional

import httpx

from config import AI_API_KEY, AI_MODEL, AI_TIMEOUT_SECONDS
from errors import AIUnavailableError

logger = logging.getLogger("growtrack.ai")

BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
RETRY_STATUS = {429, 500, 502, 503, 504}


def parse_json_text(text: str):
    """JSON from a model answer, tolerating ```json fences around it"""
    cleaned = re.sub(r"```(?:json)?", "", text, flags=re.IGNORECASE).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", cleaned)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
    raise AIUnavailableError("AI returned invalid JSON")


class AIClient:
    def __init__(self, api_key: Optional[str] = AI_API_KEY, model: str = AI_MODEL,
                 timeout: float = AI_TIMEOUT_SECONDS, retries: int = 2,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.retries = retries
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, prompt: str, expect_json: bool = False, system: str = ""):
        """
        Text (or parsed JSON with expect_json=True) for a prompt.
        Retries transport errors and 429/5xx with a short backoff.
        """
        if not self.configured:
            raise AIUnavailableError("AI API key is not configured")

        full_prompt = f"{system}\n\n{prompt}" if system else prompt
        generation_config = {"temperature": 0.7, "topP": 0.95, "maxOutputTokens": 1024}
        if expect_json:
            generation_config["response_mime_type"] = "application/json"

        payload = {
            "contents": [{"parts": [{"text": full_prompt}]}],
            "generationConfig": generation_config,
        }
        url = f"{BASE_URL}/{self.model}:generateContent"

        last_error = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(self.retries + 1):
                try:
                    r = await client.post(url, params={"key": self.api_key}, json=payload)
                    if r.status_code in RETRY_STATUS:
                        last_error = f"HTTP {r.status_code}"
                    elif r.is_error:
                        raise AIUnavailableError(f"AI request rejected: HTTP {r.status_code}")
                    else:
                        text = r.json()["candidates"][0]["content"]["parts"][0]["text"].strip()
                        return parse_json_text(text) if expect_json else text
                except httpx.TransportError as e:
                    last_error = str(e)
                except (KeyError, IndexError, TypeError, ValueError) as e:
                    raise AIUnavailableError(f"Unexpected AI response: {e}")

                if attempt < self.retries:
                    logger.warning(f"⚠️ AI call failed ({last_error}), retry {attempt + 1}/{self.retries}")
                    await asyncio.sleep(2 ** attempt)

        raise AIUnavailableError(f"AI request failed: {last_error}")


def fallback_motivation(streak: int) -> str:
    if streak > 0:
        return f"You're on a {streak}-day streak! Keep pushing forward!"
    return "Every day is a fresh start. One check-in at a time!"


async def get_motivation(client: AIClient, streak: int, recent_activity: list[dict]) -> tuple[str, bool]:
    """(message, generated). generated is False when the fallback was used."""
    prompt = (
        f"Generate a motivational message for a user with a {streak}-day streak.\n\n"
        f"Recent activity:\n{json.dumps(recent_activity, indent=2, default=str)}\n\n"
        "Keep it under 150 words, warm and encouraging."
    )
    try:
        message = await client.generate(prompt, system="You are a motivational coach. Be warm and encouraging.")
        return message, True
    except AIUnavailableError as e:
        logger.info(f"Motivation fallback used: {e.message}")
        return fallback_motivation(streak), False


# =============================================================================
# ===================== INSIGHTS ==============================================
# =============================================================================

FALLBACK_ANALYSIS = {
    "analysis": "Continue tracking to see patterns",
    "patterns": "Track consistently to identify patterns",
    "motivation": "Keep up the great work!",
    "recommendations": ["Stay consistent", "Set reminders"],
}

FALLBACK_RECOMMENDATIONS = {"recommendations": []}

FALLBACK_FORECAST = {
    "atRiskHabits": [],
    "riskFactors": {},
    "recommendations": ["Maintain consistency", "Set reminders"],
}

COACH = "You are a habit coach. Answer with JSON only."


async def _json_insight(client: AIClient, prompt: str, fallback: dict, feature: str) -> tuple[dict, bool]:
    """(insight, generated). Anything but a JSON object from the model means the fallback."""
    try:
        result = await client.generate(prompt, expect_json=True, system=COACH)
    except AIUnavailableError as e:
        logger.info(f"{feature} fallback used: {e.message}")
        return copy.deepcopy(fallback), False

    if not isinstance(result, dict):
        logger.warning(f"⚠️ {feature}: AI answered {type(result).__name__}, expected an object")
        return copy.deepcopy(fallback), False
    return result, True


async def analyze_progress(client: AIClient, habits: list[dict], check_ins: list[dict]) -> tuple[dict, bool]:
    prompt = (
        "Analyze this user's habit progress.\n\n"
        f"Habits:\n{json.dumps(habits, indent=2, default=str)}\n\n"
        f"Check-ins of the last 30 days:\n{json.dumps(check_ins, indent=2, default=str)}\n\n"
        'Return {"analysis": str, "patterns": str, "motivation": str, "recommendations": [str]}.'
    )
    return await _json_insight(client, prompt, FALLBACK_ANALYSIS, "Progress analysis")


async def recommend_habits(client: AIClient, habits: list[dict], goals: list[str]) -> tuple[dict, bool]:
    prompt = (
        "Suggest up to 5 new habits for this user.\n\n"
        f"Current habits:\n{json.dumps(habits, indent=2, default=str)}\n\n"
        f"Goals: {', '.join(goals) if goals else 'not set'}\n\n"
        'Return {"recommendations": [{"name": str, "category": str, "reason": str}]}.'
    )
    return await _json_insight(client, prompt, FALLBACK_RECOMMENDATIONS, "Habit recommendations")


async def forecast_streak_risk(client: AIClient, habits: list[dict]) -> tuple[dict, bool]:
    prompt = (
        "Which of these habits are at risk of losing their streak soon?\n\n"
        f"{json.dumps(habits, indent=2, default=str)}\n\n"
        'Return {"atRiskHabits": [str], "riskFactors": {habit: reason}, "recommendations": [str]}.'
    )
    return await _json_insight(client, prompt, FALLBACK_FORECAST, "Streak forecast")


def fallback_inactivity(days_inactive: int) -> str:
    return f"We noticed you haven't checked in for {days_inactive} days. Your habits are waiting for you!"


async def detect_inactive_user(client: AIClient, days_inactive: int, habits: list[dict]) -> tuple[str, bool]:
    """A short re-engagement message for someone who stopped checking in"""
    prompt = (
        f"The user has not checked in for {days_inactive} days.\n\n"
        f"Their habits:\n{json.dumps(habits, indent=2, default=str)}\n\n"
        "Write a short, kind message (under 80 words) inviting them back."
    )
    try:
        message = await client.generate(prompt, system="You are a supportive habit coach.")
        return message, True
    except AIUnavailableError as e:
        logger.info(f"Inactivity fallback used: {e.message}")
        return fallback_inactivity(days_inactive), False
