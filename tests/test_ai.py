"""Tests for the AI client, against a mocked transport."""

import asyncio

import httpx
import pytest

from ai import (
    FALLBACK_ANALYSIS,
    FALLBACK_FORECAST,
    AIClient,
    analyze_progress,
    detect_inactive_user,
    fallback_inactivity,
    fallback_motivation,
    forecast_streak_risk,
    get_motivation,
    parse_json_text,
)
from errors import AIUnavailableError


def _answer(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _client(handler, retries=0):
    return AIClient(api_key="test-key", model="gemini-test", timeout=5,
                    retries=retries, transport=httpx.MockTransport(handler))


def test_generate_returns_text():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return _answer("  Keep going!  ")

    text = asyncio.run(_client(handler).generate("hi"))

    assert text == "Keep going!"
    assert "gemini-test:generateContent" in seen["url"]
    assert "key=test-key" in seen["url"]


def test_generate_json_strips_fences():
    handler = lambda request: _answer('```json\n{"score": 7}\n```')  # noqa: E731
    assert asyncio.run(_client(handler).generate("hi", expect_json=True)) == {"score": 7}


def test_server_error_is_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503)
        return _answer("second try")

    assert asyncio.run(_client(handler, retries=1).generate("hi")) == "second try"
    assert calls["n"] == 2


def test_client_error_not_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(400)

    with pytest.raises(AIUnavailableError):
        asyncio.run(_client(handler, retries=2).generate("hi"))
    assert calls["n"] == 1


def test_unconfigured_client():
    with pytest.raises(AIUnavailableError):
        asyncio.run(AIClient(api_key=None).generate("hi"))


def test_parse_json_text_rejects_garbage():
    with pytest.raises(AIUnavailableError):
        parse_json_text("not json at all")


def test_motivation_generated():
    message, generated = asyncio.run(get_motivation(_client(lambda r: _answer("You got this")), 4, []))
    assert (message, generated) == ("You got this", True)


def test_motivation_falls_back():
    handler = lambda request: httpx.Response(500)  # noqa: E731
    message, generated = asyncio.run(get_motivation(_client(handler), 4, []))
    assert generated is False
    assert message == fallback_motivation(4)
    assert "4-day streak" in message


# --- Unexpected answer shapes ---

def test_list_body_is_unavailable():
    handler = lambda request: httpx.Response(200, json=[])  # noqa: E731
    with pytest.raises(AIUnavailableError):
        asyncio.run(_client(handler).generate("hi"))


def test_motivation_falls_back_on_list_body():
    handler = lambda request: httpx.Response(200, json=[])  # noqa: E731
    message, generated = asyncio.run(get_motivation(_client(handler), 2, []))
    assert (message, generated) == (fallback_motivation(2), False)


def test_motivation_falls_back_on_null_candidates():
    handler = lambda request: httpx.Response(200, json={"candidates": None})  # noqa: E731
    _, generated = asyncio.run(get_motivation(_client(handler), 2, []))
    assert generated is False


# --- Insights ---

HABITS = [{"name": "Read", "streak": 3}]


def test_analysis_parsed_from_json():
    answer = '{"analysis": "Steady", "patterns": "Mornings", "motivation": "Go", "recommendations": []}'
    insight, generated = asyncio.run(analyze_progress(_client(lambda r: _answer(answer)), HABITS, []))
    assert generated is True
    assert insight["patterns"] == "Mornings"


def test_analysis_falls_back_on_json_array():
    insight, generated = asyncio.run(analyze_progress(_client(lambda r: _answer("[1, 2]")), HABITS, []))
    assert generated is False
    assert insight == FALLBACK_ANALYSIS


def test_fallback_is_a_copy():
    insight, _ = asyncio.run(forecast_streak_risk(AIClient(api_key=None), HABITS))
    insight["recommendations"].append("mutated")
    assert FALLBACK_FORECAST["recommendations"] == ["Maintain consistency", "Set reminders"]


def test_forecast_requests_json():
    seen = {}

    def handler(request):
        import json
        seen["config"] = json.loads(request.content)["generationConfig"]
        return _answer('{"atRiskHabits": ["Read"], "riskFactors": {}, "recommendations": []}')

    insight, generated = asyncio.run(forecast_streak_risk(_client(handler), HABITS))

    assert generated is True
    assert insight["atRiskHabits"] == ["Read"]
    assert seen["config"]["response_mime_type"] == "application/json"


def test_inactivity_message_falls_back():
    message, generated = asyncio.run(detect_inactive_user(AIClient(api_key=None), 3, HABITS))
    assert (message, generated) == (fallback_inactivity(3), False)
    assert "3 days" in message
