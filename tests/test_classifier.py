import asyncio
import json
import time

import httpx
import pytest

from helpers import ScriptedClassifier, verdict
from sentinel.classifier import FALLBACK_REPLY, GroqClassifier, classify_with_deadline, fallback_classification
from sentinel.hardening import CircuitBreaker
from sentinel.store import Message


LATEST = Message(sender="scammer", text="Send OTP to +91 99999 88888 urgently", timestamp=1770005528731)


@pytest.mark.asyncio
async def test_result_within_deadline_is_used():
    classifier = ScriptedClassifier(verdict(True, False, reply="Who is this?", phoneNumbers=["+1-555"]))
    result = await classify_with_deadline(classifier, "s1", [], LATEST, timeout_s=1)
    assert result.degraded is False
    assert result.scam_detected is True
    assert result.reply == "Who is this?"
    assert result.intelligence.phone_numbers == {"+1-555"}


@pytest.mark.asyncio
async def test_timeout_falls_back_and_cancels_late_call():
    classifier = ScriptedClassifier(verdict(True, True), delay=5)
    started = time.monotonic()
    result = await classify_with_deadline(classifier, "s1", [], LATEST, timeout_s=0.05)
    elapsed = time.monotonic() - started

    assert elapsed < 1
    assert result.degraded is True
    assert result.reply == FALLBACK_REPLY
    assert result.scam_detected is False
    assert result.is_engagement_complete is False
    # The slow call never got to deliver its verdict.
    await asyncio.sleep(0)
    assert classifier.cancelled == 1
    assert classifier.completed == 0


@pytest.mark.asyncio
async def test_classifier_error_falls_back():
    breaker = CircuitBreaker(failure_threshold=1)
    classifier = ScriptedClassifier(RuntimeError("boom"))
    result = await classify_with_deadline(classifier, "s1", [], LATEST, timeout_s=1, breaker=breaker)
    assert result.degraded is True
    assert "classifier_error" in result.notes
    assert breaker.is_open is True


@pytest.mark.asyncio
async def test_unparseable_result_falls_back():
    classifier = ScriptedClassifier({"scamDetected": True, "reply": "   "})
    result = await classify_with_deadline(classifier, "s1", [], LATEST, timeout_s=1)
    assert result.degraded is True
    assert "unparseable_result" in result.notes


@pytest.mark.asyncio
async def test_open_circuit_skips_the_call():
    breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=60)
    breaker.record_failure()
    classifier = ScriptedClassifier(verdict(True, True))
    result = await classify_with_deadline(classifier, "s1", [], LATEST, timeout_s=1, breaker=breaker)
    assert result.degraded is True
    assert classifier.calls == []


@pytest.mark.asyncio
async def test_missing_classifier_uses_fallback():
    result = await classify_with_deadline(None, "s1", [], LATEST, timeout_s=1)
    assert result.degraded is True
    assert "classifier_not_configured" in result.notes


def test_fallback_is_deterministic():
    a = fallback_classification(LATEST.text, "timeout")
    b = fallback_classification(LATEST.text, "timeout")
    assert a == b
    assert "+91 99999 88888" in a.intelligence.phone_numbers
    assert "otp" in a.intelligence.suspicious_keywords


@pytest.mark.asyncio
async def test_groq_classifier_rotates_keys_and_parses_json():
    seen_keys: list[str] = []
    body = verdict(True, False, reply="Which branch?", upiIds=["x@bank"])

    def handler(request: httpx.Request) -> httpx.Response:
        seen_keys.append(request.headers["Authorization"])
        if len(seen_keys) == 1:
            return httpx.Response(429, text="rate limit exceeded")
        sent = json.loads(request.content)
        assert sent["model"] == "test-model"
        assert "LATEST MESSAGE" in sent["messages"][1]["content"]
        content = "Sure, here you go: " + json.dumps(body)
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    classifier = GroqClassifier(
        base_url="http://classifier.test/v1/",
        api_keys=["k1", "k2"],
        model="test-model",
        transport=httpx.MockTransport(handler),
    )
    history = [Message(sender="scammer", text="Hello sir", timestamp=1)]
    raw = await classifier.classify("s1", history, LATEST)

    assert seen_keys == ["Bearer k1", "Bearer k2"]
    assert raw["reply"] == "Which branch?"
    assert raw["extractedIntelligence"]["upiIds"] == ["x@bank"]


@pytest.mark.asyncio
async def test_groq_classifier_garbage_reply_degrades():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "not json at all"}}]})

    classifier = GroqClassifier(
        base_url="http://classifier.test/v1",
        api_keys=["k1"],
        model="test-model",
        transport=httpx.MockTransport(handler),
    )
    result = await classify_with_deadline(classifier, "s1", [], LATEST, timeout_s=1)
    assert result.degraded is True
    assert result.reply == FALLBACK_REPLY
