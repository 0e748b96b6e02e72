import asyncio
import json
from typing import Any

import httpx

from sentinel.config import Settings


COLLECTOR_URL = "http://collector.test/api/updateHoneyPotFinalResult"


def verdict(scam: bool, complete: bool, reply: str = "Which bank is this?", notes: str = "", **intel: list[str]) -> dict[str, Any]:
    return {
        "scamDetected": scam,
        "reply": reply,
        "isEngagementComplete": complete,
        "extractedIntelligence": intel,
        "agentNotes": notes,
    }


class ScriptedClassifier:
    """Returns queued verdicts in order; the last one repeats once the queue runs dry."""

    def __init__(self, *results: Any, delay: float = 0.0):
        self.results = list(results)
        self.delay = delay
        self.calls: list[tuple[str, list, Any]] = []
        self.cancelled = 0
        self.completed = 0

    async def classify(self, session_id, history, latest):
        self.calls.append((session_id, list(history), latest))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        if isinstance(result, Exception):
            raise result
        self.completed += 1
        return result


class Collector:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.payloads: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "service_api_key": "test-key",
        "callback_url": COLLECTOR_URL,
        "callback_timeout_ms": 1000,
        "llm_enabled": False,
        "groq_api_keys": (),
        "groq_base_url": "http://classifier.test/v1",
        "groq_model": "test-model",
        "classifier_timeout_ms": 1000,
        "history_max_messages": 30,
        "session_ttl_seconds": 0,
        "circuit_failure_threshold": 4,
        "circuit_recovery_seconds": 45,
    }
    values.update(overrides)
    return Settings(**values)
