import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx

from .hardening import CircuitBreaker, log_event, validate_classification
from .intel import IntelligenceFragment, extract_fragment
from .store import Message


logger = logging.getLogger("classifier")

FALLBACK_REPLY = "Please clarify your request."

SYSTEM_INSTRUCTION = (
    "You are an Agentic Honeypot chatting with a possible scammer. Act human and never reveal you are an AI. "
    "Detect scam intent, reply naturally to keep them talking, extract bank accounts, UPI IDs, phishing links, "
    "phone numbers and suspicious keywords, and decide whether the engagement is complete "
    "(enough intelligence gathered, or the other side stopped engaging). "
    "Output only strict JSON with fields: scamDetected (bool), reply (string), isEngagementComplete (bool), "
    "extractedIntelligence (object with arrays bankAccounts, upiIds, phishingLinks, phoneNumbers, "
    "suspiciousKeywords), agentNotes (string)."
)


@dataclass(frozen=True)
class Classification:
    scam_detected: bool
    reply: str
    is_engagement_complete: bool
    intelligence: IntelligenceFragment
    notes: str
    degraded: bool = False


class Classifier(Protocol):
    async def classify(self, session_id: str, history: Sequence[Message], latest: Message) -> Any:
        ...


class GroqClassifier:
    def __init__(
        self,
        base_url: str,
        api_keys: Sequence[str],
        model: str,
        timeout_s: float = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_keys = list(api_keys)
        self.model = model
        self.timeout_s = timeout_s
        self.transport = transport
        self._key_index = 0

    def _next_key(self) -> str:
        if not self.api_keys:
            raise RuntimeError("No Groq API keys configured")
        key = self.api_keys[self._key_index % len(self.api_keys)]
        self._key_index += 1
        return key

    async def _chat(self, messages: list[dict[str, str]], temperature: float = 0.2) -> str:
        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }

        last_exc: Exception | None = None
        for _ in range(max(1, len(self.api_keys))):
            api_key = self._next_key()
            headers = {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
            try:
                async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                    resp = await client.post(url, headers=headers, json=payload)
                    resp.raise_for_status()
                    data = resp.json()
                return data["choices"][0]["message"]["content"]
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                status = exc.response.status_code
                logger.error("Classifier HTTP error %s: %s", status, exc.response.text)
                # Another key may still have quota left.
                if status in {401, 403, 429, 500, 502, 503, 504}:
                    continue
                raise
            except httpx.RequestError as exc:
                last_exc = exc
                logger.error("Classifier request error: %s", exc)
                continue

        if last_exc:
            raise last_exc
        raise RuntimeError("Classifier request failed without exception")

    async def classify(self, session_id: str, history: Sequence[Message], latest: Message) -> dict[str, Any]:
        history_text = "\n".join(f"{m.sender}: {m.text}" for m in history) or "No previous history."
        user = (
            f"SESSION ID: {session_id}\n\n"
            f"CONVERSATION HISTORY:\n{history_text}\n\n"
            f"LATEST MESSAGE:\n{latest.text}\n\n"
            "TASK:\n"
            "1. Detect scam intent\n"
            "2. Respond naturally as a human\n"
            "3. Extract intelligence\n"
            "4. Decide if engagement is complete\n"
            "5. Provide agent notes"
        )
        content = await self._chat(
            [{"role": "system", "content": SYSTEM_INSTRUCTION}, {"role": "user", "content": user}],
            temperature=0.4,
        )
        return _safe_json(content, {})


def fallback_classification(latest_text: str, reason: str) -> Classification:
    return Classification(
        scam_detected=False,
        reply=FALLBACK_REPLY,
        is_engagement_complete=False,
        intelligence=extract_fragment(latest_text),
        notes=f"Fallback triggered ({reason}).",
        degraded=True,
    )


async def classify_with_deadline(
    classifier: Classifier | None,
    session_id: str,
    history: Sequence[Message],
    latest: Message,
    timeout_s: float,
    breaker: CircuitBreaker | None = None,
) -> Classification:
    """Run one classifier call against a hard deadline.

    The call runs as its own task and asyncio.wait_for cancels it when the
    deadline passes, so a result that would arrive later is never observed.
    Every failure mode resolves to the deterministic fallback.
    """
    if classifier is None:
        return _degraded(session_id, latest, "classifier_not_configured")
    if breaker is not None and not breaker.allow_request():
        return _degraded(session_id, latest, "circuit_open")

    task = asyncio.ensure_future(classifier.classify(session_id, list(history), latest))
    try:
        raw = await asyncio.wait_for(task, timeout=timeout_s)
    except asyncio.TimeoutError:
        _record_failure(breaker)
        return _degraded(session_id, latest, "timeout", timeoutMs=int(timeout_s * 1000))
    except Exception as exc:
        _record_failure(breaker)
        return _degraded(session_id, latest, "classifier_error", error=type(exc).__name__)

    try:
        data = validate_classification(raw)
    except ValueError as exc:
        _record_failure(breaker)
        return _degraded(session_id, latest, "unparseable_result", error=str(exc))

    if breaker is not None:
        breaker.record_success()
    return Classification(
        scam_detected=data["scamDetected"],
        reply=data["reply"],
        is_engagement_complete=data["isEngagementComplete"],
        intelligence=IntelligenceFragment.from_payload(data["extractedIntelligence"]),
        notes=data["agentNotes"],
    )


def _degraded(session_id: str, latest: Message, reason: str, **fields: Any) -> Classification:
    log_event("classifier_degraded", sessionId=session_id, reason=reason, **fields)
    return fallback_classification(latest.text, reason)


def _record_failure(breaker: CircuitBreaker | None) -> None:
    if breaker is not None:
        breaker.record_failure()


def _safe_json(content: str, fallback: dict[str, Any]) -> dict[str, Any]:
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        start = content.find("{")
        end = content.rfind("}")
        if start != -1 and end != -1 and end > start:
            try:
                return json.loads(content[start : end + 1])
            except json.JSONDecodeError:
                return fallback
        return fallback
