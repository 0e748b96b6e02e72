from __future__ import annotations

import asyncio
import json
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import uvicorn

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sentinel.callback import NotificationDispatcher  # noqa: E402
from sentinel.config import load_settings  # noqa: E402
from sentinel.engine import Engine  # noqa: E402
from sentinel.hardening import CircuitBreaker  # noqa: E402
from sentinel.main import create_app  # noqa: E402
from sentinel.store import SessionStore  # noqa: E402


API_KEY = "dev-key"
PORT = 8001


@dataclass
class CaseResult:
    name: str
    ok: bool
    notes: str


class ScriptedScammerClassifier:
    """Stands in for the LLM: flags scams on payment words, completes on a UPI id, stalls on 'slow'."""

    async def classify(self, session_id, history, latest):
        text = latest.text.lower()
        if "slow" in text:
            await asyncio.sleep(5)
        upis = [w.strip(".,") for w in latest.text.split() if "@" in w]
        return {
            "scamDetected": any(k in text for k in ["otp", "upi", "pay", "blocked"]),
            "reply": f"Sorry, which bank did you say? ({len(history)} earlier messages)",
            "isEngagementComplete": bool(upis),
            "extractedIntelligence": {"upiIds": upis},
            "agentNotes": "Scripted live-eval verdict.",
        }


class CountingCollector:
    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.payloads.append(json.loads(request.content))
        return httpx.Response(200)


def _start_server(collector: CountingCollector) -> tuple[uvicorn.Server, threading.Thread, str]:
    os.environ.setdefault("SERVICE_API_KEY", API_KEY)
    os.environ.setdefault("CLASSIFIER_TIMEOUT_MS", "500")
    os.environ.setdefault("CALLBACK_URL", "http://collector.local/report")
    settings = load_settings()
    engine = Engine(
        settings=settings,
        store=SessionStore(),
        classifier=ScriptedScammerClassifier(),
        dispatcher=NotificationDispatcher(settings.callback_url, transport=httpx.MockTransport(collector.handler)),
        breaker=CircuitBreaker(failure_threshold=100),
    )

    config = uvicorn.Config(
        create_app(engine),
        host="127.0.0.1",
        port=PORT,
        log_level="warning",
        lifespan="on",
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="uvicorn-live-eval", daemon=True)
    thread.start()
    return server, thread, f"http://127.0.0.1:{PORT}"


def _wait_ready(base_url: str, timeout_s: float = 10.0) -> None:
    start = time.time()
    with httpx.Client(timeout=1.0) as client:
        while time.time() - start < timeout_s:
            try:
                r = client.get(f"{base_url}/health")
                if r.status_code == 200:
                    return
            except httpx.HTTPError:
                pass
            time.sleep(0.1)
    raise RuntimeError("Server did not become ready in time")


def _post(client: httpx.Client, base_url: str, session_id: str, text: str, key: str = API_KEY) -> httpx.Response:
    payload = {
        "sessionId": session_id,
        "message": {"sender": "scammer", "text": text, "timestamp": int(time.time() * 1000)},
        "conversationHistory": [],
        "metadata": {"channel": "SMS", "language": "English", "locale": "IN"},
    }
    return client.post(f"{base_url}/", json=payload, headers={"x-api-key": key}, timeout=5.0)


def _post_once(base_url: str, session_id: str, text: str) -> httpx.Response:
    with httpx.Client() as client:
        return _post(client, base_url, session_id, text)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _run_cases(base_url: str, collector: CountingCollector) -> list[CaseResult]:
    results: list[CaseResult] = []
    with httpx.Client() as client:
        # 1) Handshake
        try:
            r = client.post(f"{base_url}/", headers={"x-api-key": API_KEY})
            _assert(r.status_code == 200 and r.json()["status"] == "success", "handshake failed")
            results.append(CaseResult("handshake", True, "ok"))
        except Exception as e:
            results.append(CaseResult("handshake", False, str(e)))

        # 2) Wrong key leaves no trace
        try:
            r = _post(client, base_url, "live-auth", "Your account is blocked", key="wrong")
            _assert(r.status_code == 401, f"expected 401, got {r.status_code}")
            r = client.get(f"{base_url}/sessions/live-auth", headers={"x-api-key": API_KEY})
            _assert(r.status_code == 404, "rejected request created a session")
            results.append(CaseResult("auth_rejection", True, "ok"))
        except Exception as e:
            results.append(CaseResult("auth_rejection", False, str(e)))

        # 3) Slow classifier still answers within the deadline
        try:
            start = time.time()
            r = _post(client, base_url, "live-slow", "slow reply please, pay now")
            elapsed = time.time() - start
            _assert(r.status_code == 200, "bad status")
            _assert(elapsed < 2.0, f"reply took {elapsed:.2f}s")
            results.append(CaseResult("deadline_fallback", True, f"{elapsed * 1000:.0f}ms"))
        except Exception as e:
            results.append(CaseResult("deadline_fallback", False, str(e)))

        # 4) Burst of completing turns for one session -> one report
        try:
            before = len(collector.payloads)
            with ThreadPoolExecutor(max_workers=16) as pool:
                futures = [
                    pool.submit(_post_once, base_url, "live-burst", f"Pay via UPI to fraud{i}@okbank")
                    for i in range(32)
                ]
                statuses = [f.result().status_code for f in futures]
            _assert(all(s == 200 for s in statuses), "burst had non-200 responses")
            time.sleep(0.5)
            sent = [p for p in collector.payloads[before:] if p["sessionId"] == "live-burst"]
            _assert(len(sent) == 1, f"expected one report, got {len(sent)}")
            detail = client.get(f"{base_url}/sessions/live-burst", headers={"x-api-key": API_KEY}).json()
            _assert(len(detail["extractedIntelligence"]["upiIds"]) == 32, "lost UPI ids under concurrency")
            results.append(CaseResult("burst_single_report", True, "ok"))
        except Exception as e:
            results.append(CaseResult("burst_single_report", False, str(e)))

    return results


def main() -> None:
    collector = CountingCollector()
    server, thread, base_url = _start_server(collector)
    try:
        _wait_ready(base_url)
        results = _run_cases(base_url, collector)
        print("\n=== LIVE HTTP EVAL RESULTS ===")
        ok = 0
        for r in results:
            status = "PASS" if r.ok else "FAIL"
            print(f"{status:4} {r.name}: {r.notes}")
            ok += 1 if r.ok else 0
        print(f"\nPassed {ok}/{len(results)}")
        if ok != len(results):
            raise SystemExit(1)
    finally:
        server.should_exit = True
        thread.join(timeout=5.0)


if __name__ == "__main__":
    main()
