import json
import logging

import pytest

from sentinel.hardening import CircuitBreaker, log_event, validate_classification
from sentinel.store import SessionStatus


def test_validate_classification_coerces_types():
    out = validate_classification(
        {
            "scamDetected": "true",
            "reply": "  Which bank?  ",
            "isEngagementComplete": 0,
            "extractedIntelligence": "bad",
            "agentNotes": None,
        }
    )
    assert out["scamDetected"] is True
    assert out["reply"] == "Which bank?"
    assert out["isEngagementComplete"] is False
    assert out["extractedIntelligence"] == {}
    assert out["agentNotes"] == ""


@pytest.mark.parametrize("raw", [None, [], "text", {"scamDetected": True}, {"reply": ""}])
def test_validate_classification_rejects_unusable_payloads(raw):
    with pytest.raises(ValueError):
        validate_classification(raw)


def test_circuit_breaker_opens_after_threshold():
    c = CircuitBreaker(failure_threshold=2, recovery_seconds=10)
    assert c.allow_request() is True
    c.record_failure()
    assert c.allow_request() is True
    c.record_failure()
    assert c.allow_request() is False
    c.record_success()
    assert c.allow_request() is True


def _events(caplog) -> list[dict]:
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == "sentinel"]


def test_circuit_breaker_logs_open_and_close(caplog):
    caplog.set_level(logging.INFO, logger="sentinel")
    c = CircuitBreaker(failure_threshold=1, recovery_seconds=30, name="groq")
    c.record_failure()
    c.record_failure()
    assert c.is_open is True
    c.record_success()
    assert c.is_open is False

    events = [(e["event"], e.get("circuit")) for e in _events(caplog)]
    assert events == [("circuit_opened", "groq"), ("circuit_closed", "groq")]


def test_log_event_serialises_enums_and_sets(caplog):
    caplog.set_level(logging.INFO, logger="sentinel")
    log_event("turn_processed", status=SessionStatus.COMPLETED, upiIds=frozenset({"b@x", "a@x"}))
    log_event("odd_field", value=object())

    first, second = _events(caplog)
    assert first["status"] == "completed"
    assert first["upiIds"] == ["a@x", "b@x"]
    assert second == {"event": "odd_field", "ts": second["ts"], "log_error": True}
