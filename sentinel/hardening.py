import json
import logging
import threading
import time
from enum import Enum
from typing import Any


logger = logging.getLogger("sentinel")


def setup_logging(level: int = logging.INFO) -> None:
    """Attach one plain stream handler; event lines are already JSON."""
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"cannot log {type(value).__name__}")


def log_event(event: str, **fields: Any) -> None:
    record = {"event": event, "ts": int(time.time()), **fields}
    try:
        line = json.dumps(record, ensure_ascii=True, default=_jsonable)
    except (TypeError, ValueError):
        line = json.dumps({"event": event, "ts": record["ts"], "log_error": True})
    logger.info(line)


class CircuitBreaker:
    """Stops calling a failing dependency for a while after repeated failures.

    Opening and closing are logged as circuit_opened / circuit_closed events.
    """

    def __init__(self, failure_threshold: int = 4, recovery_seconds: int = 45, name: str = "classifier"):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._failures = 0
        self._open_until = 0.0
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return time.time() < self._open_until

    def allow_request(self) -> bool:
        with self._lock:
            return not self.is_open

    def record_success(self) -> None:
        with self._lock:
            tripped = self._open_until > 0
            self._failures = 0
            self._open_until = 0.0
        if tripped:
            log_event("circuit_closed", circuit=self.name)

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures < self.failure_threshold or self.is_open:
                return
            self._open_until = time.time() + self.recovery_seconds
            failures = self._failures
        log_event("circuit_opened", circuit=self.name, failures=failures, retryInSeconds=self.recovery_seconds)


def validate_classification(data: Any) -> dict[str, Any]:
    """Coerce a raw classifier payload into the shape the engine consumes.

    Raises ValueError when the payload cannot be used at all: not a JSON
    object, or no usable reply text.
    """
    if not isinstance(data, dict):
        raise ValueError("classifier result is not an object")
    reply = str(data.get("reply") or "").strip()
    if not reply:
        raise ValueError("classifier result has no reply")

    intelligence = data.get("extractedIntelligence")
    if not isinstance(intelligence, dict):
        intelligence = {}

    return {
        "scamDetected": _as_bool(data.get("scamDetected")),
        "reply": reply,
        "isEngagementComplete": _as_bool(data.get("isEngagementComplete")),
        "extractedIntelligence": intelligence,
        "agentNotes": str(data.get("agentNotes") or "").strip(),
    }


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)
