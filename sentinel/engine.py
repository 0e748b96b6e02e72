import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .callback import DispatchStatus, NotificationDispatcher
from .classifier import Classifier, GroqClassifier, classify_with_deadline
from .config import Settings
from .errors import TurnValidationError
from .hardening import CircuitBreaker, log_event
from .intel import IntelligenceFragment, merge
from .store import Message, SessionState, SessionStatus, SessionStore


logger = logging.getLogger("sentinel.engine")


@dataclass(frozen=True)
class TurnRequest:
    session_id: str
    message: Message
    history: list[Message] = field(default_factory=list)
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class NotificationJob:
    session_id: str
    scam_detected: bool
    intelligence: IntelligenceFragment
    total_messages: int
    notes: str


@dataclass(frozen=True)
class TurnResult:
    reply: str
    scam_detected: bool
    status: SessionStatus
    degraded: bool
    notification: NotificationJob | None = None


class Engine:
    """
    Per-turn driver for a session engagement.

    The classifier runs outside the session lock; everything that reads and
    writes session state for a turn (transcript, intelligence, scam flag,
    status and the notified decision) happens in one store.update() call.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        classifier: Classifier | None,
        dispatcher: NotificationDispatcher,
        breaker: CircuitBreaker | None = None,
    ):
        self.settings = settings
        self.store = store
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.breaker = breaker

    @classmethod
    def from_settings(cls, settings: Settings) -> "Engine":
        classifier: Classifier | None = None
        if settings.classifier_configured:
            classifier = GroqClassifier(
                base_url=settings.groq_base_url,
                api_keys=settings.groq_api_keys,
                model=settings.groq_model,
                timeout_s=settings.classifier_timeout_ms / 1000.0,
            )
        return cls(
            settings=settings,
            store=SessionStore(),
            classifier=classifier,
            dispatcher=NotificationDispatcher(
                settings.callback_url,
                timeout_s=settings.callback_timeout_ms / 1000.0,
            ),
            breaker=CircuitBreaker(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_seconds=settings.circuit_recovery_seconds,
            ),
        )

    async def handle_turn(self, request: TurnRequest) -> TurnResult:
        session_id = (request.session_id or "").strip()
        if not session_id or not (request.message.text or "").strip():
            log_event("turn_rejected", reason="missing_session_or_text", sessionId=session_id)
            raise TurnValidationError("Invalid request body")

        request_start = time.time()
        async with self.store.engaged(session_id) as session:
            history = list(request.history) or list(session.messages)
            history = history[-self.settings.history_max_messages :]
            classification = await classify_with_deadline(
                self.classifier,
                session_id,
                history,
                request.message,
                timeout_s=self.settings.classifier_timeout_ms / 1000.0,
                breaker=self.breaker,
            )

            reply = Message(sender="user", text=classification.reply, timestamp=int(time.time() * 1000))
            jobs: list[NotificationJob] = []

            def apply_turn(state: SessionState) -> None:
                if not state.messages and request.history:
                    state.messages.extend(request.history)
                state.messages.append(request.message)
                state.messages.append(reply)
                state.turns += 1
                if classification.degraded:
                    state.degraded_turns += 1

                state.intelligence = merge(state.intelligence, classification.intelligence)
                # A later benign verdict never clears an earlier scam verdict.
                state.scam_detected = state.scam_detected or classification.scam_detected
                if classification.is_engagement_complete:
                    state.status = SessionStatus.COMPLETED
                if classification.notes and (not classification.degraded or not state.agent_notes):
                    state.agent_notes = classification.notes

                # COMPLETED is terminal, so a session that finished before any scam
                # verdict is reported on the first later turn that flags one.
                if state.scam_detected and state.status is SessionStatus.COMPLETED and not state.notified:
                    state.notified = True
                    jobs.append(
                        NotificationJob(
                            session_id=state.session_id,
                            scam_detected=state.scam_detected,
                            intelligence=state.intelligence,
                            total_messages=len(state.messages),
                            notes=state.agent_notes,
                        )
                    )

            updated = await self.store.update(session_id, apply_turn)
        job = jobs[0] if jobs else None

        log_event(
            "turn_processed",
            sessionId=session_id,
            scamDetected=updated.scam_detected,
            status=updated.status.value,
            degraded=classification.degraded,
            notified=updated.notified,
            intelligence=updated.intelligence.counts(),
            totalMessages=len(updated.messages),
            latencyMs=int((time.time() - request_start) * 1000),
        )
        if job is not None:
            log_event("notification_scheduled", sessionId=session_id, totalMessages=job.total_messages)

        return TurnResult(
            reply=classification.reply,
            scam_detected=updated.scam_detected,
            status=updated.status,
            degraded=classification.degraded,
            notification=job,
        )

    async def dispatch(self, job: NotificationJob) -> DispatchStatus:
        try:
            status = await self.dispatcher.send(
                job.session_id,
                job.scam_detected,
                job.intelligence,
                job.total_messages,
                job.notes,
            )
        except Exception:
            logger.exception("Notification dispatch crashed for session %s", job.session_id)
            status = DispatchStatus.FAILED
        log_event("notification_finished", sessionId=job.session_id, outcome=status.value)
        return status

    async def run_sweeper(self, interval_s: float = 60.0) -> None:
        ttl = self.settings.session_ttl_seconds
        if ttl <= 0:
            return
        while True:
            await asyncio.sleep(interval_s)
            self.store.sweep_idle(ttl)
