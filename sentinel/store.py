import asyncio
import copy
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable

from .hardening import log_event
from .intel import IntelligenceFragment


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Message:
    sender: str  # "scammer" (counterpart) or "user" (agent)
    text: str
    timestamp: int  # epoch ms


@dataclass
class SessionState:
    session_id: str
    messages: list[Message] = field(default_factory=list)
    intelligence: IntelligenceFragment = field(default_factory=IntelligenceFragment)
    scam_detected: bool = False
    status: SessionStatus = SessionStatus.ACTIVE
    notified: bool = False
    agent_notes: str = ""
    turns: int = 0
    degraded_turns: int = 0
    created_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    def to_payload(self) -> dict:
        return {
            "sessionId": self.session_id,
            "status": self.status.value,
            "scamDetected": self.scam_detected,
            "notified": self.notified,
            "turns": self.turns,
            "degradedTurns": self.degraded_turns,
            "totalMessagesExchanged": len(self.messages),
            "extractedIntelligence": self.intelligence.to_payload(),
            "agentNotes": self.agent_notes,
            "createdAt": int(self.created_at),
            "lastUpdated": int(self.last_updated),
        }


Mutation = Callable[[SessionState], None]


class SessionStore:
    """
    In-memory session map with per-session serialization.

    All writes go through update(): the mutation runs on the live state while
    the session's lock is held, so two turns for the same id are applied one
    after the other and neither is lost. Readers only ever get deep copies.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _ensure(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id)
            self._sessions[session_id] = state
            log_event("session_created", sessionId=session_id)
        return state

    async def get_or_create(self, session_id: str) -> SessionState:
        async with self._lock_for(session_id):
            return copy.deepcopy(self._ensure(session_id))

    @asynccontextmanager
    async def engaged(self, session_id: str) -> AsyncIterator[SessionState]:
        """Snapshot a session and pin it against the idle sweep until the block exits."""
        async with self._lock_for(session_id):
            snapshot = copy.deepcopy(self._ensure(session_id))
            self._inflight[session_id] = self._inflight.get(session_id, 0) + 1
        try:
            yield snapshot
        finally:
            remaining = self._inflight.get(session_id, 1) - 1
            if remaining > 0:
                self._inflight[session_id] = remaining
            else:
                self._inflight.pop(session_id, None)

    async def update(self, session_id: str, mutation: Mutation) -> SessionState:
        async with self._lock_for(session_id):
            state = self._ensure(session_id)
            mutation(state)
            state.last_updated = time.time()
            return copy.deepcopy(state)

    def get(self, session_id: str) -> SessionState | None:
        state = self._sessions.get(session_id)
        return copy.deepcopy(state) if state is not None else None

    def sweep_idle(self, max_idle_seconds: int) -> int:
        if max_idle_seconds <= 0:
            return 0
        cutoff = time.time() - max_idle_seconds
        removed = 0
        for session_id, state in list(self._sessions.items()):
            lock = self._locks.get(session_id)
            if state.last_updated >= cutoff or (lock is not None and lock.locked()):
                continue
            if self._inflight.get(session_id):
                continue
            del self._sessions[session_id]
            self._locks.pop(session_id, None)
            removed += 1
        if removed:
            log_event("sessions_swept", removed=removed, remaining=len(self._sessions))
        return removed
