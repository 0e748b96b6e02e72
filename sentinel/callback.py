from enum import Enum
from typing import Any

import httpx

from .hardening import log_event
from .intel import IntelligenceFragment


class DispatchStatus(str, Enum):
    SUCCESS = "success"
    ABORTED = "aborted"
    FAILED = "failed"


def build_callback_payload(
    *,
    session_id: str,
    total_messages: int,
    intelligence: IntelligenceFragment,
    agent_notes: str,
) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "scamDetected": True,
        "totalMessagesExchanged": max(0, int(total_messages)),
        "extractedIntelligence": intelligence.to_payload(),
        "agentNotes": str(agent_notes).strip() or "No additional agent notes.",
    }


class NotificationDispatcher:
    """
    Sends the final report for a completed scam session.

    Exactly one POST per call: any 2xx is a success, anything else is logged
    and reported as failed. There is no retry here; callers decide whether a
    session may be reported at all.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = (url or "").strip()
        self.timeout_s = timeout_s
        self.transport = transport

    async def send(
        self,
        session_id: str,
        scam_detected: bool,
        intelligence: IntelligenceFragment,
        total_messages: int,
        notes: str,
    ) -> DispatchStatus:
        if not scam_detected:
            log_event("callback_aborted", sessionId=session_id, reason="scam_not_detected")
            return DispatchStatus.ABORTED

        if not self.url:
            # Callback endpoint is optional in local/dev; treat as a no-op success.
            log_event("callback_skipped", sessionId=session_id, reason="no_callback_url")
            return DispatchStatus.SUCCESS

        payload = build_callback_payload(
            session_id=session_id,
            total_messages=total_messages,
            intelligence=intelligence,
            agent_notes=notes,
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            log_event("callback_exception", sessionId=session_id, error=type(exc).__name__)
            return DispatchStatus.FAILED

        if 200 <= resp.status_code < 300:
            log_event(
                "callback_sent",
                sessionId=session_id,
                statusCode=resp.status_code,
                totalMessagesExchanged=payload["totalMessagesExchanged"],
            )
            return DispatchStatus.SUCCESS
        log_event("callback_non_2xx", sessionId=session_id, statusCode=resp.status_code)
        return DispatchStatus.FAILED
