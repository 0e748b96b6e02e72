import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.responses import JSONResponse

from .config import load_settings
from .engine import Engine, TurnRequest
from .errors import AuthError, EngagementError, SessionNotFoundError, TurnValidationError
from .hardening import log_event, setup_logging
from .store import Message


logger = logging.getLogger("sentinel.api")

router = APIRouter()


class MessagePayload(BaseModel):
    sender: str = Field(default="scammer", pattern="^(scammer|user)$")
    text: str = Field(..., max_length=4000)
    timestamp: Optional[int] = None

    def to_message(self) -> Message:
        ts = self.timestamp if self.timestamp is not None else int(time.time() * 1000)
        return Message(sender=self.sender, text=self.text, timestamp=ts)


class Metadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    channel: Optional[str] = None
    language: Optional[str] = None
    locale: Optional[str] = None


class TurnPayload(BaseModel):
    sessionId: str
    message: MessagePayload
    conversationHistory: list[MessagePayload] = Field(default_factory=list)
    metadata: Optional[Metadata] = None


class TurnResponse(BaseModel):
    status: str
    reply: Optional[str] = None
    scamDetected: Optional[bool] = None
    message: Optional[str] = None


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def require_api_key(
    engine: Engine = Depends(get_engine),
    x_api_key: str | None = Header(default=None),
) -> None:
    if not x_api_key or x_api_key != engine.settings.service_api_key:
        log_event("auth_rejected", hasKey=bool(x_api_key))
        raise AuthError("401 Unauthorized")


def _health_payload() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/")
async def root() -> dict[str, str]:
    return _health_payload()


@router.get("/health")
async def health() -> dict[str, str]:
    return _health_payload()


@router.api_route("/health", methods=["HEAD"])
async def health_head() -> None:
    return None


@router.post("/", response_model=TurnResponse, response_model_exclude_none=True)
@router.post("/analyze", response_model=TurnResponse, response_model_exclude_none=True)
async def handle_turn(
    request: Request,
    background_tasks: BackgroundTasks,
    engine: Engine = Depends(get_engine),
    _auth: None = Depends(require_api_key),
) -> TurnResponse:
    body = _parse_body(await request.body())
    if not body:
        # Evaluator handshake: authenticated ping with no payload.
        return TurnResponse(status="success", message="Honeypot endpoint reachable and authenticated")

    try:
        payload = TurnPayload.model_validate(body)
    except ValidationError as exc:
        log_event("turn_rejected", reason="schema", errors=len(exc.errors()))
        raise TurnValidationError("Invalid request body") from exc

    result = await engine.handle_turn(
        TurnRequest(
            session_id=payload.sessionId,
            message=payload.message.to_message(),
            history=[m.to_message() for m in payload.conversationHistory],
            metadata=payload.metadata.model_dump() if payload.metadata else None,
        )
    )
    if result.notification is not None:
        background_tasks.add_task(engine.dispatch, result.notification)

    return TurnResponse(status="success", reply=result.reply, scamDetected=result.scam_detected)


@router.get("/sessions/{session_id}")
async def session_detail(
    session_id: str,
    engine: Engine = Depends(get_engine),
    _auth: None = Depends(require_api_key),
) -> dict[str, Any]:
    state = engine.store.get(session_id)
    if state is None:
        raise SessionNotFoundError("Session not found")
    return state.to_payload()


def _parse_body(raw: bytes) -> Any:
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        log_event("turn_rejected", reason="malformed_json")
        raise TurnValidationError("Invalid request body") from exc


async def _engagement_error_handler(_request: Request, exc: EngagementError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"status": "error", "message": exc.message})


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": "Internal server error"})


def create_app(engine: Engine | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        runtime = engine or Engine.from_settings(load_settings())
        app.state.engine = runtime
        sweeper = asyncio.create_task(runtime.run_sweeper())
        log_event(
            "startup_complete",
            classifierConfigured=runtime.classifier is not None,
            classifierTimeoutMs=runtime.settings.classifier_timeout_ms,
            callbackConfigured=bool(runtime.settings.callback_url),
            historyMaxMessages=runtime.settings.history_max_messages,
            sessionTtlSeconds=runtime.settings.session_ttl_seconds,
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="Sentinel Honeypot API", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(EngagementError, _engagement_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sentinel.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
