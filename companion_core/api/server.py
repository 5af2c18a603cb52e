from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..config import Settings
from ..errors import PersistenceError, QuotaExceededError, ValidationError
from ..pipeline.chat import TurnStream
from ..prompts.chat import paywall_message
from ..runtime import Companion, build_companion

logger = logging.getLogger("companion_core.api")

USER_HEADER = "X-User-Id"


class ChatRequest(BaseModel):
    content: Optional[str] = None
    sessionId: Optional[str] = None
    userId: Optional[str] = None


class SessionRequest(BaseModel):
    type: str = "chat"
    userId: Optional[str] = None


class EndSessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
    userId: Optional[str] = None


class PersonaRequest(BaseModel):
    personaId: str = Field(..., min_length=1)
    userId: Optional[str] = None


def _user_id(request: Request, body_user_id: str | None = None) -> str:
    user_id = (body_user_id or request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise ValidationError("userId is required")
    return user_id


def _companion(request: Request) -> Companion:
    return request.app.state.companion


async def _sse(stream: TurnStream) -> AsyncIterator[str]:
    async for event in stream.events():
        yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def create_app(settings: Settings | None = None, *, companion: Companion | None = None) -> FastAPI:
    if companion is None:
        settings = settings or Settings.from_env()
        settings.validate()
        companion = build_companion(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await companion.start()
        try:
            yield
        finally:
            await companion.close()

    app = FastAPI(title="Companion Core", lifespan=lifespan)
    app.state.companion = companion

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "invalid request") if errors else "invalid request"
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(detail)})

    @app.exception_handler(QuotaExceededError)
    async def _quota_error(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "error": "PAYWALL_HIT",
                "message": paywall_message(),
                "messageCount": exc.state.message_count,
                "messageLimit": exc.state.limit,
            },
        )

    @app.exception_handler(PersistenceError)
    async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.warning("[api] storage unavailable path=%s (%s)", request.url.path, exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"error": "storage unavailable"})

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request) -> StreamingResponse:
        user_id = _user_id(request, body.userId)
        stream = await _companion(request).pipeline.start_turn(user_id, body.content, body.sessionId)
        return StreamingResponse(
            _sse(stream),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/session")
    async def create_session(body: SessionRequest, request: Request) -> dict[str, Any]:
        user_id = _user_id(request, body.userId)
        session = await _companion(request).sessions.get_or_create_session(user_id, body.type)
        return session.to_dict()

    @app.post("/session/end")
    async def end_session(body: EndSessionRequest, request: Request) -> dict[str, Any]:
        user_id = _user_id(request, body.userId)
        stats = await _companion(request).sessions.end_session(body.sessionId, user_id)
        if stats is None:
            return {"success": False}
        return {"success": True, "session": stats.to_dict()}

    @app.get("/messages")
    async def list_messages(request: Request, sessionId: str = "") -> list[dict[str, Any]]:
        user_id = _user_id(request)
        if not sessionId:
            return []
        storage = _companion(request).storage
        session = await storage.get_session(sessionId)
        if session is None or session.user_id != user_id:
            return []
        return [message.to_dict() for message in await storage.get_session_messages(sessionId)]

    @app.get("/sessions/history")
    async def session_history(request: Request) -> list[dict[str, Any]]:
        user_id = _user_id(request)
        history = await _companion(request).pipeline.context_builder.session_history(user_id)
        return [item.to_dict() for item in history]

    @app.get("/personas")
    async def list_personas(request: Request) -> dict[str, Any]:
        registry = _companion(request).registry
        return {
            "default": registry.default.id,
            "personas": [persona.summary() for persona in registry.all()],
        }

    @app.post("/persona")
    async def select_persona(body: PersonaRequest, request: Request) -> dict[str, Any]:
        user_id = _user_id(request, body.userId)
        persona = await _companion(request).pipeline.select_persona(user_id, body.personaId)
        return {"success": True, "persona": persona.summary()}

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        current = _companion(request)
        payload: dict[str, Any] = {
            "status": "ok",
            "storage": current.storage.backend_name,
            "llmConfigured": current.llm.configured,
            "backgroundDropped": current.writer.dropped,
            "backgroundFailed": current.writer.failed,
            "summaryDropped": current.summary_writer.dropped,
            "summaryFailed": current.summary_writer.failed,
        }
        try:
            await current.storage.ping()
        except Exception as exc:
            logger.warning("[api] health ping failed (%s)", exc)
            payload["status"] = "degraded"
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)
        return JSONResponse(content=payload)

    return app
