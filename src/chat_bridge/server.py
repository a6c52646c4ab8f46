"""HTTP surface: the ask, edit and title routes the chat client calls."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from chat_bridge.bootstrap import AppRuntime
from chat_bridge.errors import ChatBridgeError, UnauthorizedError, ValidationError
from chat_bridge.orchestrator import PreparedStream
from chat_bridge.requests import AskRequest, EditRequest, parse_request

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def resolve_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Unauthorized")
    return x_user_id.strip()


async def _read_json(request: Request) -> object:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as ex:
        raise ValidationError("Request body must be valid JSON") from ex


async def _sse(prepared: PreparedStream) -> AsyncIterator[str]:
    envelopes = prepared.envelopes()
    try:
        async for envelope in envelopes:
            yield envelope.to_sse()
    finally:
        await envelopes.aclose()


def _stream_response(prepared: PreparedStream) -> StreamingResponse:
    return StreamingResponse(_sse(prepared), media_type="text/event-stream", headers=_SSE_HEADERS)


def create_app(runtime: AppRuntime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await runtime.close()

    app = FastAPI(title="chat-bridge", lifespan=lifespan)
    orchestrator = runtime.orchestrator

    @app.exception_handler(ChatBridgeError)
    async def handle_chat_bridge_error(request: Request, exc: ChatBridgeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.opt(exception=exc).error(f"{request.method} {request.url.path} crashed: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "providers": sorted(kind.value for kind in runtime.providers)}

    @app.post("/api/ask/{endpoint}")
    async def ask(endpoint: str, request: Request, user_id: str = Depends(resolve_user_id)):
        body = parse_request(AskRequest, await _read_json(request))
        prepared = await orchestrator.prepare_ask(user_id, endpoint, body)
        return _stream_response(prepared)

    @app.post("/api/edit/{endpoint}")
    async def edit(endpoint: str, request: Request, user_id: str = Depends(resolve_user_id)):
        body = parse_request(EditRequest, await _read_json(request))
        outcome = await orchestrator.prepare_edit(user_id, endpoint, body)
        if isinstance(outcome, PreparedStream):
            return _stream_response(outcome)
        return JSONResponse(content=outcome.to_wire())

    @app.post("/api/convos/gen_title")
    async def gen_title(request: Request, user_id: str = Depends(resolve_user_id)):
        payload = await _read_json(request)
        conversation_id = payload.get("conversationId") if isinstance(payload, dict) else None
        if not conversation_id:
            raise ValidationError("conversationId is required")
        title = await runtime.title_handoff.fetch(user_id, str(conversation_id))
        if title is None:
            return JSONResponse(
                status_code=404,
                content={"message": "Title not found or method not implemented for the conversation's endpoint"},
            )
        return {"title": title}

    return app
