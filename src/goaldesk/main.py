import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import openai
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .agent import Orchestrator, close_orchestrator, get_orchestrator_async
from .errors import (
    GoalDeskError,
    ModelInvokeError,
    NotFoundError,
    SchemaViolationError,
    StateError,
    StoreError,
    ValidationError,
)
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``goaldesk`` logger tree and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("goaldesk")
    logger = logging.getLogger("goaldesk.server")
    if root.handlers:
        return logger

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def status_for_error(exc: Exception) -> int:
    """Map a pipeline error to an HTTP status code."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StateError):
        return 409
    if isinstance(exc, (SchemaViolationError, ModelInvokeError)):
        return 502
    if isinstance(exc, StoreError):
        return 503
    return 500


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


class ChatRequest(BaseModel):
    session_id: str
    message: str


class ChatResponse(BaseModel):
    session_id: str
    reply: str


async def _orchestrator() -> Orchestrator:
    try:
        return await get_orchestrator_async()
    except openai.OpenAIError as e:
        # Raised by the client constructor, e.g. when no API key is configured.
        raise ModelInvokeError(f"model client unavailable: {e}") from e


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator (and connect Redis) at startup; close Redis on shutdown."""
    try:
        await _orchestrator()
        LOGGER.info("Orchestrator ready")
    except GoalDeskError as e:
        LOGGER.warning("Orchestrator not available at startup: %s", e)

    yield

    LOGGER.info("Shutting down...")
    await close_orchestrator()


app = FastAPI(
    title="GoalDesk",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GoalDeskError)
async def goaldesk_error_handler(request: Request, exc: GoalDeskError) -> JSONResponse:
    status = status_for_error(exc)
    LOGGER.warning("%s %s -> %d: %s", request.method, request.url.path, status, exc)
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest) -> ChatResponse:
    """Run one turn for the session and return the reply."""
    orchestrator = await _orchestrator()
    reply = await orchestrator.handle_message(body.session_id, body.message)
    return ChatResponse(session_id=body.session_id.strip(), reply=reply)


@app.delete("/sessions/{session_id}")
async def reset_session(session_id: str) -> dict[str, Any]:
    orchestrator = await _orchestrator()
    await orchestrator.reset_session(session_id)
    return {"status": "deleted", "session_id": session_id}


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint: client sends { session_id, message }, server answers once.

    Response Format:
        - {"type": "reply", "session_id": str, "data": str}
        - {"type": "error", "status": int, "data": str}
    """
    await websocket.accept()
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "status": 400, "data": "Invalid JSON payload"})
            await websocket.close()
            return
        if not isinstance(payload, dict):
            await websocket.send_json({"type": "error", "status": 400, "data": "Payload must be an object"})
            await websocket.close()
            return

        session_id = str(payload.get("session_id") or "")
        message = str(payload.get("message") or "")
        LOGGER.info("WS chat start session_id=%s", session_id)

        try:
            orchestrator = await _orchestrator()
            reply = await orchestrator.handle_message(session_id, message)
        except GoalDeskError as e:
            await websocket.send_json(
                {"type": "error", "status": status_for_error(e), "data": str(e)}
            )
            await websocket.close()
            return

        await websocket.send_json({"type": "reply", "session_id": session_id.strip(), "data": reply})
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "goaldesk.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
