"""
FastAPI HTTP Interface
======================
Exposes the support agent over HTTP.

Endpoints:
  POST   /session                                     → new thread_id
  POST   /chat                                        → reply + stream events
  GET    /history/{thread_id}                         → user/assistant messages
  GET    /threads?user_id=                            → thread summaries, newest first
  GET    /threads/{thread_id}/checkpoints             → checkpoint ids, newest first
  GET    /threads/{thread_id}/checkpoints/{cp_id}     → one checkpoint record
  DELETE /threads/{thread_id}                         → delete thread + checkpoints
  POST   /threads/{thread_id}/refund/refresh          → re-read the refund status
  POST   /tools/query                                 → validated record lookup
  GET    /health                                      → liveness + store backend

Errors are returned as {"error": CODE, "message": "<sanitized>"}:
  ValidationError → 422, AuthorizationError → 403,
  ExternalServiceError → 503, anything else → 500 (details only in logs).

Run:
    uvicorn api:app --reload --port 8000

Example cURL flow:

    # 1. Create a thread
    curl -X POST http://localhost:8000/session

    # 2. Chat
    curl -X POST http://localhost:8000/chat \\
         -H "Content-Type: application/json" \\
         -d '{"thread_id": "<id>", "user_id": "CUST-42",
              "user_email": "alex@example.com", "message": "Refund order ORD-1001"}'

    # 3. Inspect checkpoints
    curl "http://localhost:8000/threads/<id>/checkpoints?user_id=CUST-42"
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from support_agent import AgentSession
from support_agent.errors import (
    AuthorizationError,
    ExternalServiceError,
    SupportAgentError,
    ValidationError,
)
from support_agent.payments import refund_status_message
from support_agent.tool_requests import execute_tool_call

logger = logging.getLogger(__name__)

_session: AgentSession | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the checkpoint store (Redis when REDIS_URL is set and healthy,
    otherwise in-memory) and build the graph on startup; close on shutdown.
    """
    global _session
    _session = AgentSession()
    await _session.start()
    yield
    await _session.stop()


app = FastAPI(
    title="Support Orchestrator",
    description="Intent-routed customer support agent with durable checkpoints.",
    lifespan=lifespan,
)


# ── Error mapping ──────────────────────────────────────────────────────────────

_STATUS_CODES: list[tuple[type, int]] = [
    (ValidationError, 422),
    (AuthorizationError, 403),
    (ExternalServiceError, 503),
]


@app.exception_handler(SupportAgentError)
async def support_agent_error_handler(request: Request, exc: SupportAgentError):
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    logger.warning("[api] %s %s → %s: %s", request.method, request.url.path, exc.code, exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("[api] Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "Something went wrong while handling your request."},
    )


def _require_session() -> AgentSession:
    if not _session:
        raise HTTPException(status_code=503, detail="Agent not initialized.")
    return _session


# ── Request / Response models ──────────────────────────────────────────────────

class ChatRequest(BaseModel):
    thread_id: str
    user_id: str
    message: str
    user_email: Optional[str] = None
    response_format: str = "markdown"


class ChatResponse(BaseModel):
    thread_id: str
    checkpoint_id: str
    content: str
    intent: Optional[str] = None
    confidence: Optional[float] = None
    current_agent: str
    events: list[dict]


class SessionResponse(BaseModel):
    thread_id: str


class HistoryMessage(BaseModel):
    role: str    # "user" | "assistant"
    content: str
    timestamp: int


class HistoryResponse(BaseModel):
    thread_id: str
    messages: list[HistoryMessage]


class CheckpointListResponse(BaseModel):
    thread_id: str
    checkpoint_ids: list[str]


class DeleteResponse(BaseModel):
    thread_id: str
    deleted: int


class RefundStatusResponse(BaseModel):
    thread_id: str
    order_id: str
    refund_id: str
    status: str
    message: str


class ToolQueryResponse(BaseModel):
    type: str
    records: list[dict[str, Any]] = Field(default_factory=list)
    not_found: list[str] = Field(default_factory=list)


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.post("/session", response_model=SessionResponse)
async def create_session():
    """
    Create a new conversation thread id.
    Pass it with every /chat request to continue the same conversation.
    """
    return SessionResponse(thread_id=str(uuid.uuid4()))


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """
    Send a message. The reply is returned whole in ``content`` and as the
    ordered stream events ({"type": "chunk", ...} then {"type": "complete"})
    a streaming transport would deliver.
    """
    session = _require_session()
    result = await session.chat(
        request.thread_id,
        request.user_id,
        request.message,
        user_email=request.user_email,
        response_format=request.response_format,
    )
    return ChatResponse(
        thread_id=result.thread_id,
        checkpoint_id=result.checkpoint_id,
        content=result.content,
        intent=result.intent,
        confidence=result.confidence,
        current_agent=result.current_agent,
        events=result.stream.events(),
    )


@app.get("/history/{thread_id}", response_model=HistoryResponse)
async def get_history(thread_id: str, user_id: str):
    """Conversation history for a thread. Unknown threads return no messages."""
    session = _require_session()
    messages = await session.get_history(thread_id, user_id)
    return HistoryResponse(
        thread_id=thread_id,
        messages=[HistoryMessage(**m) for m in messages],
    )


@app.get("/threads")
async def list_threads(user_id: str):
    session = _require_session()
    threads = await session.list_threads(user_id)
    return {"threads": [t.model_dump() for t in threads]}


@app.get("/threads/{thread_id}/checkpoints", response_model=CheckpointListResponse)
async def list_checkpoints(thread_id: str, user_id: str, limit: int = 10, before: Optional[str] = None):
    session = _require_session()
    if limit < 1:
        raise ValidationError("limit < 1", user_message="limit must be at least 1.")
    ids = await session.list_checkpoints(thread_id, limit=limit, before=before, user_id=user_id)
    return CheckpointListResponse(thread_id=thread_id, checkpoint_ids=ids)


@app.get("/threads/{thread_id}/checkpoints/{checkpoint_id}")
async def get_checkpoint(thread_id: str, checkpoint_id: str, user_id: str):
    session = _require_session()
    record = await session.get_checkpoint(thread_id, checkpoint_id, user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Checkpoint not found.")
    return record.model_dump(mode="json")


@app.delete("/threads/{thread_id}", response_model=DeleteResponse)
async def delete_thread(thread_id: str, user_id: str):
    session = _require_session()
    deleted = await session.delete_thread(thread_id, user_id)
    return DeleteResponse(thread_id=thread_id, deleted=deleted)


@app.post("/threads/{thread_id}/refund/refresh", response_model=RefundStatusResponse)
async def refresh_refund(thread_id: str, user_id: str):
    """Ask the payment processor for the latest status of the thread's refund."""
    session = _require_session()
    refund_state = await session.refresh_refund(thread_id, user_id)
    return RefundStatusResponse(
        thread_id=thread_id,
        order_id=refund_state.order_id,
        refund_id=refund_state.refund.id,
        status=refund_state.refund.status,
        message=refund_status_message(refund_state.refund.status),
    )


@app.post("/tools/query", response_model=ToolQueryResponse)
async def tools_query(payload: dict[str, Any]):
    """
    Validated record lookup: {type, userEmail, identifiers[...]}.
    Only records owned by userEmail are ever returned.
    """
    session = _require_session()
    return ToolQueryResponse(**execute_tool_call(payload, session.catalog))


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "agent_ready": _session is not None,
        "checkpoint_store": _session.store_backend if _session else "none",
    }
