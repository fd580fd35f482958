"""
FastAPI application: the chatrelay entry point.

Serves the chat API (authenticated and anonymous) and streams completions
as Server-Sent Events. The streaming pipeline reports tokens through a
plain callback; _sse_stream() bridges that callback onto an asyncio.Queue
and frames each token as one SSE event.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatrelay import __version__
from chatrelay.anonymous import AnonymousChatService
from chatrelay.chat import ChatService
from chatrelay.config import get_config
from chatrelay.costs import CostTracker
from chatrelay.errors import AuthenticationError, ChatRelayError, ForbiddenClientError
from chatrelay.providers.base import TokenSink
from chatrelay.providers.registry import ProviderRegistry
from chatrelay.ratelimit import RateLimiter
from chatrelay.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
sqlite_store: SQLiteStore | None = None
provider_registry: ProviderRegistry | None = None
cost_tracker: CostTracker | None = None
chat_service: ChatService | None = None
anon_service: AnonymousChatService | None = None
user_limiter: RateLimiter | None = None
anon_limiter: RateLimiter | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global sqlite_store, provider_registry, cost_tracker
    global chat_service, anon_service, user_limiter, anon_limiter

    cfg = get_config()
    _setup_logging(cfg)

    sqlite_store = SQLiteStore(cfg["storage"]["sqlite_path"])
    provider_registry = ProviderRegistry.from_config(cfg.get("providers", []))
    cost_tracker = CostTracker(sqlite_store, pricing=cfg.get("pricing"))

    chat_cfg = cfg.get("chat", {})
    chat_service = ChatService(
        sqlite=sqlite_store,
        registry=provider_registry,
        cost_tracker=cost_tracker,
        default_model=chat_cfg.get("default_model", "gpt-4o"),
    )
    anon_service = AnonymousChatService(chat_service, cfg.get("anonymous", {}))

    rl_cfg = cfg.get("rate_limit", {})
    user_limiter = RateLimiter(
        sqlite_store,
        max_requests=rl_cfg.get("max_requests", 0),
        window_minutes=rl_cfg.get("window_minutes", 30),
    )
    anon_limiter = RateLimiter(
        sqlite_store,
        max_requests=rl_cfg.get("anonymous_max_requests", 20),
        window_minutes=rl_cfg.get("anonymous_window_minutes", 15),
    )

    logger.info(
        "chatrelay started, listening on %s:%s",
        cfg["server"]["host"],
        cfg["server"]["port"],
    )
    logger.info("Storage: SQLite=%s", cfg["storage"]["sqlite_path"])
    logger.info("Models: %d routable", len(provider_registry.list_models()["data"]))

    yield

    logger.info("chatrelay shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatrelay",
    description="Multi-provider streaming chat backend.",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(ChatRelayError)
async def chatrelay_error_handler(request: Request, exc: ChatRelayError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_user(request: Request) -> str:
    """User id from the auth gateway header; counts the request against the user's limit."""
    header = get_config().get("chat", {}).get("user_header", "X-User-Id")
    user_id = request.headers.get(header, "").strip()
    if not user_id:
        raise AuthenticationError(f"Missing {header} header")
    user_limiter.hit(f"user:{user_id}")
    return user_id


def _anon_client(request: Request) -> str:
    ip = request.client.host if request.client else "unknown"
    anon_limiter.hit(f"anon:{ip}")
    return ip


async def _read_content(request: Request) -> str | JSONResponse:
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    content = body.get("content") if isinstance(body, dict) else None
    if not isinstance(content, str) or not content.strip():
        return JSONResponse({"error": "content must be a non-empty string"}, status_code=400)
    return content


_DONE = object()
_IDLE = object()


async def _next_item(queue: asyncio.Queue):
    """Next queued item, or _IDLE after KEEPALIVE_SECONDS with nothing."""
    try:
        return await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
    except asyncio.TimeoutError:
        return _IDLE


async def _sse_stream(run: Callable[[TokenSink], Awaitable[int]]) -> StreamingResponse:
    """
    Run a streaming pipeline as a task and relay its tokens as SSE.

    Waits up to KEEPALIVE_SECONDS for the first item before answering, so
    a fast failure (unknown model, upstream refused) surfaces as a normal
    error status. After that the response is open: keepalives fill idle
    gaps and failures are sent in-band as `event: error`. Abandoning the
    request or closing the response cancels the task.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def pipeline():
        try:
            await run(queue.put_nowait)
        except Exception as e:
            logger.error("Streaming pipeline failed: %s", e)
            queue.put_nowait(e)
        else:
            queue.put_nowait(_DONE)

    task = asyncio.create_task(pipeline())
    try:
        first = await _next_item(queue)
    except asyncio.CancelledError:
        logger.info("Request abandoned before the first token, cancelling stream")
        task.cancel()
        raise
    if isinstance(first, Exception):
        raise first

    async def events():
        item = first
        try:
            while True:
                if item is _DONE:
                    yield "event: done\ndata: {}\n\n"
                    return
                if isinstance(item, Exception):
                    yield f"event: error\ndata: {json.dumps({'error': str(item)})}\n\n"
                    return
                if item is _IDLE:
                    yield ": keepalive\n\n"
                else:
                    yield f"data: {json.dumps(item)}\n\n"
                item = await _next_item(queue)
        finally:
            if not task.done():
                logger.info("Client went away, cancelling stream")
                task.cancel()

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    """Health check."""
    return JSONResponse({"status": "ok", "version": __version__})


@app.get("/v1/models")
async def list_models():
    """Every model id some provider claims."""
    return JSONResponse(provider_registry.list_models())


# ---------------------------------------------------------------------------
# Authenticated chat
# ---------------------------------------------------------------------------

@app.get("/api/v1/chat/conversation")
@app.get("/api/v1/chat/conversation/{conv_id}")
async def get_or_create_conversation(request: Request, conv_id: str | None = None):
    user_id = _require_user(request)
    conversation = chat_service.get_or_create_conversation(conv_id, user_id)
    if conversation.user_id != user_id:
        return JSONResponse({"error": f"Conversation not found: {conv_id}"}, status_code=404)
    return JSONResponse(conversation.to_dict())


@app.get("/api/v1/chat/conversations")
async def list_conversations(request: Request):
    user_id = _require_user(request)
    conversations = chat_service.list_conversations(user_id)
    return JSONResponse({
        "conversations": [c.to_dict() for c in conversations],
        "count": len(conversations),
    })


@app.post("/api/v1/chat/conversation/{conv_id}/message")
async def add_message(conv_id: str, request: Request):
    user_id = _require_user(request)
    content = await _read_content(request)
    if isinstance(content, JSONResponse):
        return content
    chat_service.get_conversation(conv_id, user_id=user_id)
    message = chat_service.add_user_message(conv_id, content)
    return JSONResponse(message.to_dict(), status_code=201)


@app.get("/api/v1/chat/conversation/{conv_id}/messages")
async def get_messages(conv_id: str, request: Request):
    user_id = _require_user(request)
    chat_service.get_conversation(conv_id, user_id=user_id)
    messages = chat_service.get_messages(conv_id)
    return JSONResponse({"conversation_id": conv_id, "messages": [m.to_dict() for m in messages]})


@app.delete("/api/v1/chat/conversation/{conv_id}")
async def reset_conversation(conv_id: str, request: Request):
    user_id = _require_user(request)
    chat_service.get_conversation(conv_id, user_id=user_id)
    chat_service.reset_conversation(conv_id)
    return JSONResponse({"ok": True, "conversation_id": conv_id})


@app.get("/api/v1/chat/conversation/{conv_id}/stream")
async def stream_conversation(conv_id: str, request: Request, model: str | None = None):
    """Stream the assistant's reply to the conversation so far."""
    user_id = _require_user(request)
    chat_service.get_conversation(conv_id, user_id=user_id)
    model = model or chat_service.default_model

    async def run(on_token: TokenSink) -> int:
        return await chat_service.stream_chat_completion(conv_id, model, on_token, user_id=user_id)

    return await _sse_stream(run)


@app.get("/api/v1/chat/usage")
async def usage(request: Request):
    user_id = _require_user(request)
    summary = cost_tracker.get_user_summary(user_id)
    summary["totals"] = sqlite_store.get_user_totals(user_id)
    return JSONResponse(summary)


# ---------------------------------------------------------------------------
# Anonymous chat
# ---------------------------------------------------------------------------

@app.post("/api/v1/anon/conversation")
async def anon_create_conversation(request: Request):
    if anon_service.is_blocked(request.headers.get("user-agent")):
        raise ForbiddenClientError("Automated clients are not allowed")
    _anon_client(request)
    conversation = anon_service.create_conversation()
    return JSONResponse(conversation.to_dict(), status_code=201)


@app.get("/api/v1/anon/conversation/{conv_id}/messages")
async def anon_get_messages(conv_id: str, request: Request):
    _anon_client(request)
    messages = anon_service.get_messages(conv_id)
    return JSONResponse({"conversation_id": conv_id, "messages": [m.to_dict() for m in messages]})


@app.post("/api/v1/anon/conversation/{conv_id}/message")
async def anon_add_message(conv_id: str, request: Request):
    _anon_client(request)
    content = await _read_content(request)
    if isinstance(content, JSONResponse):
        return content
    message = anon_service.add_user_message(conv_id, content)
    return JSONResponse(message.to_dict(), status_code=201)


@app.delete("/api/v1/anon/conversation/{conv_id}")
async def anon_reset_conversation(conv_id: str, request: Request):
    _anon_client(request)
    anon_service.reset_conversation(conv_id)
    return JSONResponse({"ok": True, "conversation_id": conv_id})


@app.get("/api/v1/anon/conversation/{conv_id}/stream")
async def anon_stream_conversation(conv_id: str, request: Request, model: str | None = None):
    _anon_client(request)
    model = model or anon_service.default_model
    anon_service.check_model(model)
    anon_service.get_conversation(conv_id)

    async def run(on_token: TokenSink) -> int:
        return await anon_service.stream_completion(conv_id, model, on_token)

    return await _sse_stream(run)


@app.post("/api/v1/anon/cleanup")
async def anon_cleanup(max_age: int = 24):
    deleted = anon_service.cleanup_old_conversations(max_age)
    return JSONResponse({"deleted": deleted, "max_age_hours": max_age})
