"""
FastAPI application — the StepSync service entry point.

One chat endpoint drives the whole pipeline (sanitizer → strategy →
provider behind the circuit breaker → memory). The rest are operator
endpoints for status, breaker overrides and session export/import.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stepsync import __version__
from stepsync.agents.context import ConversationContext
from stepsync.config import get_config
from stepsync.models import utcnow
from stepsync.orchestrator import ResponseGenerator
from stepsync.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Globals — initialized at startup
# ---------------------------------------------------------------------------
generator: ResponseGenerator | None = None
sqlite_store: SQLiteStore | None = None
contexts: dict[str, ConversationContext] = {}


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
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
    global generator, sqlite_store

    cfg = get_config()
    _setup_logging(cfg)

    generator = ResponseGenerator.from_config()
    sqlite_store = SQLiteStore.from_config()
    contexts.clear()

    logger.info(
        "StepSync started (provider: %s, model: %s, storage: %s)",
        generator.provider.provider_name,
        generator.provider.model,
        "sqlite" if sqlite_store else "memory only",
    )

    yield

    if sqlite_store:
        saved = 0
        for session_id in generator.memory.get_active_session_ids():
            sqlite_store.save_session(generator.memory.export_session(session_id))
            saved += 1
        logger.info("Persisted %d session(s) on shutdown", saved)
    await generator.provider.close()
    logger.info("StepSync shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="StepSync",
    description="Privacy-preserving step tracking assistant.",
    version=__version__,
    lifespan=lifespan,
)


def _redact_for_context(text: str) -> str:
    return generator.sanitizer.sanitize(text, strict=False).sanitized_text


def _prune_contexts():
    """Drop contexts idle longer than the memory session timeout."""
    now = utcnow()
    timeout = generator.memory.session_timeout
    stale = [sid for sid, ctx in contexts.items() if now - ctx.last_activity > timeout]
    for sid in stale:
        del contexts[sid]
    if stale:
        logger.info("Dropped %d idle conversation context(s)", len(stale))


def _context_for(session_id: str) -> ConversationContext:
    _prune_contexts()
    ctx = contexts.get(session_id)
    if ctx is None:
        ctx = contexts[session_id] = ConversationContext(session_id, redact=_redact_for_context)
    return ctx


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@app.post("/v1/chat")
async def chat(request: Request):
    """
    One conversational turn.

    Body: {"message": str, "intent": str, "confidence"?: float,
           "session_id"?: str, "user_id"?: str, "diagnostics"?: {str: any}}
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "body must be an object"}, status_code=400)

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return JSONResponse({"error": "message must be a non-empty string"}, status_code=400)
    intent = body.get("intent", "unclear")
    session_id = str(body.get("session_id") or "default")
    diagnostics = body.get("diagnostics") or None
    if diagnostics is not None and not isinstance(diagnostics, dict):
        return JSONResponse({"error": "diagnostics must be an object"}, status_code=400)
    try:
        confidence = float(body.get("confidence", 1.0))
    except (TypeError, ValueError):
        return JSONResponse({"error": "confidence must be a number"}, status_code=400)
    user_id = body.get("user_id")
    if user_id is not None and not isinstance(user_id, str):
        return JSONResponse({"error": "user_id must be a string"}, status_code=400)

    context = _context_for(session_id)
    context.add_user_message(message, intent=intent)
    reply = await generator.generate(
        message,
        intent,
        context,
        diagnostic_results=diagnostics,
        confidence=confidence,
        user_id=user_id,
    )
    context.add_bot_message(reply)

    if sqlite_store and generator.memory.has_session(session_id):
        sqlite_store.save_session(generator.memory.export_session(session_id))

    return JSONResponse({
        "session_id": session_id,
        "reply": reply,
        "sentiment": context.sentiment.value,
        "turn": context.turn_count,
    })


# ---------------------------------------------------------------------------
# Operator endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return JSONResponse({"status": "ok", "version": __version__})


@app.get("/api/v1/status")
async def api_status():
    """Detailed status of all subsystems."""
    status = await generator.status()
    status["storage"] = {
        "sqlite": sqlite_store is not None,
        "stats": sqlite_store.get_stats() if sqlite_store else {},
    }
    _prune_contexts()
    status["contexts"] = len(contexts)
    return JSONResponse(status)


@app.post("/api/v1/breaker/{action}")
async def api_breaker(action: str):
    """Manual breaker override: open, close or reset."""
    breaker = generator.breaker
    if action == "open":
        breaker.force_open()
    elif action == "close":
        breaker.force_closed()
    elif action == "reset":
        breaker.reset()
    else:
        return JSONResponse(
            {"error": f"unknown action '{action}' (expected open, close or reset)"},
            status_code=400,
        )
    return JSONResponse({"ok": True, "breaker": breaker.to_dict()})


@app.get("/api/v1/sessions/{session_id}")
async def api_get_session(session_id: str):
    """Export record for one session, from memory or else from storage."""
    if generator.memory.has_session(session_id):
        return JSONResponse(generator.memory.export_session(session_id))
    if sqlite_store:
        record = sqlite_store.load_session(session_id)
        if record is not None:
            return JSONResponse(record)
    return JSONResponse({"error": "session not found"}, status_code=404)


@app.post("/api/v1/sessions/import")
async def api_import_session(request: Request):
    try:
        record = await request.json()
    except ValueError:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    try:
        session = generator.memory.import_session(record)
    except (KeyError, TypeError, ValueError) as e:
        return JSONResponse({"error": f"invalid session record: {e}"}, status_code=400)
    if sqlite_store:
        sqlite_store.save_session(generator.memory.export_session(session.id))
    return JSONResponse({"ok": True, "id": session.id, "messages": session.message_count})


@app.delete("/api/v1/sessions/{session_id}")
async def api_delete_session(session_id: str):
    deleted = generator.memory.clear_session(session_id)
    deleted = contexts.pop(session_id, None) is not None or deleted
    if sqlite_store:
        deleted = sqlite_store.delete_session(session_id) or deleted
    return JSONResponse({"deleted": deleted})
