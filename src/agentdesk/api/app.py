"""
Core API backend for agentdesk.

It exposes the following endpoints:
- **GET /health** - liveness probe for health checks.
- **GET /** - endpoint index.
- **POST /api/agent/chat** - one chat exchange: {"sessionId": "...", "message": "..."}
- **POST /api/agent/chat/stream** - the same exchange as a ``text/event-stream``.
- **GET /api/agent/sessions** - list active session ids.
- **GET /api/agent/sessions/{sessionId}** - history of one session.
- **DELETE /api/agent/sessions/{sessionId}** - forget one session.
"""

import logging
from typing import (
    Any,
    Dict,
    List,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Request,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import (
    JSONResponse,
    StreamingResponse,
)

from agentdesk.agent.agent_loop import Orchestrator
from agentdesk.agent.model_backend import (
    BaseModelBackend,
    ConfigurationError,
    ModelBackendError,
    load_backend,
)
from agentdesk.api.models import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    SessionHistoryResponse,
    StreamChatRequest,
)
from agentdesk.common import (
    AnsiColors,
    colored_print,
)
from agentdesk.config import settings
from agentdesk.core.schema import (
    DEFAULT_AVAILABLE_MODALS,
    DEFAULT_AVAILABLE_ROUTES,
    AgentInput,
    AgentOutput,
)
from agentdesk.finance.client import FinanceClient
from agentdesk.memory.session_store import SessionHistoryStore
from agentdesk.stream.protocol import StreamSession

logger = logging.getLogger(__name__)

app = FastAPI(title="agentdesk API", version="0.1.0", description="Tool-calling chat agent API")
app.state.history_store = SessionHistoryStore(limit=settings.HISTORY_LIMIT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_history_store(request: Request) -> SessionHistoryStore:
    return request.app.state.history_store


def get_backend() -> BaseModelBackend:
    """Instantiate the configured backend; a missing key surfaces as a 500 before any turn."""
    return load_backend()


def get_finance_client() -> FinanceClient:
    return FinanceClient.from_settings()


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------
@app.exception_handler(ConfigurationError)
async def configuration_error_handler(_: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Server misconfiguration: %s", exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(ModelBackendError)
async def backend_error_handler(_: Request, exc: ModelBackendError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    message = "; ".join(parts)
    return JSONResponse(status_code=400, content={"error": message or "Invalid request"})


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def _agent_input(req: ChatRequest, history: List[Any]) -> AgentInput:
    routes = getattr(req, "available_routes", None)
    modals = getattr(req, "available_modals", None)
    return AgentInput(
        message=req.message,
        history=history,
        timezone=req.timezone or settings.DEFAULT_TIMEZONE,
        locale=req.locale or settings.DEFAULT_LOCALE,
        available_routes=routes if routes is not None else list(DEFAULT_AVAILABLE_ROUTES),
        available_modals=modals if modals is not None else list(DEFAULT_AVAILABLE_MODALS),
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, bool]:
    """Return a simple liveness payload."""
    return {"ok": True}


@app.get("/", summary="API root")
async def root() -> dict[str, Any]:
    """Return the endpoint index."""
    return {
        "name": "agentdesk",
        "endpoints": {
            "health": "GET /health",
            "chat": "POST /api/agent/chat",
            "stream": "POST /api/agent/chat/stream (text/event-stream)",
            "sessions": "GET /api/agent/sessions",
        },
    }


@app.post(
    "/api/agent/chat",
    response_model=ChatResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
    summary="Run one chat exchange",
)
async def chat_endpoint(
    req: ChatRequest,
    store: SessionHistoryStore = Depends(get_history_store),
    backend: BaseModelBackend = Depends(get_backend),
    finance: FinanceClient = Depends(get_finance_client),
) -> ChatResponse:
    """Process a user message in the context of its session history."""
    orchestrator = Orchestrator(backend, finance=finance)
    async with store.session(req.session_id) as session:
        output = await orchestrator.run(_agent_input(req, session.history()))
        history_count = session.record(req.message, output.answer)

    logger.info(
        "Session %s: answered with tools=%s, %d action(s), %d ui block(s)",
        req.session_id,
        output.used_tools,
        len(output.actions),
        len(output.ui),
    )
    return ChatResponse.model_validate(
        {**output.model_dump(), "session_id": req.session_id, "history_count": history_count}
    )


@app.post(
    "/api/agent/chat/stream",
    responses=_ERROR_RESPONSES,
    summary="Run one chat exchange as Server-Sent Events",
)
async def chat_stream_endpoint(
    req: StreamChatRequest,
    store: SessionHistoryStore = Depends(get_history_store),
    backend: BaseModelBackend = Depends(get_backend),
    finance: FinanceClient = Depends(get_finance_client),
) -> StreamingResponse:
    """Stream text deltas, UI blocks and sections, then the complete output."""
    orchestrator = Orchestrator(backend, finance=finance)

    async def event_stream():
        async with store.session(req.session_id) as session:

            def record(output: AgentOutput) -> Dict[str, int]:
                return {"historyCount": session.record(req.message, output.answer)}

            stream_session = StreamSession(
                orchestrator,
                _agent_input(req, session.history()),
                extra={"sessionId": req.session_id},
                on_complete=record,
            )
            async for chunk in stream_session.sse():
                yield chunk

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


@app.get("/api/agent/sessions", response_model=List[str], summary="List active sessions")
async def list_sessions(store: SessionHistoryStore = Depends(get_history_store)) -> List[str]:
    """List all session ids with stored history."""
    return store.session_ids()


@app.get(
    "/api/agent/sessions/{session_id}",
    response_model=SessionHistoryResponse,
    summary="Get session history",
)
async def get_session(
    session_id: str, store: SessionHistoryStore = Depends(get_history_store)
) -> SessionHistoryResponse:
    if session_id not in store.session_ids():
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return SessionHistoryResponse(session_id=session_id, history=await store.history(session_id))


@app.delete("/api/agent/sessions/{session_id}", summary="Forget a session")
async def delete_session(
    session_id: str, store: SessionHistoryStore = Depends(get_history_store)
) -> dict[str, bool]:
    return {"deleted": await store.clear(session_id)}


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 3010, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload.
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn out of the import path of library users
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting agentdesk API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug(
        "API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"})
    )

    colored_print(f"🧭 agentdesk API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run("agentdesk.api.app:app", host=host, port=port, reload=reload, log_level=log_level)


# ---------------------------------------------------------------------------
# `python -m agentdesk.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(port=settings.API_PORT, reload=True)
