"""
FastAPI application: session API plus a Server-Sent Events stream per session.

Routes::

    GET    /health                     liveness, version, active sessions, uptime
    GET    /sessions                   live + durable-only sessions
    POST   /sessions                   create (429 at capacity)
    GET    /sessions/{id}              summary + ``history`` (?history_lines=N)
    POST   /sessions/{id}/resume       resume a dead session from its log
    POST   /sessions/{id}/input        user_message | control_response | interrupt | raw
    DELETE /sessions/{id}              stop and delete permanently
    GET    /sessions/{id}/stream       SSE; resumes after Last-Event-ID / ?after=

When ``server.auth_token`` is set every route except ``/health`` requires
``Authorization: Bearer <token>``.

Usage::

    from relaybridge.server.app import create_app, start_server
    app = create_app(config)
    start_server(config)
"""

from __future__ import annotations

import hmac
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware

import relaybridge
from relaybridge.core.config import RelayBridgeConfig
from relaybridge.core.constants import DEFAULT_HISTORY_LINES
from relaybridge.core.exceptions import SessionCapacityError, SessionNotFoundError
from relaybridge.core.session import protocol
from relaybridge.core.session.manager import SessionManager
from relaybridge.server.schemas import CreateSessionRequest, InputRequest, InputType
from relaybridge.server.sse import parse_last_event_id, stream_session_events

_access_log = logging.getLogger("relaybridge.server.access")

_OPEN_PATHS = frozenset({"/health"})


class _AccessLogMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status, and elapsed time."""

    async def dispatch(self, request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        _access_log.info(
            "api_request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "elapsed_ms": round(elapsed_ms, 1),
            },
        )
        return response


class _BearerAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests without the configured bearer token."""

    def __init__(self, app, token: str) -> None:
        super().__init__(app)
        self._expected = f"Bearer {token}".encode()

    async def dispatch(self, request, call_next):
        if request.url.path in _OPEN_PATHS:
            return await call_next(request)
        supplied = request.headers.get("authorization", "").encode()
        if not hmac.compare_digest(supplied, self._expected):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        return await call_next(request)


def create_app(
    config: RelayBridgeConfig | None = None,
    manager: SessionManager | None = None,
) -> FastAPI:
    """Create the FastAPI application around a (possibly fresh) SessionManager."""
    config = config or RelayBridgeConfig()
    manager = manager or SessionManager(config)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.start()
        try:
            yield
        finally:
            await manager.shutdown()

    app = FastAPI(
        title="RelayBridge",
        version=relaybridge.__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.manager = manager

    @app.exception_handler(SessionNotFoundError)
    async def _not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(SessionCapacityError)
    async def _capacity_handler(request: Request, exc: SessionCapacityError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=429)

    app.add_middleware(_AccessLogMiddleware)
    if config.server.auth_token is not None:
        app.add_middleware(
            _BearerAuthMiddleware, token=config.server.auth_token.get_secret_value()
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": relaybridge.__version__,
            "sessions_active": manager.active_count,
            "uptime_seconds": round(time.monotonic() - started_at, 1),
        }

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @app.get("/sessions")
    async def list_sessions():
        return {"sessions": [s.to_dict() for s in manager.list_sessions()]}

    @app.post("/sessions", status_code=201)
    async def create_session(body: CreateSessionRequest):
        session = await manager.create_session(body.to_options())
        return session.to_dict()

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, history_lines: int = DEFAULT_HISTORY_LINES):
        session = manager.get_or_none(session_id)
        if session is not None:
            data = session.to_dict()
        else:
            data = manager.describe(session_id).to_dict(include_pid=True)
        data["history"] = [e.to_dict() for e in manager.read_history(session_id, history_lines)]
        return data

    @app.post("/sessions/{session_id}/resume")
    async def resume_session(session_id: str, body: CreateSessionRequest | None = None):
        options = body.to_options() if body is not None else None
        session = await manager.resume_session(session_id, options)
        return session.to_dict()

    @app.post("/sessions/{session_id}/input")
    async def send_input(session_id: str, body: InputRequest):
        session = manager.get(session_id)
        if body.type == InputType.USER_MESSAGE:
            ok = session.send_control_message(protocol.user_message(body.content))
        elif body.type == InputType.CONTROL_RESPONSE:
            ok = session.send_control_message(protocol.control_response(body.response or {}))
        elif body.type == InputType.INTERRUPT:
            ok = session.send_interrupt()
        else:
            ok = session.send_input(body.content)
        if not ok:
            return JSONResponse(
                {
                    "error": f"Session {session_id} is not accepting input",
                    "status": str(session.status),
                },
                status_code=409,
            )
        return {"ok": True}

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str):
        await manager.destroy_session(session_id)
        return {"ok": True, "id": session_id}

    @app.get("/sessions/{session_id}/stream")
    async def stream(request: Request, session_id: str, after: str | None = None):
        session = manager.get(session_id)
        last_seen = parse_last_event_id(request.headers.get("last-event-id"))
        if last_seen is None:
            last_seen = parse_last_event_id(after)
        return StreamingResponse(
            stream_session_events(request, session, after=last_seen),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


def start_server(config: RelayBridgeConfig) -> None:
    """Start the API server (blocking)."""
    import uvicorn

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_config=None,
        log_level=config.logging.level.lower(),
    )
