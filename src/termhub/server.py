"""
Starlette application for the termhub session broker.

Endpoints:
- /api/sessions: list, create, inspect, rename and terminate shell sessions
- /ws/{session_id}: attach a viewer to a shell session
- /api/chat: run a one-shot query and stream it back via SSE
- /health: liveness probe

The registry, reaper and query runner live on ``app.state`` so every handler
reaches the same instances without module globals.
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import AsyncIterator

from starlette.applications import Starlette
from starlette.routing import Route, WebSocketRoute

from termhub.config import TermhubConfig
from termhub.pty.manager import SessionRegistry
from termhub.pty.reaper import IdleReaper
from termhub.query.runner import QueryRunner
from termhub.routes.chat_routes import chat
from termhub.routes.health_routes import health_check
from termhub.routes.session_routes import (
    create_session,
    delete_session,
    get_session,
    list_sessions,
    rename_session,
    session_websocket_endpoint,
)

logger = logging.getLogger(__name__)


def create_app(config: TermhubConfig | None = None) -> Starlette:
    """Build the application and its long-lived collaborators."""
    config = config or TermhubConfig()

    registry = SessionRegistry(config.sessions)
    reaper = IdleReaper(
        registry,
        interval=config.sessions.reap_interval,
        idle_timeout=config.sessions.idle_timeout,
    )
    query_runner = QueryRunner(
        config.query.command,
        cwd=config.sessions.workspace,
        resume_flag=config.query.resume_flag,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        reaper.start()
        logger.info("termhub ready (workspace=%s)", config.sessions.workspace)
        try:
            yield
        finally:
            await reaper.stop()
            await registry.cleanup()

    app = Starlette(
        routes=[
            Route("/health", health_check, methods=["GET"]),
            Route("/api/sessions", list_sessions, methods=["GET"]),
            Route("/api/sessions", create_session, methods=["POST"]),
            Route("/api/sessions/{session_id}", get_session, methods=["GET"]),
            Route("/api/sessions/{session_id}", rename_session, methods=["PATCH"]),
            Route("/api/sessions/{session_id}", delete_session, methods=["DELETE"]),
            Route("/api/chat", chat, methods=["POST"]),
            WebSocketRoute("/ws/{session_id}", session_websocket_endpoint),
        ],
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = registry
    app.state.reaper = reaper
    app.state.query_runner = query_runner
    app.state.start_time = time.time()
    return app
