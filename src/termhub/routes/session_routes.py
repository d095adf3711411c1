"""
Routes for persistent sessions.

Provides:
- REST endpoints to list, create, inspect, rename and terminate sessions
- WebSocket endpoint that attaches a viewer to a session (/ws/{session_id})
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.websockets import WebSocket, WebSocketDisconnect

from termhub.errors import SessionNotFound, TermhubError
from termhub.pty.manager import SessionRegistry
from termhub.pty.relay import ClientConnection, decode_client_frame

logger = logging.getLogger(__name__)

UNKNOWN_SESSION_CLOSE_CODE = 4404


class CreateSessionRequest(BaseModel):
    cwd: str | None = None
    title: str | None = None


class RenameSessionRequest(BaseModel):
    title: str


def _get_registry(request_or_ws: Any) -> SessionRegistry:
    """Get the SessionRegistry from app state."""
    return request_or_ws.app.state.registry


def error_response(error: TermhubError) -> JSONResponse:
    return JSONResponse({"error": error.message}, status_code=error.status_code)


async def _read_body(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _summary_json(session: Any) -> dict[str, Any]:
    return session.summary().model_dump(by_alias=True)


async def list_sessions(request: Request) -> JSONResponse:
    """GET /api/sessions — Summaries, most recently active first."""
    registry = _get_registry(request)
    return JSONResponse([s.model_dump(by_alias=True) for s in registry.list()])


async def create_session(request: Request) -> JSONResponse:
    """POST /api/sessions — Spawn a new shell session."""
    registry = _get_registry(request)
    try:
        req = CreateSessionRequest(**await _read_body(request))
    except (ValueError, ValidationError) as e:
        return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)

    try:
        session = await registry.create(cwd=req.cwd, title=req.title)
    except TermhubError as e:
        logger.warning("Failed to create session: %s", e.message)
        return error_response(e)
    return JSONResponse(_summary_json(session), status_code=201)


async def get_session(request: Request) -> JSONResponse:
    """GET /api/sessions/{session_id}"""
    registry = _get_registry(request)
    try:
        session = registry.get(request.path_params["session_id"])
    except SessionNotFound as e:
        return error_response(e)
    return JSONResponse(_summary_json(session))


async def rename_session(request: Request) -> JSONResponse:
    """PATCH /api/sessions/{session_id} — Change the title."""
    registry = _get_registry(request)
    try:
        req = RenameSessionRequest(**await _read_body(request))
    except (ValueError, ValidationError) as e:
        return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)

    title = req.title.strip()
    if not title:
        return JSONResponse({"error": "Title must not be empty"}, status_code=400)

    try:
        session = registry.rename(request.path_params["session_id"], title)
    except SessionNotFound as e:
        return error_response(e)
    return JSONResponse(_summary_json(session))


async def delete_session(request: Request) -> JSONResponse:
    """DELETE /api/sessions/{session_id} — Kill the process and drop the session."""
    registry = _get_registry(request)
    try:
        registry.terminate(request.path_params["session_id"])
    except SessionNotFound as e:
        return error_response(e)
    return JSONResponse({"ok": True})


async def session_websocket_endpoint(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for session viewers.

    Protocol:
        1. Client connects to /ws/{session_id}; unknown ids are refused
           with close code 4404
        2. Server sends the scrollback as one {"type": "output"} frame
        3. Client sends {"type": "input", "data"} / {"type": "resize",
           "cols", "rows"}; anything that is not JSON is typed verbatim
        4. Server streams {"type": "output", "data"} and finally
           {"type": "exit"} when the session ends
    """
    registry = _get_registry(websocket)
    session_id = websocket.path_params["session_id"]
    try:
        session = registry.get(session_id)
    except SessionNotFound:
        await websocket.close(code=UNKNOWN_SESSION_CLOSE_CODE)
        return

    await websocket.accept()
    client = ClientConnection()
    session.attach(client)
    logger.info("Client %s attached to session %s", client.id, session_id)

    writer = asyncio.create_task(_write_frames(websocket, client))
    reader = asyncio.create_task(_read_frames(websocket, session))
    try:
        await asyncio.wait({writer, reader}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        reader.cancel()
        session.detach(client)
        try:
            await writer
        except Exception as e:
            logger.debug("Client %s writer stopped: %s", client.id, e)
        logger.info("Client %s detached from session %s", client.id, session_id)


async def _write_frames(websocket: WebSocket, client: ClientConnection) -> None:
    """Drain the client's queue to the socket, then close it."""
    await client.pump(websocket.send_text)
    await websocket.close()


async def _read_frames(websocket: WebSocket, session: Any) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            frame = decode_client_frame(raw)
            if frame is not None:
                session.handle_frame(frame)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Session WebSocket error (%s)", session.id)
