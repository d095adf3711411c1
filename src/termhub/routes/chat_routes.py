"""
Query endpoint: one subprocess per request, streamed back as SSE.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse

from termhub.query.runner import QueryRunner, format_sse

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatRequest(BaseModel):
    message: str = ""
    sessionId: str | None = None


async def _stream(
    runner: QueryRunner, prompt: str, resume_token: str | None
) -> AsyncIterator[str]:
    events = runner.run(prompt, resume_token)
    try:
        async for event in events:
            yield format_sse(event)
    finally:
        # Runs on client disconnect too; closing the generator kills the child.
        await events.aclose()


async def chat(request: Request) -> StreamingResponse | JSONResponse:
    """
    POST /api/chat: run one query and stream its events.

    Body: {"message": "...", "sessionId": "<resume token>"?}

    Streams ``data: {"type": "text"|"error"|"done", ...}`` messages. The
    final ``done`` event carries the token to pass as ``sessionId`` next time.
    """
    try:
        data = json.loads(await request.body() or b"{}")
        req = ChatRequest(**data) if isinstance(data, dict) else None
    except (ValueError, ValidationError) as e:
        return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)

    if req is None:
        return JSONResponse(
            {"error": "Request body must be a JSON object"}, status_code=400
        )

    prompt = req.message.strip()
    if not prompt:
        return JSONResponse({"error": "Message is required"}, status_code=400)

    runner: QueryRunner = request.app.state.query_runner
    logger.info("Query request (resume=%s, %d chars)", bool(req.sessionId), len(prompt))
    return StreamingResponse(
        _stream(runner, prompt, req.sessionId or None),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
