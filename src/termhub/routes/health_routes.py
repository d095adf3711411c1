"""
Health check endpoint.
"""

from __future__ import annotations

import time

from starlette.requests import Request
from starlette.responses import JSONResponse


async def health_check(request: Request) -> JSONResponse:
    """
    Basic health check endpoint.

    Returns 200 with the live session count while the service is running.
    """
    state = request.app.state
    return JSONResponse(
        {
            "status": "healthy",
            "sessions": len(state.registry),
            "uptime_seconds": int(time.time() - state.start_time),
        }
    )
