"""Relay plumbing — client frame codec and per-client outbound queues.

Frames on the duplex channel are JSON text:

    client -> server   {"type": "input", "data": "..."}
                       {"type": "resize", "cols": 120, "rows": 40}
    server -> client   {"type": "output", "data": "..."}
                       {"type": "exit"}

Anything a client sends that is not JSON is raw keyboard input.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# Outbound frames a viewer may have queued before it is dropped.
MAX_PENDING_FRAMES = 4096


class InputMessage(BaseModel):
    type: Literal["input"] = "input"
    data: str


class ResizeMessage(BaseModel):
    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


ClientMessage = Union[InputMessage, ResizeMessage]

_MESSAGE_MODELS: dict[str, type[BaseModel]] = {
    "input": InputMessage,
    "resize": ResizeMessage,
}


@dataclass(frozen=True)
class StructuredFrame:
    """A well-formed client message."""

    message: ClientMessage


@dataclass(frozen=True)
class RawFrame:
    """Non-JSON text, forwarded to the process as-is."""

    data: str


def decode_client_frame(
    frame: str | bytes,
) -> StructuredFrame | RawFrame | None:
    """Decode one inbound frame.

    Returns ``RawFrame`` for anything that is not a JSON object (a raw
    client typing ``1`` produces valid JSON, so scalars count as raw too),
    ``StructuredFrame`` for a valid input/resize message, and ``None`` for a
    JSON object we do not understand, which the caller ignores.
    """
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8", errors="replace")

    try:
        payload = json.loads(frame)
    except (json.JSONDecodeError, ValueError):
        return RawFrame(data=frame)

    if not isinstance(payload, dict):
        return RawFrame(data=frame)

    model = _MESSAGE_MODELS.get(payload.get("type"))  # type: ignore[arg-type]
    if model is None:
        logger.debug("Ignoring frame with unknown type: %r", payload.get("type"))
        return None

    try:
        return StructuredFrame(message=model.model_validate(payload))  # type: ignore[arg-type]
    except ValidationError as e:
        logger.debug("Ignoring malformed %s frame: %s", payload.get("type"), e)
        return None


def encode_output(data: str) -> str:
    return json.dumps({"type": "output", "data": data})


def encode_exit() -> str:
    return json.dumps({"type": "exit"})


class ClientConnection:
    """One attached viewer.

    Frames are queued with ``deliver()`` (never blocks) and sent by a single
    ``pump()`` task, so each client sees frames in exactly the order they
    were queued and a slow socket never holds up the session or the other
    viewers. ``close()`` lets already-queued frames drain, then ends the pump.

    A viewer that falls more than ``max_pending`` frames behind is dropped:
    its backlog is discarded and the connection closed, so it can reconnect
    and resync from the scrollback.
    """

    def __init__(
        self,
        client_id: str | None = None,
        max_pending: int = MAX_PENDING_FRAMES,
    ) -> None:
        self.id = client_id or uuid.uuid4().hex[:8]
        self.max_pending = max_pending
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed: bool = False
        self._overflowed: bool = False

    def deliver(self, frame: str) -> None:
        """Queue a frame. Silently dropped once the connection is closed."""
        if self._closed:
            return
        if self._queue.qsize() >= self.max_pending:
            self._overflow()
            return
        self._queue.put_nowait(frame)

    def _overflow(self) -> None:
        logger.warning(
            "Client %s fell %d frames behind; dropping it",
            self.id,
            self._queue.qsize(),
        )
        self._overflowed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self.close()

    def send_output(self, data: str) -> None:
        self.deliver(encode_output(data))

    def send_exit(self) -> None:
        self.deliver(encode_exit())

    def close(self) -> None:
        """Stop accepting frames; the pump exits after draining the queue."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    async def pump(self, send: Callable[[str], Awaitable[None]]) -> None:
        """Send queued frames until the connection is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            await send(frame)
