"""Session — a registered PTY process shared by any number of viewers."""

from __future__ import annotations

import codecs
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from termhub.pty.buffer import ScrollbackBuffer
from termhub.pty.process import PTYProcess
from termhub.pty.relay import (
    ClientConnection,
    InputMessage,
    RawFrame,
    ResizeMessage,
    StructuredFrame,
)

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionSummary(BaseModel):
    """Registry enumeration entry, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    created_at: str = Field(alias="createdAt")
    title: str
    cwd: str
    last_activity: float = Field(alias="lastActivity")


@dataclass(eq=False)
class Session:
    """A persistent, process-backed interactive context.

    The session owns one ``PTYProcess`` for its whole life and fans its
    output out to every attached ``ClientConnection``:

    - output is appended to the scrollback, bumps ``last_activity`` and is
      queued for each open client;
    - a newly attached client first receives the whole scrollback as one
      ``output`` frame, queued before any later live chunk;
    - input from any client bumps ``last_activity`` and goes straight to the
      process (concurrent clients interleave, last write wins);
    - resizes go to the process but do not count as activity.

    All mutation happens on the event loop thread, which serializes access
    to one session without a lock while leaving other sessions independent.
    """

    process: PTYProcess
    cwd: str
    title: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_utc_now_iso)
    scrollback: ScrollbackBuffer = field(default_factory=ScrollbackBuffer)
    clock: Callable[[], float] = field(default=time.time, repr=False)

    last_activity: float = field(default=0.0, init=False)
    ended: bool = field(default=False, init=False)
    clients: set[ClientConnection] = field(default_factory=set, init=False)
    _decoder: codecs.IncrementalDecoder = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.last_activity = self.clock()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Record activity now. ``last_activity`` never moves backwards."""
        self.last_activity = max(self.last_activity, self.clock())

    def idle_seconds(self, now: float | None = None) -> float:
        now = self.clock() if now is None else now
        return max(0.0, now - self.last_activity)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def attach(self, client: ClientConnection) -> None:
        """Attach a viewer and replay the scrollback to it.

        A viewer that arrives after the session has ended gets the replay
        and ``exit`` straight away and is closed, never joining the fan-out.
        """
        client.send_output(self.scrollback.read_all())
        if self.ended:
            client.send_exit()
            client.close()
            return
        self.clients.add(client)
        logger.debug(
            "Client %s attached to session %s (%d attached)",
            client.id,
            self.id,
            len(self.clients),
        )

    def detach(self, client: ClientConnection) -> None:
        """Detach a viewer. The process and other viewers are unaffected."""
        self.clients.discard(client)
        client.close()
        logger.debug("Client %s detached from session %s", client.id, self.id)

    def handle_output(self, data: bytes) -> None:
        """Process output callback: buffer, record activity, broadcast."""
        self.touch()
        text = self._decoder.decode(data)
        if not text:
            return
        self.scrollback.append(text)
        for client in list(self.clients):
            if client.closed:
                continue
            client.send_output(text)

    def notify_exit(self, message: str | None = None) -> None:
        """Tell every viewer the session is over, then close their channels."""
        self.ended = True
        for client in list(self.clients):
            if message:
                client.send_output(message)
            client.send_exit()
            client.close()
        self.clients.clear()

    # ------------------------------------------------------------------
    # Client -> process
    # ------------------------------------------------------------------

    def write_input(self, data: str | bytes) -> None:
        self.touch()
        self.process.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self.process.resize(cols, rows)

    def handle_frame(self, frame: StructuredFrame | RawFrame | None) -> None:
        """Dispatch a decoded client frame."""
        if frame is None:
            return
        if isinstance(frame, RawFrame):
            self.write_input(frame.data)
            return
        message = frame.message
        if isinstance(message, InputMessage):
            self.write_input(message.data)
        elif isinstance(message, ResizeMessage):
            self.resize(message.cols, message.rows)

    # ------------------------------------------------------------------

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            created_at=self.created_at,
            title=self.title,
            cwd=self.cwd,
            last_activity=self.last_activity,
        )

    @property
    def alive(self) -> bool:
        return self.process.is_alive()
