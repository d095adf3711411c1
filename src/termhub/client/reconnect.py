"""Reconnect controller — keeps a terminal attached across transient drops.

The controller owns no socket. Its owner wires in the transport:

    open_transport()          start a connection attempt
    send(text)                send one frame on the open transport
    write(text)               show text on the local terminal
    get_size() -> (cols, rows)
    schedule(delay, callback) run ``callback`` after ``delay`` seconds

and reports transport events back through ``handle_open()``,
``handle_close()`` and ``handle_message()``. That keeps the state machine
testable without a network or an event loop.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable

from tenacity import RetryCallState, wait_exponential

logger = logging.getLogger(__name__)

ABANDONED_MESSAGE = "Connection lost. Restart the client to retry."
SESSION_ENDED_MESSAGE = "Session ended."


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ABANDONED = "abandoned"


class ReconnectController:
    """Exponential-backoff reconnect state machine for one attached session.

    Every close outside ``ABANDONED`` schedules another attempt after
    ``min(base_delay * growth_factor ** attempts, cap_delay)`` seconds.
    A successful open resets the counter. Once ``max_attempts`` retries
    have been scheduled without an open in between, the next close gives
    up for good.
    """

    def __init__(
        self,
        open_transport: Callable[[], Any],
        send: Callable[[str], Any],
        write: Callable[[str], Any],
        get_size: Callable[[], tuple[int, int]],
        schedule: Callable[[float, Callable[[], Any]], Any],
        base_delay: float = 1.0,
        growth_factor: float = 1.5,
        cap_delay: float = 10.0,
        max_attempts: int = 20,
        on_finished: Callable[[], Any] | None = None,
    ) -> None:
        self._open_transport = open_transport
        self._send = send
        self._write = write
        self._get_size = get_size
        self._schedule = schedule
        self._on_finished = on_finished
        self.max_attempts = max_attempts
        self._wait = wait_exponential(
            multiplier=base_delay, exp_base=growth_factor, max=cap_delay
        )
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.session_ended = False

    @classmethod
    def from_config(cls, config: Any, **callbacks: Any) -> ReconnectController:
        """Build a controller using the backoff settings of a ``ClientConfig``."""
        return cls(
            base_delay=config.base_delay,
            growth_factor=config.growth_factor,
            cap_delay=config.cap_delay,
            max_attempts=config.max_attempts,
            **callbacks,
        )

    @property
    def finished(self) -> bool:
        """True once no further connection attempts will be made."""
        return self.state is ConnectionState.ABANDONED or self.session_ended

    def next_delay(self) -> float:
        """Delay before the next retry, given the current attempt count."""
        retry_state = RetryCallState(None, None, (), {})
        retry_state.attempt_number = self.attempts + 1
        return self._wait(retry_state)

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def connect(self) -> None:
        if self.finished:
            return
        self.state = ConnectionState.CONNECTING
        try:
            self._open_transport()
        except OSError as e:
            logger.warning("Connection attempt failed: %s", e)
            self.handle_close()

    def handle_open(self) -> None:
        self.state = ConnectionState.CONNECTED
        self.attempts = 0
        cols, rows = self._get_size()
        self.send_resize(cols, rows)

    def handle_close(self) -> None:
        if self.finished:
            return
        self.state = ConnectionState.DISCONNECTED

        if self.attempts >= self.max_attempts:
            self.state = ConnectionState.ABANDONED
            logger.info("Giving up after %d reconnect attempts", self.attempts)
            self._write(f"\r\n{ABANDONED_MESSAGE}\r\n")
            self._finish()
            return

        delay = self.next_delay()
        self.attempts += 1
        logger.debug("Reconnect attempt %d in %.1fs", self.attempts, delay)
        self._schedule(delay, self.connect)

    def handle_message(self, text: str | bytes) -> None:
        if self.state is not ConnectionState.CONNECTED:
            return
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")

        try:
            msg = json.loads(text)
        except json.JSONDecodeError:
            self._write(text)
            return
        if not isinstance(msg, dict):
            self._write(text)
            return

        msg_type = msg.get("type")
        if msg_type == "output":
            data = msg.get("data")
            if isinstance(data, str):
                self._write(data)
        elif msg_type == "exit":
            self.session_ended = True
            self._write(f"\r\n{SESSION_ENDED_MESSAGE}\r\n")
            self._finish()
        else:
            logger.debug("Ignoring frame of type %r", msg_type)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_input(self, data: str) -> bool:
        """Send keystrokes. Dropped (returns False) unless connected."""
        return self._send_frame({"type": "input", "data": data})

    def send_resize(self, cols: int, rows: int) -> bool:
        """Send terminal geometry. Dropped (returns False) unless connected."""
        return self._send_frame({"type": "resize", "cols": cols, "rows": rows})

    def _send_frame(self, frame: dict[str, Any]) -> bool:
        if self.state is not ConnectionState.CONNECTED:
            return False
        self._send(json.dumps(frame))
        return True

    def _finish(self) -> None:
        if self._on_finished is not None:
            self._on_finished()
