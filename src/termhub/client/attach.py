"""Attach the local terminal to a running session over WebSocket.

Puts stdin in raw mode, forwards keystrokes and window-size changes, and
writes session output straight to stdout. Drops are retried with the
``ReconnectController`` backoff. Press Ctrl-] to detach; the session keeps
running on the server.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import sys
import termios
import tty
from typing import Any

import websockets

from termhub.client.reconnect import ReconnectController
from termhub.config import ClientConfig

logger = logging.getLogger(__name__)

DETACH_KEY = b"\x1d"  # Ctrl-]


def websocket_url(server_url: str, session_id: str) -> str:
    """Map an http(s) server URL to the session's ws(s) endpoint."""
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws/{session_id}"


class TerminalAttachClient:
    """Interactive terminal bridge for one session."""

    def __init__(self, session_id: str, config: ClientConfig | None = None) -> None:
        self.config = config or ClientConfig()
        self.session_id = session_id
        self.url = websocket_url(self.config.server_url, session_id)
        self.detached = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: Any = None
        self._outbox: asyncio.Queue[str] | None = None
        self._conn_task: asyncio.Task | None = None
        self._done = asyncio.Event()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.controller = ReconnectController.from_config(
            self.config,
            open_transport=self._open_transport,
            send=self._send,
            write=self._write,
            get_size=self._get_size,
            schedule=self._schedule,
            on_finished=self._done.set,
        )

    # ------------------------------------------------------------------
    # Controller callbacks
    # ------------------------------------------------------------------

    def _open_transport(self) -> None:
        assert self._loop is not None
        self._conn_task = self._loop.create_task(self._connection())

    def _send(self, text: str) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(text)

    @staticmethod
    def _write(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    @staticmethod
    def _get_size() -> tuple[int, int]:
        size = shutil.get_terminal_size()
        return size.columns, size.lines

    def _schedule(self, delay: float, callback: Any) -> None:
        assert self._loop is not None
        self._loop.call_later(delay, callback)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _connection(self) -> None:
        sender: asyncio.Task | None = None
        try:
            async with websockets.connect(self.url) as ws:
                self._ws = ws
                self._outbox = asyncio.Queue()
                sender = asyncio.create_task(self._drain(ws, self._outbox))
                self.controller.handle_open()
                async for message in ws:
                    self.controller.handle_message(message)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.debug("Connection to %s dropped: %s", self.url, e)
        finally:
            self._ws = None
            self._outbox = None
            if sender is not None:
                sender.cancel()
        if not self._done.is_set():
            self.controller.handle_close()

    @staticmethod
    async def _drain(ws: Any, outbox: asyncio.Queue[str]) -> None:
        while True:
            text = await outbox.get()
            await ws.send(text)

    # ------------------------------------------------------------------
    # Local terminal
    # ------------------------------------------------------------------

    def _on_stdin(self) -> None:
        try:
            data = os.read(sys.stdin.fileno(), 1024)
        except OSError:
            data = b""
        if not data:
            self._done.set()
            return
        if DETACH_KEY in data:
            data = data[: data.index(DETACH_KEY)]
            self.detached = True
        text = self._decoder.decode(data)
        if text:
            self.controller.send_input(text)
        if self.detached:
            self._done.set()

    def _on_winch(self) -> None:
        cols, rows = self._get_size()
        self.controller.send_resize(cols, rows)

    async def run(self) -> None:
        """Attach until detached, the session ends, or reconnecting gives up."""
        self._loop = asyncio.get_running_loop()
        fd = sys.stdin.fileno()
        interactive = os.isatty(fd)
        saved = termios.tcgetattr(fd) if interactive else None

        try:
            if interactive:
                tty.setraw(fd)
            self._loop.add_reader(fd, self._on_stdin)
            self._loop.add_signal_handler(signal.SIGWINCH, self._on_winch)
            self.controller.connect()
            await self._done.wait()
        finally:
            self._loop.remove_reader(fd)
            self._loop.remove_signal_handler(signal.SIGWINCH)
            if self._ws is not None:
                await self._ws.close()
            if self._conn_task is not None:
                self._conn_task.cancel()
            if saved is not None:
                termios.tcsetattr(fd, termios.TCSADRAIN, saved)

        if self.detached:
            self._write(f"\r\n[detached from {self.session_id}]\r\n")
