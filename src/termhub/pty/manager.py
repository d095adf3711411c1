"""Session registry — owns every live PTY session."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from termhub.config import SessionConfig
from termhub.errors import InvalidWorkingDirectory, SessionNotFound
from termhub.pty.buffer import ScrollbackBuffer
from termhub.pty.process import PTYProcess
from termhub.pty.session import Session, SessionSummary

logger = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory directory of persistent sessions, keyed by id.

    The registry ensures:
    - Working directories stay inside the configured workspace root
    - A session is only registered once its process is running
    - Attached clients hear about a session's end before it disappears
    - All sessions are killed on cleanup (no orphan processes)

    Map mutations never straddle an ``await``, so on a single event loop
    insert, remove and list are mutually exclusive without a lock.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config or SessionConfig()
        self._sessions: dict[str, Session] = {}
        self._startup_handles: dict[str, asyncio.TimerHandle] = {}

    @property
    def config(self) -> SessionConfig:
        return self._config

    def resolve_cwd(self, cwd: str | None) -> str:
        """Resolve ``cwd`` against the workspace root and reject escapes."""
        root = Path(self._config.workspace).expanduser().resolve()
        target = (root / cwd).resolve() if cwd else root
        if target != root and root not in target.parents:
            raise InvalidWorkingDirectory(
                f"Working directory must be inside {root}: {cwd}"
            )
        return str(target)

    async def create(
        self,
        cwd: str | None = None,
        title: str | None = None,
    ) -> Session:
        """Spawn a new shell session.

        Args:
            cwd: Working directory, absolute or relative to the workspace
                root. Created if missing. Defaults to the root itself.
            title: Human-readable title. Defaults to "Session N".

        Returns:
            The registered session.

        Raises:
            InvalidWorkingDirectory: ``cwd`` lies outside the workspace or
                cannot be created as a directory.
            SpawnFailure: The shell could not be started.
        """
        workdir = self.resolve_cwd(cwd)
        try:
            os.makedirs(workdir, exist_ok=True)
        except OSError as e:
            raise InvalidWorkingDirectory(
                f"Cannot use working directory {workdir}: {e.strerror or e}"
            ) from e

        process = PTYProcess(
            command=list(self._config.shell),
            cwd=workdir,
            cols=self._config.cols,
            rows=self._config.rows,
        )
        session = Session(
            process=process,
            cwd=workdir,
            title=title or "",
            scrollback=ScrollbackBuffer(max_bytes=self._config.scrollback_bytes),
        )
        process.on_data = session.handle_output
        process.on_exit = lambda code: self._on_process_exit(session, code)

        await process.start()

        self._sessions[session.id] = session
        if not session.title:
            session.title = f"Session {len(self._sessions)}"

        if self._config.startup_command:
            loop = asyncio.get_running_loop()
            self._startup_handles[session.id] = loop.call_later(
                self._config.startup_delay,
                self._send_startup_command,
                session,
            )

        logger.info(
            "Session %s created: pid=%d cwd=%s title=%r",
            session.id,
            process.pid,
            workdir,
            session.title,
        )
        return session

    def _send_startup_command(self, session: Session) -> None:
        self._startup_handles.pop(session.id, None)
        if session.id in self._sessions:
            session.process.write(self._config.startup_command + "\r")

    def _on_process_exit(self, session: Session, exit_code: int | None) -> None:
        if self._sessions.get(session.id) is not session:
            return
        logger.info("Session %s process exited (code=%s)", session.id, exit_code)
        session.notify_exit()
        self._remove(session.id)

    def get(self, session_id: str) -> Session:
        """Get a session by id. Raises ``SessionNotFound``."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def rename(self, session_id: str, title: str) -> Session:
        session = self.get(session_id)
        session.title = title
        return session

    def terminate(self, session_id: str, message: str | None = None) -> None:
        """Notify viewers, kill the process and forget the session.

        Raises ``SessionNotFound`` for unknown ids, including a second call
        for a session that is already gone.
        """
        session = self._remove(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        session.notify_exit(message)
        session.process.kill()
        logger.info("Session %s terminated", session_id)

    def discard(self, session_id: str) -> Session | None:
        """Forget a session without notifying anyone (its process is gone)."""
        session = self._remove(session_id)
        if session is not None:
            session.process.kill()
        return session

    def _remove(self, session_id: str) -> Session | None:
        handle = self._startup_handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        return self._sessions.pop(session_id, None)

    def list(self) -> list[SessionSummary]:
        """Summaries of all sessions, most recently active first."""
        sessions = sorted(
            self._sessions.values(),
            key=lambda s: s.last_activity,
            reverse=True,
        )
        return [s.summary() for s in sessions]

    def sessions(self) -> list[Session]:
        """Snapshot of the live session objects."""
        return list(self._sessions.values())

    async def cleanup(self) -> None:
        """Terminate all sessions. Called on shutdown."""
        for session_id in list(self._sessions.keys()):
            self.terminate(session_id)
        logger.info("All sessions cleaned up")

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
