"""PTY process — a child process attached to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from dataclasses import dataclass, field
from typing import Callable

from termhub.errors import SpawnFailure

logger = logging.getLogger(__name__)

_READ_SIZE = 65536
# Reads attempted after the child exits, to pick up output still sitting in
# the pty. Bounded so a lingering grandchild cannot keep us here forever.
_MAX_DRAIN_READS = 64


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY process."""

    RUNNING = "running"
    KILLING = "killing"  # Kill requested, tearing down
    KILLED = "killed"  # Killed by us (SIGKILL)
    EXITED = "exited"  # Process exited on its own


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the pty slave (fd 0) our
    # controlling terminal so shells get job control and SIGWINCH.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


@dataclass
class PTYProcess:
    """A process running on its own pseudo-terminal.

    Wraps spawn, bidirectional byte transport and geometry control:

    - ``write()`` queues input and never blocks; queued bytes are flushed
      when the master fd becomes writable.
    - ``on_data`` fires for every output chunk, in order.
    - ``on_exit`` fires exactly once when the process exits on its own; no
      ``on_data`` call follows it. It does NOT fire after ``kill()``.
    - ``resize()`` is best-effort.

    All I/O is driven by ``loop.add_reader`` / ``loop.add_writer`` on the
    master fd, so any number of processes share one event loop without a
    thread each.
    """

    command: list[str] = field(default_factory=lambda: ["/bin/bash"])
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 120
    rows: int = 40
    on_data: Callable[[bytes], None] | None = None
    on_exit: Callable[[int | None], None] | None = None

    # Internal state
    _master_fd: int = field(default=-1, init=False)
    _proc: asyncio.subprocess.Process | None = field(default=None, init=False)
    _pid: int = field(default=0, init=False)
    _pgid: int = field(default=0, init=False)
    _status: PTYStatus = field(default=PTYStatus.RUNNING, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _pending: bytearray = field(default_factory=bytearray, init=False)
    _reading: bool = field(default=False, init=False)
    _writing: bool = field(default=False, init=False)
    _exit_task: asyncio.Task | None = field(default=None, init=False)

    async def start(self) -> None:
        """Spawn the process on a new PTY in its own session.

        Raises:
            SpawnFailure: If the command cannot be started.
        """
        master_fd, slave_fd = pty.openpty()

        env = {**os.environ, **self.env}
        env["TERM"] = "xterm-256color"
        env["COLORTERM"] = "truecolor"
        env.setdefault("HOME", os.path.expanduser("~") or "/root")

        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # New session and process group
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=self.cwd,
            )
        except (OSError, ValueError) as e:
            os.close(master_fd)
            raise SpawnFailure(
                f"Failed to start {' '.join(self.command)!r}: {e}"
            ) from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pid = self._proc.pid
        try:
            self._pgid = os.getpgid(self._pid)
        except ProcessLookupError:
            self._pgid = self._pid
        self._status = PTYStatus.RUNNING

        os.set_blocking(master_fd, False)
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._exit_task = asyncio.create_task(self._wait_for_exit())

        logger.info(
            "PTY process started: pid=%d pgid=%d cmd=%s",
            self._pid,
            self._pgid,
            " ".join(self.command),
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave holder is gone; the exit task takes over.
            data = b""

        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _emit(self, data: bytes) -> None:
        if self._status != PTYStatus.RUNNING or self.on_data is None:
            return
        try:
            self.on_data(data)
        except Exception:
            logger.exception("Error in on_data callback for pid %d", self._pid)

    def _drain(self) -> None:
        """Deliver output still buffered in the pty after the child exited."""
        for _ in range(_MAX_DRAIN_READS):
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                return
            if not data:
                return
            self._emit(data)

    async def _wait_for_exit(self) -> None:
        assert self._proc is not None
        exit_code = await self._proc.wait()

        # Only transition to EXITED if we weren't already killing
        if self._status != PTYStatus.RUNNING:
            return

        self._drain()
        self._status = PTYStatus.EXITED
        self._teardown_io()
        logger.info("PTY process %d exited (code=%s)", self._pid, exit_code)
        if self.on_exit:
            try:
                self.on_exit(exit_code)
            except Exception:
                logger.exception("Error in on_exit callback for pid %d", self._pid)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def write(self, data: bytes | str) -> None:
        """Queue input for the process. Never blocks; dropped after exit."""
        if self._status != PTYStatus.RUNNING or self._master_fd < 0:
            return
        if isinstance(data, str):
            data = data.encode("utf-8", errors="replace")
        if not data:
            return
        self._pending.extend(data)
        self._flush()

    def _flush(self) -> None:
        while self._pending:
            try:
                n = os.write(self._master_fd, self._pending)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug("PTY write to pid %d failed: %s", self._pid, e)
                self._pending.clear()
                break
            del self._pending[:n]

        if self._pending and not self._writing and self._loop is not None:
            self._loop.add_writer(self._master_fd, self._flush)
            self._writing = True
        elif not self._pending and self._writing:
            self._stop_writing()

    # ------------------------------------------------------------------
    # Geometry / lifecycle
    # ------------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> None:
        """Set the terminal size. Best-effort; ignored once the process is gone."""
        if self._status != PTYStatus.RUNNING or self._master_fd < 0:
            return
        if cols <= 0 or rows <= 0:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
            self.cols, self.rows = cols, rows
        except OSError as e:
            logger.debug("Resize of pid %d failed: %s", self._pid, e)

    def is_alive(self) -> bool:
        """Non-destructive liveness probe (signal 0)."""
        if self._proc is None or self._proc.returncode is not None:
            return False
        if self._status in (PTYStatus.KILLED, PTYStatus.EXITED):
            return False
        try:
            os.kill(self._pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def kill(self) -> None:
        """Kill the entire process group and release the pty."""
        if self._status not in (PTYStatus.RUNNING, PTYStatus.KILLING):
            return

        self._status = PTYStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY process %d (pgid=%d)", self._pid, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY process %d: %s", self._pid, e)

        self._teardown_io()
        self._status = PTYStatus.KILLED

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False

    def _stop_writing(self) -> None:
        if self._writing and self._loop is not None:
            self._loop.remove_writer(self._master_fd)
        self._writing = False

    def _teardown_io(self) -> None:
        if self._master_fd < 0:
            return
        self._stop_reading()
        self._stop_writing()
        self._pending.clear()
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._status == PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None
