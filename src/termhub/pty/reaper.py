"""Idle reaper — periodic sweep of dead and idle sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from termhub.pty.manager import SessionRegistry

logger = logging.getLogger(__name__)


def inactivity_message(idle_timeout: float) -> str:
    minutes = idle_timeout / 60
    amount = f"{minutes:g} minute{'' if minutes == 1 else 's'}"
    return f"\r\n[Session terminated after {amount} of inactivity]\r\n"


class IdleReaper:
    """Reclaims sessions whose process died or that sat idle too long.

    Every ``interval`` seconds each registered session is probed:

    1. Process not alive -> removed at once. Nobody can be told; the
       process is already gone.
    2. Alive but idle longer than ``idle_timeout`` -> viewers get an
       inactivity notice and an ``exit`` frame, then the process is killed
       and the session removed. ``idle_timeout=0`` disables this check.

    Sweeps run one after another in a single task, so they never overlap.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        interval: float = 60.0,
        idle_timeout: float = 0,
    ) -> None:
        self._registry = registry
        self.interval = interval
        self.idle_timeout = idle_timeout
        self._task: asyncio.Task | None = None

    def sweep(self) -> list[str]:
        """Run one sweep. Returns the ids of reaped sessions."""
        reaped: list[str] = []
        for session in self._registry.sessions():
            try:
                if not session.process.is_alive():
                    self._registry.discard(session.id)
                    logger.info("Reaped dead session %s", session.id)
                    reaped.append(session.id)
                    continue

                if self.idle_timeout <= 0:
                    continue

                idle = session.idle_seconds()
                if idle > self.idle_timeout:
                    self._registry.terminate(
                        session.id, message=inactivity_message(self.idle_timeout)
                    )
                    logger.info(
                        "Reaped idle session %s (idle %.0fs)", session.id, idle
                    )
                    reaped.append(session.id)
            except Exception:
                logger.exception("Error sweeping session %s", session.id)
        return reaped

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.sweep()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(
                "Idle reaper started (interval=%ss, idle_timeout=%ss)",
                self.interval,
                self.idle_timeout,
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
