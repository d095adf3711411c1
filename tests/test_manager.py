"""Tests for termhub.pty.manager.SessionRegistry with real shells."""

from __future__ import annotations

import asyncio
import json
import os
import sys

import pytest

from termhub.config import SessionConfig
from termhub.errors import InvalidWorkingDirectory, SessionNotFound, SpawnFailure
from termhub.pty.manager import SessionRegistry
from termhub.pty.relay import ClientConnection

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"),
    reason="needs a POSIX pty and /bin/sh",
)


@pytest.fixture
def config(tmp_path) -> SessionConfig:
    return SessionConfig(
        workspace=str(tmp_path),
        shell=["/bin/sh"],
        startup_command="",
        startup_delay=0.05,
    )


@pytest.fixture
async def registry(config):
    reg = SessionRegistry(config)
    yield reg
    await reg.cleanup()


async def _frames(client: ClientConnection, timeout: float = 5.0) -> list[dict]:
    sent: list[str] = []

    async def send(frame: str) -> None:
        sent.append(frame)

    await asyncio.wait_for(client.pump(send), timeout)
    return [json.loads(f) for f in sent]


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(_poll(), timeout)


# ---------------------------------------------------------------------------
# Create / lookup
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_default_title_and_cwd(self, registry, tmp_path) -> None:
        first = await registry.create()
        second = await registry.create()
        assert first.title == "Session 1"
        assert second.title == "Session 2"
        assert first.cwd == str(tmp_path.resolve())
        assert first.id != second.id
        assert len(registry) == 2

    async def test_explicit_title(self, registry) -> None:
        session = await registry.create(title="build")
        assert session.title == "build"

    async def test_relative_cwd_created(self, registry, tmp_path) -> None:
        session = await registry.create(cwd="projects/demo")
        assert session.cwd == str((tmp_path / "projects" / "demo").resolve())
        assert os.path.isdir(session.cwd)

    async def test_cwd_outside_workspace_rejected(self, registry) -> None:
        with pytest.raises(InvalidWorkingDirectory):
            await registry.create(cwd="../elsewhere")
        with pytest.raises(InvalidWorkingDirectory):
            await registry.create(cwd="/etc")
        assert len(registry) == 0

    async def test_cwd_that_is_a_file_rejected(self, registry, tmp_path) -> None:
        (tmp_path / "notadir").write_text("x")
        with pytest.raises(InvalidWorkingDirectory):
            await registry.create(cwd="notadir")
        with pytest.raises(InvalidWorkingDirectory):
            await registry.create(cwd="notadir/child")
        assert len(registry) == 0

    async def test_spawn_failure_registers_nothing(self, tmp_path) -> None:
        reg = SessionRegistry(
            SessionConfig(workspace=str(tmp_path), shell=["/no/such/shell"])
        )
        with pytest.raises(SpawnFailure):
            await reg.create()
        assert len(reg) == 0

    async def test_startup_command_injected(self, tmp_path) -> None:
        reg = SessionRegistry(
            SessionConfig(
                workspace=str(tmp_path),
                shell=["/bin/sh"],
                startup_command="echo primed-$((1+1))",
                startup_delay=0.05,
            )
        )
        try:
            session = await reg.create()
            await _wait_until(lambda: "primed-2" in session.scrollback.read_all())
        finally:
            await reg.cleanup()

    async def test_get_unknown(self, registry) -> None:
        with pytest.raises(SessionNotFound):
            registry.get("nope")


class TestRenameAndList:
    async def test_rename_then_list(self, registry) -> None:
        session = await registry.create()
        registry.rename(session.id, "X")
        [summary] = [s for s in registry.list() if s.id == session.id]
        assert summary.title == "X"

    async def test_rename_unknown(self, registry) -> None:
        with pytest.raises(SessionNotFound):
            registry.rename("nope", "X")

    async def test_list_most_recent_first(self, registry) -> None:
        older = await registry.create()
        newer = await registry.create()
        older.last_activity = 100.0
        newer.last_activity = 200.0
        assert [s.id for s in registry.list()] == [newer.id, older.id]


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------


class TestTerminate:
    async def test_terminate_then_lookup_fails(self, registry) -> None:
        session = await registry.create()
        registry.terminate(session.id)
        with pytest.raises(SessionNotFound):
            registry.get(session.id)
        with pytest.raises(SessionNotFound):
            registry.terminate(session.id)
        assert not session.process.is_alive()

    async def test_terminate_notifies_clients(self, registry) -> None:
        session = await registry.create()
        client = ClientConnection()
        session.attach(client)
        registry.terminate(session.id)
        frames = await _frames(client)
        assert frames[-1] == {"type": "exit"}

    async def test_discard_is_silent(self, registry) -> None:
        session = await registry.create()
        client = ClientConnection()
        session.attach(client)
        registry.discard(session.id)
        assert session.id not in registry
        assert not client.closed

    async def test_cleanup_kills_everything(self, config) -> None:
        reg = SessionRegistry(config)
        sessions = [await reg.create() for _ in range(3)]
        await reg.cleanup()
        assert len(reg) == 0
        assert not any(s.process.is_alive() for s in sessions)


class TestProcessExit:
    async def test_exit_notice_then_removal(self, registry) -> None:
        session = await registry.create()
        client = ClientConnection()
        session.attach(client)

        session.write_input("exit\r")
        frames = await _frames(client)

        assert frames[-1] == {"type": "exit"}
        assert session.id not in registry
        with pytest.raises(SessionNotFound):
            registry.get(session.id)
