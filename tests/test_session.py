"""Tests for termhub.pty.session.Session fan-out and activity tracking."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

from termhub.pty.buffer import ScrollbackBuffer
from termhub.pty.relay import ClientConnection, decode_client_frame
from termhub.pty.session import Session


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _session(clock: FakeClock | None = None, max_bytes: int = 200_000) -> Session:
    return Session(
        process=MagicMock(),
        cwd="/workspace",
        title="Session 1",
        scrollback=ScrollbackBuffer(max_bytes=max_bytes),
        clock=clock or FakeClock(),
    )


async def _frames(client: ClientConnection) -> list[dict]:
    """Close the client and return everything that was queued for it."""
    client.close()
    sent: list[str] = []

    async def send(frame: str) -> None:
        sent.append(frame)

    await asyncio.wait_for(client.pump(send), timeout=1.0)
    return [json.loads(f) for f in sent]


def _output(frames: list[dict]) -> str:
    return "".join(f["data"] for f in frames if f["type"] == "output")


# ---------------------------------------------------------------------------
# Replay and fan-out
# ---------------------------------------------------------------------------


class TestAttachReplay:
    async def test_empty_scrollback_replays_empty_frame(self) -> None:
        session = _session()
        client = ClientConnection()
        session.attach(client)
        assert await _frames(client) == [{"type": "output", "data": ""}]

    async def test_replay_precedes_live_output(self) -> None:
        session = _session()
        session.handle_output(b"before-1 ")
        session.handle_output(b"before-2 ")

        client = ClientConnection()
        session.attach(client)
        session.handle_output(b"after")

        frames = await _frames(client)
        assert frames[0] == {"type": "output", "data": "before-1 before-2 "}
        assert frames[1] == {"type": "output", "data": "after"}

    async def test_replay_respects_eviction(self) -> None:
        session = _session(max_bytes=8)
        session.handle_output(b"aaaa")
        session.handle_output(b"bbbb")
        session.handle_output(b"cccc")
        client = ClientConnection()
        session.attach(client)
        assert (await _frames(client))[0]["data"] == "bbbbcccc"

    async def test_output_reaches_every_client(self) -> None:
        session = _session()
        a, b = ClientConnection(), ClientConnection()
        session.attach(a)
        session.attach(b)
        session.handle_output(b"hello")
        assert _output(await _frames(a)) == "hello"
        assert _output(await _frames(b)) == "hello"

    async def test_split_utf8_sequence_reassembled(self) -> None:
        session = _session()
        client = ClientConnection()
        session.attach(client)
        encoded = "é".encode("utf-8")
        session.handle_output(encoded[:1])
        session.handle_output(encoded[1:])
        assert _output(await _frames(client)) == "é"
        assert session.scrollback.read_all() == "é"


class TestDetach:
    async def test_detach_leaves_session_and_others_alone(self) -> None:
        session = _session()
        a, b = ClientConnection(), ClientConnection()
        session.attach(a)
        session.attach(b)

        session.detach(a)
        session.handle_output(b"still here")

        assert a.closed
        assert a not in session.clients
        session.process.kill.assert_not_called()
        assert _output(await _frames(b)) == "still here"
        assert "still here" not in _output(await _frames(a))

    async def test_closed_client_skipped(self) -> None:
        session = _session()
        client = ClientConnection()
        session.attach(client)
        client.close()
        session.handle_output(b"ignored")
        assert _output(await _frames(client)) == ""


class TestNotifyExit:
    async def test_exit_frame_then_close(self) -> None:
        session = _session()
        client = ClientConnection()
        session.attach(client)
        session.notify_exit()
        frames = await _frames(client)
        assert frames[-1] == {"type": "exit"}
        assert client.closed
        assert session.clients == set()

    async def test_message_precedes_exit(self) -> None:
        session = _session()
        client = ClientConnection()
        session.attach(client)
        session.notify_exit("\r\nbye\r\n")
        frames = await _frames(client)
        assert frames[-2:] == [
            {"type": "output", "data": "\r\nbye\r\n"},
            {"type": "exit"},
        ]

    async def test_attach_after_end_gets_exit(self) -> None:
        session = _session()
        session.handle_output(b"last words")
        session.notify_exit()

        client = ClientConnection()
        session.attach(client)

        assert client.closed
        assert client not in session.clients
        assert await _frames(client) == [
            {"type": "output", "data": "last words"},
            {"type": "exit"},
        ]


# ---------------------------------------------------------------------------
# Input and activity
# ---------------------------------------------------------------------------


class TestInput:
    def test_concurrent_input_from_two_clients_all_forwarded(self) -> None:
        session = _session()
        a, b = ClientConnection(), ClientConnection()
        session.attach(a)
        session.attach(b)

        for i in range(5):
            for name in ("a", "b"):
                frame = json.dumps({"type": "input", "data": f"{name}{i}"})
                session.handle_frame(decode_client_frame(frame))

        written = [c.args[0] for c in session.process.write.call_args_list]
        assert written == [x for i in range(5) for x in (f"a{i}", f"b{i}")]

    def test_raw_frame_forwarded_unchanged(self) -> None:
        session = _session()
        session.handle_frame(decode_client_frame("ls -la\r"))
        session.process.write.assert_called_once_with("ls -la\r")

    def test_resize_forwarded(self) -> None:
        session = _session()
        frame = decode_client_frame('{"type": "resize", "cols": 100, "rows": 30}')
        session.handle_frame(frame)
        session.process.resize.assert_called_once_with(100, 30)

    def test_ignored_frame_does_nothing(self) -> None:
        session = _session()
        session.handle_frame(decode_client_frame('{"type": "bogus"}'))
        session.process.write.assert_not_called()
        session.process.resize.assert_not_called()


class TestActivity:
    def test_input_touches(self) -> None:
        clock = FakeClock(100.0)
        session = _session(clock)
        clock.now = 150.0
        session.write_input("x")
        assert session.last_activity == 150.0

    def test_output_touches(self) -> None:
        clock = FakeClock(100.0)
        session = _session(clock)
        clock.now = 160.0
        session.handle_output(b"y")
        assert session.last_activity == 160.0

    def test_partial_utf8_output_touches(self) -> None:
        clock = FakeClock(100.0)
        session = _session(clock)
        clock.now = 170.0
        session.handle_output("é".encode("utf-8")[:1])
        assert session.last_activity == 170.0
        assert session.scrollback.read_all() == ""

    def test_resize_does_not_touch(self) -> None:
        clock = FakeClock(100.0)
        session = _session(clock)
        clock.now = 500.0
        session.resize(80, 24)
        assert session.last_activity == 100.0
        assert session.idle_seconds() == 400.0

    def test_never_moves_backwards(self) -> None:
        clock = FakeClock(100.0)
        session = _session(clock)
        clock.now = 50.0
        session.write_input("x")
        assert session.last_activity == 100.0

    def test_summary_uses_camel_case(self) -> None:
        session = _session()
        data = session.summary().model_dump(by_alias=True)
        assert set(data) == {"id", "createdAt", "title", "cwd", "lastActivity"}
        assert data["title"] == "Session 1"
