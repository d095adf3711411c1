"""Tests for termhub.query.runner.QueryRunner using scripted fake CLIs."""

from __future__ import annotations

import asyncio
import json
import os
import sys
import textwrap

import pytest

from termhub.query.runner import (
    DoneEvent,
    ErrorEvent,
    QueryRunner,
    TextEvent,
    format_sse,
)

pytestmark = pytest.mark.skipif(
    sys.platform == "win32", reason="process groups are POSIX-only"
)


def _fake_cli(tmp_path, body: str) -> list[str]:
    """Write a Python script standing in for the query CLI."""
    script = tmp_path / "fake_cli.py"
    script.write_text(
        "import json, sys, time\n"
        "def emit(obj):\n"
        "    sys.stdout.write(json.dumps(obj) + '\\n')\n"
        "    sys.stdout.flush()\n"
        "def delta(text):\n"
        "    emit({'type': 'stream_event', 'event': {'type': 'content_block_delta',"
        " 'delta': {'type': 'text_delta', 'text': text}}})\n"
        + textwrap.dedent(body)
    )
    return [sys.executable, str(script)]


async def _collect(runner: QueryRunner, prompt: str = "hi", token: str | None = None):
    return [event async for event in runner.run(prompt, token)]


class TestEventSequence:
    async def test_text_events_then_done(self, tmp_path) -> None:
        command = _fake_cli(
            tmp_path,
            """
            emit({'type': 'system', 'session_id': 'abc'})
            for ch in 'ABC':
                delta(ch)
            emit({'type': 'result', 'session_id': 'abc'})
            """,
        )
        events = await _collect(QueryRunner(command))
        assert events == [
            TextEvent(content="A"),
            TextEvent(content="B"),
            TextEvent(content="C"),
            DoneEvent(session_id="abc"),
        ]

    async def test_failure_emits_error_then_done(self, tmp_path) -> None:
        command = _fake_cli(
            tmp_path,
            """
            sys.stderr.write('boom\\n')
            sys.exit(1)
            """,
        )
        events = await _collect(QueryRunner(command))
        assert events == [ErrorEvent(content="boom"), DoneEvent(session_id=None)]

    async def test_nonzero_exit_without_stderr_is_not_an_error(self, tmp_path) -> None:
        command = _fake_cli(tmp_path, "sys.exit(2)\n")
        events = await _collect(QueryRunner(command))
        assert events == [DoneEvent(session_id=None)]

    async def test_stderr_ignored_on_success(self, tmp_path) -> None:
        command = _fake_cli(
            tmp_path,
            """
            sys.stderr.write('just a warning\\n')
            delta('ok')
            """,
        )
        events = await _collect(QueryRunner(command))
        assert events == [TextEvent(content="ok"), DoneEvent(session_id=None)]

    async def test_malformed_lines_skipped(self, tmp_path) -> None:
        command = _fake_cli(
            tmp_path,
            """
            sys.stdout.write('garbage\\n[1]\\n')
            delta('x')
            sys.stdout.write(json.dumps({'delta': 'y'}))  # no trailing newline
            """,
        )
        events = await _collect(QueryRunner(command))
        assert events == [
            TextEvent(content="x"),
            TextEvent(content="y"),
            DoneEvent(session_id=None),
        ]


class TestResumeToken:
    async def test_caller_token_passed_and_kept(self, tmp_path) -> None:
        command = _fake_cli(
            tmp_path,
            """
            delta(' '.join(sys.argv[1:]))
            """,
        )
        events = await _collect(QueryRunner(command), "the prompt", "tok-1")
        assert events[0] == TextEvent(content="--resume tok-1 the prompt")
        assert events[-1] == DoneEvent(session_id="tok-1")

    async def test_emitted_token_overrides_caller(self, tmp_path) -> None:
        command = _fake_cli(
            tmp_path,
            """
            emit({'type': 'system', 'session_id': 'first'})
            emit({'type': 'result', 'session_id': 'second'})
            """,
        )
        events = await _collect(QueryRunner(command), "p", "caller")
        assert events == [DoneEvent(session_id="second")]

    def test_build_command(self) -> None:
        runner = QueryRunner(["cli", "-p"], resume_flag="--resume")
        assert runner.build_command("q") == ["cli", "-p", "q"]
        assert runner.build_command("q", "t") == ["cli", "-p", "--resume", "t", "q"]


class TestFailureModes:
    async def test_missing_executable(self, tmp_path) -> None:
        runner = QueryRunner([str(tmp_path / "does-not-exist")])
        events = await _collect(runner, "p", "caller")
        assert len(events) == 2
        assert isinstance(events[0], ErrorEvent)
        assert events[1] == DoneEvent(session_id="caller")

    async def test_consumer_stop_kills_process(self, tmp_path) -> None:
        pid_file = tmp_path / "pid"
        command = _fake_cli(
            tmp_path,
            f"""
            import os
            open({str(pid_file)!r}, 'w').write(str(os.getpid()))
            delta('first')
            time.sleep(60)
            delta('never')
            """,
        )
        events = QueryRunner(command).run("p")
        first = await asyncio.wait_for(events.__anext__(), 10.0)
        assert first == TextEvent(content="first")
        await events.aclose()

        pid = int(pid_file.read_text())
        for _ in range(100):
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                break
            # Zombie until the loop's child watcher reaps it.
            await asyncio.sleep(0.02)
        else:
            with open(f"/proc/{pid}/stat") as f:
                assert f.read().split()[2] == "Z"


class TestSse:
    def test_format(self) -> None:
        assert format_sse(TextEvent(content="hi")) == (
            'data: {"type": "text", "content": "hi"}\n\n'
        )

    def test_done_uses_camel_case(self) -> None:
        payload = format_sse(DoneEvent(session_id="s")).removeprefix("data: ")
        assert json.loads(payload) == {"type": "done", "sessionId": "s"}
