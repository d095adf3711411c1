"""Query runner — one subprocess per request, streamed back as events.

Each call to ``QueryRunner.run()`` spawns the configured CLI with the
prompt (and ``--resume <token>`` to continue an earlier conversation),
parses its record-per-line stdout as it arrives and yields:

    TextEvent   incremental text, zero or more, in stream order
    ErrorEvent  at most once, when the process failed with stderr output
    DoneEvent   exactly once, last, carrying the latest resume token

If the consumer stops iterating early (the HTTP client went away), the
subprocess is killed and nothing else is yielded.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from termhub.query.parser import (
    RecordStreamParser,
    extract_resume_token,
    extract_text_delta,
)

logger = logging.getLogger(__name__)

_READ_SIZE = 4096


@dataclass
class TextEvent:
    content: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass
class ErrorEvent:
    content: str
    type: str = field(default="error", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass
class DoneEvent:
    session_id: str | None = None
    type: str = field(default="done", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id}


QueryEvent = Union[TextEvent, ErrorEvent, DoneEvent]


def format_sse(event: QueryEvent) -> str:
    """Encode an event as one Server-Sent Events message."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


async def _read_all(stream: asyncio.StreamReader | None) -> bytes:
    if stream is None:
        return b""
    return await stream.read()


def _kill_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning("Error killing query process %d: %s", process.pid, e)


class QueryRunner:
    """Spawns one query subprocess per request. Holds no per-run state."""

    def __init__(
        self,
        command: list[str],
        cwd: str | None = None,
        resume_flag: str = "--resume",
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = list(command)
        self.cwd = cwd
        self.resume_flag = resume_flag
        self.env = env or {}

    def build_command(self, prompt: str, resume_token: str | None = None) -> list[str]:
        argv = list(self.command)
        if resume_token:
            argv += [self.resume_flag, resume_token]
        argv.append(prompt)
        return argv

    async def run(
        self, prompt: str, resume_token: str | None = None
    ) -> AsyncIterator[QueryEvent]:
        """Run one query and yield its events."""
        run_id = uuid.uuid4().hex[:8]
        token = resume_token
        argv = self.build_command(prompt, resume_token)
        cwd = self.cwd if self.cwd and os.path.isdir(self.cwd) else None

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,  # New process group
                env={**os.environ, **self.env},
            )
        except OSError as e:
            logger.warning("Query %s failed to start: %s", run_id, e)
            yield ErrorEvent(content=f"Failed to start {argv[0]!r}: {e}")
            yield DoneEvent(session_id=token)
            return

        logger.info(
            "Query %s started: pid=%d resume=%s", run_id, process.pid, bool(token)
        )
        stderr_task = asyncio.create_task(_read_all(process.stderr))
        parser = RecordStreamParser()
        finished = False

        try:
            assert process.stdout is not None
            while True:
                chunk = await process.stdout.read(_READ_SIZE)
                records = parser.feed(chunk) if chunk else parser.flush()
                for record in records:
                    new_token = extract_resume_token(record)
                    if new_token:
                        token = new_token
                    text = extract_text_delta(record)
                    if text:
                        yield TextEvent(content=text)
                if not chunk:
                    break

            exit_code = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            finished = True
        finally:
            if not finished:
                # Consumer went away (or we failed mid-stream): stop the child.
                logger.info("Query %s cancelled, killing pid %d", run_id, process.pid)
                _kill_group(process)
                stderr_task.cancel()

        logger.info(
            "Query %s exited (code=%s, dropped_records=%d)",
            run_id,
            exit_code,
            parser.dropped,
        )
        if exit_code != 0 and stderr:
            yield ErrorEvent(content=stderr)
        yield DoneEvent(session_id=token)
