"""Incremental parser for record-per-line query output.

The query subprocess prints one JSON object per line. Lines can arrive
split across reads, so the parser keeps the trailing partial line and
prefixes it to the next chunk.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class RecordStreamParser:
    """Stateful newline-delimited JSON parser.

    Handles:
    - records split across chunks (and UTF-8 characters split across bytes)
    - blank lines and ``\\r\\n`` line endings
    - malformed or non-object records, which are dropped
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.dropped = 0

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        """Consume a chunk and return every record it completed, in order."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        data = self._buffer + text
        lines = data.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([rest])

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                self.dropped += 1
                logger.debug("Dropping malformed record: %.200s", line)
                continue
            if not isinstance(record, dict):
                self.dropped += 1
                continue
            records.append(record)
        return records

    @property
    def pending(self) -> str:
        """The partial line held back for the next chunk."""
        return self._buffer


def extract_resume_token(record: dict[str, Any]) -> str | None:
    """Return the conversation token carried by a record, if any."""
    token = record.get("session_id")
    if isinstance(token, str) and token:
        return token
    return None


def extract_text_delta(record: dict[str, Any]) -> str | None:
    """Return the incremental text carried by a record, if any.

    Recognized shapes:
        {"type": "stream_event", "event": {"type": "content_block_delta",
         "delta": {"type": "text_delta", "text": "..."}}}
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "..."}}
        {"type": "text_delta", "text": "..."}
        {"delta": "..."}
    """
    event = record
    if record.get("type") == "stream_event" and isinstance(record.get("event"), dict):
        event = record["event"]

    if event.get("type") == "content_block_delta":
        delta = event.get("delta")
        if isinstance(delta, dict) and delta.get("type") == "text_delta":
            text = delta.get("text")
            return text if isinstance(text, str) and text else None
        return None

    if event.get("type") == "text_delta":
        text = event.get("text")
        return text if isinstance(text, str) and text else None

    delta = record.get("delta")
    if isinstance(delta, str) and delta:
        return delta
    return None
