"""One-shot query sessions streamed over Server-Sent Events."""

from termhub.query.parser import RecordStreamParser
from termhub.query.runner import (
    DoneEvent,
    ErrorEvent,
    QueryEvent,
    QueryRunner,
    TextEvent,
    format_sse,
)

__all__ = [
    "DoneEvent",
    "ErrorEvent",
    "QueryEvent",
    "QueryRunner",
    "RecordStreamParser",
    "TextEvent",
    "format_sse",
]
