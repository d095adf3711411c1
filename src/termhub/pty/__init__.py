"""PTY session broker — shared pseudo-terminal sessions.

Every persistent session runs one shell on its own PTY with process group
isolation, a bounded scrollback for late joiners, fan-out to any number of
attached viewers, and reclamation when the process dies or goes idle.
"""

from termhub.pty.buffer import ScrollbackBuffer
from termhub.pty.manager import SessionRegistry
from termhub.pty.process import PTYProcess, PTYStatus
from termhub.pty.reaper import IdleReaper
from termhub.pty.relay import ClientConnection, RawFrame, StructuredFrame, decode_client_frame
from termhub.pty.session import Session, SessionSummary

__all__ = [
    "ClientConnection",
    "IdleReaper",
    "PTYProcess",
    "PTYStatus",
    "RawFrame",
    "ScrollbackBuffer",
    "Session",
    "SessionRegistry",
    "SessionSummary",
    "StructuredFrame",
    "decode_client_frame",
]
