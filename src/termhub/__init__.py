"""termhub — shared web terminals backed by managed PTY sessions."""

__version__ = "0.1.0"
