"""Client side: reconnect state machine and the terminal attach bridge."""

from termhub.client.reconnect import ConnectionState, ReconnectController

__all__ = ["ConnectionState", "ReconnectController"]
