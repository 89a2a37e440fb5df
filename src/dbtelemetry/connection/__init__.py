"""Connection target state and descriptor parsing."""

from .descriptor import DEFAULT_PORTS, ConnectionDescriptor, parse_connection_string
from .manager import ConnectionChangedEvent, ConnectionStateManager, Subscriber

__all__ = [
    "ConnectionDescriptor",
    "ConnectionChangedEvent",
    "ConnectionStateManager",
    "DEFAULT_PORTS",
    "Subscriber",
    "parse_connection_string",
]
