"""Local network control client for SmartGlass compatible consoles."""

from .channels import ChannelName, CommandError
from .client import ClientConfig, ConsoleClient
from .discovery import ConsoleInfo, discover_consoles
from .session import (
    AuthRejected,
    ConnectError,
    ConnectionLost,
    DiscoveryTimeout,
    HandshakeFailed,
    HandshakeTimeout,
    Session,
    SessionClosed,
    SessionConfig,
    SessionState,
)
from .state import DeviceState, MediaState, StateTracker

__all__ = [
    "AuthRejected",
    "ChannelName",
    "ClientConfig",
    "CommandError",
    "ConnectError",
    "ConnectionLost",
    "ConsoleClient",
    "ConsoleInfo",
    "DeviceState",
    "DiscoveryTimeout",
    "HandshakeFailed",
    "HandshakeTimeout",
    "MediaState",
    "Session",
    "SessionClosed",
    "SessionConfig",
    "SessionState",
    "StateTracker",
    "discover_consoles",
]
