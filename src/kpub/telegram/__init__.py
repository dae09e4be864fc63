from __future__ import annotations

from .auth import AuthError, LoginPrompts, TerminalPrompts
from .events import IncomingDocument, IncomingMessage, PeerKey, message_from_update, peer_key
from .session import (
    ChatSession,
    DownloadError,
    MessageCallback,
    ResolutionError,
    TelethonSession,
)

__all__ = [
    "AuthError",
    "ChatSession",
    "DownloadError",
    "IncomingDocument",
    "IncomingMessage",
    "LoginPrompts",
    "MessageCallback",
    "PeerKey",
    "ResolutionError",
    "TelethonSession",
    "TerminalPrompts",
    "message_from_update",
    "peer_key",
]
