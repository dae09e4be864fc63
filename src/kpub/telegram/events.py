"""Normalize raw Telethon updates into the small shapes the monitor needs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from telethon.tl import types

PeerKind = Literal["user", "chat", "channel"]

_PREFIXES: dict[PeerKind, str] = {"user": "u", "chat": "c", "channel": "ch"}


@dataclass(frozen=True, slots=True)
class PeerKey:
    kind: PeerKind
    id: int

    def __str__(self) -> str:
        return f"{_PREFIXES[self.kind]}{self.id}"


@dataclass(frozen=True, slots=True)
class IncomingDocument:
    file_name: str | None
    # Opaque Telethon document handed back to the session for download.
    media: Any = None


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    peer: PeerKey
    outgoing: bool
    document: IncomingDocument | None


def peer_key(peer: Any) -> PeerKey | None:
    match peer:
        case types.PeerUser(user_id=user_id):
            return PeerKey("user", user_id)
        case types.PeerChat(chat_id=chat_id):
            return PeerKey("chat", chat_id)
        case types.PeerChannel(channel_id=channel_id):
            return PeerKey("channel", channel_id)
        case _:
            return None


def document_file_name(document: Any) -> str | None:
    for attribute in getattr(document, "attributes", None) or ():
        if isinstance(attribute, types.DocumentAttributeFilename):
            return attribute.file_name or None
    return None


def _document_of(message: types.Message) -> IncomingDocument | None:
    match message.media:
        case types.MessageMediaDocument(document=types.Document() as document):
            return IncomingDocument(file_name=document_file_name(document), media=document)
        case _:
            return None


def _incoming(message: Any, allowed: tuple[PeerKind, ...]) -> IncomingMessage | None:
    if not isinstance(message, types.Message):
        return None
    key = peer_key(message.peer_id)
    if key is None or key.kind not in allowed:
        return None
    return IncomingMessage(
        peer=key,
        outgoing=bool(message.out),
        document=_document_of(message),
    )


def message_from_update(update: Any) -> IncomingMessage | None:
    """Return the normalized message for a new-message update, else ``None``.

    Users and basic groups arrive as ``UpdateNewMessage``; channels and
    supergroups arrive as ``UpdateNewChannelMessage``.
    """
    match update:
        case types.UpdateNewMessage(message=message):
            return _incoming(message, ("user", "chat"))
        case types.UpdateNewChannelMessage(message=message):
            return _incoming(message, ("channel",))
        case _:
            return None
