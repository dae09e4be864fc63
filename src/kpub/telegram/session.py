from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from telethon import TelegramClient, errors, events, functions
from telethon.tl import types

from ..logging import get_logger
from .auth import AuthError, LoginPrompts
from .events import IncomingDocument, IncomingMessage, PeerKey, message_from_update, peer_key

logger = get_logger(__name__)

MessageCallback = Callable[[IncomingMessage], None]


class ResolutionError(RuntimeError):
    pass


class DownloadError(RuntimeError):
    pass


class ChatSession(Protocol):
    """The slice of a Telegram user session the monitor depends on."""

    async def connect(self) -> None: ...

    async def is_authorized(self) -> bool: ...

    async def authenticate(self, prompts: LoginPrompts) -> None: ...

    async def resolve_handle(self, handle: str) -> PeerKey: ...

    def subscribe(self, callback: MessageCallback) -> None: ...

    def unsubscribe(self) -> None: ...

    async def download_document(self, document: IncomingDocument, path: Path) -> None: ...

    async def send_to_self(self, text: str) -> None: ...

    async def wait_disconnected(self) -> None: ...

    async def disconnect(self) -> None: ...


class TelethonSession:
    def __init__(
        self,
        *,
        api_id: int,
        api_hash: str,
        session_path: str | Path,
        client_factory: Callable[..., Any] = TelegramClient,
    ) -> None:
        self._api_id = api_id
        self._api_hash = api_hash
        self._session_path = Path(session_path).expanduser()
        self._client_factory = client_factory
        self._client: Any = None
        self._callback: MessageCallback | None = None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise RuntimeError("telegram session is not connected")
        return self._client

    async def connect(self) -> None:
        self._session_path.parent.mkdir(parents=True, exist_ok=True)
        self._client = self._client_factory(
            str(self._session_path), self._api_id, self._api_hash
        )
        await self._client.connect()

    async def is_authorized(self) -> bool:
        return bool(await self.client.is_user_authorized())

    async def authenticate(self, prompts: LoginPrompts) -> None:
        try:
            await self.client.start(
                phone=prompts.phone,
                code_callback=prompts.code,
                password=prompts.password,
            )
        except AuthError:
            raise
        except (errors.RPCError, ValueError) as exc:
            raise AuthError(f"user auth failed: {exc}") from exc

    async def resolve_handle(self, handle: str) -> PeerKey:
        username = handle.removeprefix("@")
        try:
            resolved = await self.client(
                functions.contacts.ResolveUsernameRequest(username=username)
            )
        except (errors.RPCError, ValueError) as exc:
            raise ResolutionError(f"resolving handle {handle!r}: {exc}") from exc
        key = peer_key(resolved.peer)
        if key is None:
            raise ResolutionError(
                f"unexpected peer type for {handle!r}: {type(resolved.peer).__name__}"
            )
        return key

    def subscribe(self, callback: MessageCallback) -> None:
        self._callback = callback
        self.client.add_event_handler(
            self._on_new_message, events.Raw(types.UpdateNewMessage)
        )
        self.client.add_event_handler(
            self._on_new_channel_message, events.Raw(types.UpdateNewChannelMessage)
        )

    def unsubscribe(self) -> None:
        self._callback = None
        if self._client is None:
            return
        self._client.remove_event_handler(self._on_new_message)
        self._client.remove_event_handler(self._on_new_channel_message)

    async def _on_new_message(self, update: types.UpdateNewMessage) -> None:
        self._dispatch(update)

    async def _on_new_channel_message(
        self, update: types.UpdateNewChannelMessage
    ) -> None:
        self._dispatch(update)

    def _dispatch(self, update: Any) -> None:
        callback = self._callback
        if callback is None:
            return
        message = message_from_update(update)
        if message is not None:
            callback(message)

    async def download_document(self, document: IncomingDocument, path: Path) -> None:
        try:
            result = await self.client.download_media(document.media, file=str(path))
        except (errors.RPCError, OSError, ValueError) as exc:
            raise DownloadError(f"failed to download {path.name}: {exc}") from exc
        if result is None:
            raise DownloadError(f"nothing was downloaded for {path.name}")

    async def send_to_self(self, text: str) -> None:
        await self.client.send_message("me", text)

    async def wait_disconnected(self) -> None:
        await self.client.disconnected

    async def disconnect(self) -> None:
        if self._client is None:
            return
        await self._client.disconnect()
