from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import anyio

from kpub.config import StorageSettings
from kpub.converter import ConversionError, kepub_output_path
from kpub.telegram import (
    IncomingDocument,
    IncomingMessage,
    LoginPrompts,
    MessageCallback,
    PeerKey,
    ResolutionError,
)

BOOKS = PeerKey("user", 101)
NEWS = PeerKey("channel", 202)


def document_message(
    peer: PeerKey,
    file_name: str | None,
    *,
    outgoing: bool = False,
    data: bytes = b"book-bytes",
) -> IncomingMessage:
    return IncomingMessage(
        peer=peer,
        outgoing=outgoing,
        document=IncomingDocument(file_name=file_name, media=data),
    )


async def wait_for(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.005)


class FakeSession:
    def __init__(
        self,
        peers: dict[str, PeerKey] | None = None,
        *,
        authorized: bool = True,
    ) -> None:
        self.peers = dict(peers or {})
        self.authorized = authorized
        self.auth_error: Exception | None = None
        self.download_error: Exception | None = None
        self.send_error: Exception | None = None
        self.calls: list[str] = []
        self.sent: list[str] = []
        self.downloads: list[Path] = []
        self.callback: MessageCallback | None = None
        self.disconnected = anyio.Event()

    async def connect(self) -> None:
        self.calls.append("connect")

    async def is_authorized(self) -> bool:
        return self.authorized

    async def authenticate(self, prompts: LoginPrompts) -> None:
        self.calls.append("authenticate")
        if self.auth_error is not None:
            raise self.auth_error
        self.authorized = True

    async def resolve_handle(self, handle: str) -> PeerKey:
        try:
            return self.peers[handle]
        except KeyError:
            raise ResolutionError(f"no such handle: {handle}") from None

    def subscribe(self, callback: MessageCallback) -> None:
        self.calls.append("subscribe")
        self.callback = callback

    def unsubscribe(self) -> None:
        self.calls.append("unsubscribe")
        self.callback = None

    async def download_document(self, document: IncomingDocument, path: Path) -> None:
        if self.download_error is not None:
            raise self.download_error
        path.write_bytes(document.media)
        self.downloads.append(path)

    async def send_to_self(self, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    async def wait_disconnected(self) -> None:
        await self.disconnected.wait()

    async def disconnect(self) -> None:
        self.calls.append("disconnect")

    def deliver(self, message: IncomingMessage) -> None:
        assert self.callback is not None, "session is not subscribed"
        self.callback(message)


class FakeUploader:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.uploads: list[tuple[str, bytes]] = []
        self.upload_paths: list[str | None] = []
        self.configured: list[StorageSettings] = []
        self.closed = False

    async def upload(
        self, local_path: Path, remote_name: str, *, upload_path: str | None = None
    ) -> None:
        if self.error is not None:
            raise self.error
        self.uploads.append((remote_name, local_path.read_bytes()))
        self.upload_paths.append(upload_path)

    def configure(self, storage: StorageSettings) -> None:
        self.configured.append(storage)

    async def aclose(self) -> None:
        self.closed = True


async def copy_converter(input_path: Path, converted_dir: Path) -> Path:
    output = kepub_output_path(input_path, converted_dir)
    output.write_bytes(input_path.read_bytes())
    return output


async def failing_converter(input_path: Path, converted_dir: Path) -> Path:
    raise ConversionError(f"ebook-convert failed with exit code 1 for {input_path.name}")


def gated_converter(gate: anyio.Event):
    async def convert(input_path: Path, converted_dir: Path) -> Path:
        await gate.wait()
        return await copy_converter(input_path, converted_dir)

    return convert


class FakeMonitor:
    """Stands in for SessionMonitor in supervisor tests."""

    def __init__(
        self,
        *,
        start_error: Exception | None = None,
        unknown: set[str] | None = None,
    ) -> None:
        self.start_error = start_error
        self.unknown = set(unknown or ())
        self.ops: list[tuple[str, str]] = []
        self.registered: dict[str, tuple[frozenset[str], object]] = {}
        self.was_ready = False
        self.exit = anyio.Event()

    async def run(self, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.was_ready = True
        task_status.started()
        await self.exit.wait()

    async def register_chat(self, handle, accepted_formats, uploader) -> PeerKey:
        if handle in self.unknown:
            raise ResolutionError(f"no such handle: {handle}")
        self.ops.append(("register", handle))
        self.registered[handle] = (frozenset(accepted_formats), uploader)
        return PeerKey("user", len(self.ops))

    def unregister_chat(self, handle: str) -> bool:
        self.ops.append(("unregister", handle))
        return self.registered.pop(handle, None) is not None

    def handles(self) -> set[str]:
        return set(self.registered)

