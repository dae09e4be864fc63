from __future__ import annotations

import enum
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import anyio
from anyio.abc import TaskGroup

from .config import PipelineSettings
from .converter import convert_to_kepub
from .logging import get_logger
from .storage import Uploader
from .telegram.auth import LoginPrompts, TerminalPrompts
from .telegram.events import IncomingDocument, IncomingMessage, PeerKey
from .telegram.session import ChatSession
from .utils.files import make_work_dir, remove_tree

logger = get_logger(__name__)

Converter = Callable[[Path, Path], Awaitable[Path]]

STATUS_PREFIX = "[kpub]"


class MonitorState(enum.Enum):
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


_ACCEPTING = frozenset({MonitorState.READY, MonitorState.LISTENING})


class MonitorError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class MonitoredChat:
    handle: str
    accepted_formats: frozenset[str]
    uploader: Uploader


@dataclass(frozen=True, slots=True)
class StageTimeouts:
    download_s: float | None = None
    convert_s: float | None = None
    upload_s: float | None = None

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> StageTimeouts:
        return cls(
            download_s=settings.download_timeout_s or None,
            convert_s=settings.convert_timeout_s or None,
            upload_s=settings.upload_timeout_s or None,
        )


def file_extension(file_name: str) -> str:
    return Path(file_name).suffix.lower()


def processing_text(file_name: str, handle: str) -> str:
    return f"{STATUS_PREFIX} Processing '{file_name}' from {handle}..."


def failed_text(file_name: str) -> str:
    return f"{STATUS_PREFIX} Failed to process '{file_name}'."


def done_text(remote_name: str) -> str:
    return f"{STATUS_PREFIX} Done! '{remote_name}' is ready on your Kobo."


class SessionMonitor:
    """Own one Telegram user session and run a pipeline per accepted document.

    Chats are registered by handle and stored by the peer key they resolve
    to. Every accepted document gets its own task in a shielded scope, so
    cancelling :meth:`run` stops intake and then waits for those tasks
    instead of interrupting them.
    """

    def __init__(
        self,
        session: ChatSession,
        *,
        download_dir: Path,
        converted_dir: Path,
        converter: Converter = convert_to_kepub,
        prompts: LoginPrompts | None = None,
        timeouts: StageTimeouts = StageTimeouts(),
    ) -> None:
        self._session = session
        self._download_dir = Path(download_dir)
        self._converted_dir = Path(converted_dir)
        self._converter = converter
        self._prompts = prompts or TerminalPrompts()
        self._timeouts = timeouts
        # Held only around dict access, never across an await.
        self._registry_lock = threading.Lock()
        self._registry: dict[PeerKey, MonitoredChat] = {}
        self._state = MonitorState.DISCONNECTED
        self._files: TaskGroup | None = None
        self._inflight = 0
        self._was_ready = False

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def inflight(self) -> int:
        return self._inflight

    @property
    def was_ready(self) -> bool:
        return self._was_ready

    def entries(self) -> dict[PeerKey, MonitoredChat]:
        with self._registry_lock:
            return dict(self._registry)

    def handles(self) -> set[str]:
        with self._registry_lock:
            return {chat.handle for chat in self._registry.values()}

    async def run(self, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        """Connect, authenticate if needed, then listen until cancelled."""
        try:
            await self._session.connect()
            if not await self._session.is_authorized():
                self._state = MonitorState.AUTHENTICATING
                logger.info("monitor.auth.required")
                await self._session.authenticate(self._prompts)
                logger.info("monitor.auth.ok")

            async with anyio.create_task_group() as files:
                self._files = files
                self._state = MonitorState.READY
                logger.info("monitor.ready")
                self._was_ready = True
                task_status.started()

                self._session.subscribe(self.handle_message)
                self._state = MonitorState.LISTENING
                try:
                    await self._session.wait_disconnected()
                    logger.warning("monitor.disconnected")
                finally:
                    self._stop_intake()
            logger.info("monitor.drained")
        finally:
            self._files = None
            with anyio.CancelScope(shield=True):
                await self._session.disconnect()
            self._state = MonitorState.STOPPED
            logger.info("monitor.stopped")

    def _stop_intake(self) -> None:
        with self._registry_lock:
            self._state = MonitorState.DRAINING
        self._session.unsubscribe()
        logger.info("monitor.draining", inflight=self._inflight)

    async def register_chat(
        self,
        handle: str,
        accepted_formats: Iterable[str],
        uploader: Uploader,
    ) -> PeerKey:
        if self._state not in _ACCEPTING:
            raise MonitorError(f"cannot add {handle}: monitor is {self._state.value}")
        key = await self._session.resolve_handle(handle)
        entry = MonitoredChat(
            handle=handle,
            accepted_formats=frozenset(accepted_formats),
            uploader=uploader,
        )
        with self._registry_lock:
            if self._state not in _ACCEPTING:
                raise MonitorError(
                    f"cannot add {handle}: monitor is {self._state.value}"
                )
            stale = [
                existing
                for existing, chat in self._registry.items()
                if chat.handle == handle and existing != key
            ]
            for existing in stale:
                del self._registry[existing]
            self._registry[key] = entry
        logger.info("monitor.chat.added", handle=handle, key=str(key))
        return key

    def unregister_chat(self, handle: str) -> bool:
        with self._registry_lock:
            for key, chat in self._registry.items():
                if chat.handle == handle:
                    del self._registry[key]
                    break
            else:
                return False
        logger.info("monitor.chat.removed", handle=handle, key=str(key))
        return True

    def handle_message(self, message: IncomingMessage) -> None:
        """Route one inbound message; never suspends."""
        if message.outgoing:
            return
        with self._registry_lock:
            if self._state is not MonitorState.LISTENING or self._files is None:
                return
            chat = self._registry.get(message.peer)
            files = self._files
        if chat is None or message.document is None:
            return

        file_name = message.document.file_name
        if not file_name:
            logger.warning("monitor.file.no_name", chat=chat.handle)
            return
        extension = file_extension(file_name)
        if extension not in chat.accepted_formats:
            logger.info(
                "monitor.file.rejected",
                chat=chat.handle,
                file=file_name,
                extension=extension,
            )
            return

        self._inflight += 1
        files.start_soon(
            self._process_file, message.document, file_name, chat, name=file_name
        )

    async def _process_file(
        self, document: IncomingDocument, file_name: str, chat: MonitoredChat
    ) -> None:
        with anyio.CancelScope(shield=True):
            try:
                await self._pipeline(document, file_name, chat)
            finally:
                self._inflight -= 1

    async def _pipeline(
        self, document: IncomingDocument, file_name: str, chat: MonitoredChat
    ) -> None:
        log = logger.bind(chat=chat.handle, file=file_name)
        log.info("monitor.file.received")
        # Per-file directories: two chats may send the same file name at once.
        download_dir: Path | None = None
        converted_dir: Path | None = None
        try:
            try:
                download_dir = make_work_dir(self._download_dir)
                converted_dir = make_work_dir(self._converted_dir)
            except OSError as exc:
                log.error("monitor.pipeline.dirs_failed", error=str(exc))
                await self._notify(failed_text(file_name))
                return

            download_path = download_dir / Path(file_name).name
            await self._notify(processing_text(file_name, chat.handle))

            log.info("monitor.download.started")
            try:
                with anyio.fail_after(self._timeouts.download_s):
                    await self._session.download_document(document, download_path)
            except Exception as exc:
                log.error(
                    "monitor.download.failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                await self._notify(failed_text(file_name))
                return

            log.info("monitor.convert.started")
            try:
                with anyio.fail_after(self._timeouts.convert_s):
                    converted_path = await self._converter(
                        download_path, converted_dir
                    )
            except Exception as exc:
                log.error(
                    "monitor.convert.failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                await self._notify(failed_text(file_name))
                return

            remote_name = converted_path.name
            log.info("monitor.upload.started", remote_name=remote_name)
            try:
                with anyio.fail_after(self._timeouts.upload_s):
                    await chat.uploader.upload(converted_path, remote_name)
            except Exception as exc:
                log.error(
                    "monitor.upload.failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                await self._notify(failed_text(file_name))
                return

            log.info("monitor.pipeline.ok", remote_name=remote_name)
            await self._notify(done_text(remote_name))
        finally:
            _cleanup(download_dir, converted_dir)

    async def _notify(self, text: str) -> None:
        try:
            await self._session.send_to_self(text)
        except Exception as exc:
            logger.warning(
                "monitor.notify.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )


def _cleanup(*paths: Path | None) -> None:
    for path in paths:
        try:
            if remove_tree(path):
                logger.debug("monitor.cleanup.removed", path=str(path))
        except OSError as exc:
            logger.warning("monitor.cleanup.failed", path=str(path), error=str(exc))
