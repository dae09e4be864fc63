from __future__ import annotations

import functools
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

import anyio

from .config import ConfigError, KpubSettings, ResolvedChat, load_settings, resolve_chats
from .config_watch import DEBOUNCE_S, ConfigChange, ConfigReload, run_debounced, watch_config
from .converter import convert_to_kepub
from .logging import get_logger
from .monitor import MonitorError, SessionMonitor, StageTimeouts
from .storage import StorageConfigError, UploaderCache
from .telegram import ResolutionError, TelethonSession

logger = get_logger(__name__)

MonitorFactory = Callable[[KpubSettings], SessionMonitor]
Loader = Callable[[Path], tuple[KpubSettings, Path]]
Watcher = Callable[[Path], AsyncIterator[ConfigChange]]

# Failures that only cost one chat; everything else stops the supervisor.
CHAT_ERRORS = (ResolutionError, StorageConfigError, MonitorError, OSError)


class SupervisorError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ChatDiff:
    removed: tuple[str, ...] = ()
    added: tuple[ResolvedChat, ...] = ()
    changed: tuple[ResolvedChat, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.removed or self.added or self.changed)


def diff_chats(
    old: Mapping[str, ResolvedChat], new: Mapping[str, ResolvedChat]
) -> ChatDiff:
    """Plan the registry operations that turn ``old`` into ``new``."""
    return ChatDiff(
        removed=tuple(handle for handle in old if handle not in new),
        added=tuple(chat for handle, chat in new.items() if handle not in old),
        changed=tuple(
            chat
            for handle, chat in new.items()
            if handle in old and old[handle] != chat
        ),
    )


def build_monitor(settings: KpubSettings) -> SessionMonitor:
    session = TelethonSession(
        api_id=settings.telegram.api_id,
        api_hash=settings.telegram.api_hash.get_secret_value(),
        session_path=settings.telegram.session_path,
    )
    return SessionMonitor(
        session,
        download_dir=Path(settings.paths.download_dir),
        converted_dir=Path(settings.paths.converted_dir),
        converter=functools.partial(
            convert_to_kepub, command=tuple(settings.pipeline.converter)
        ),
        timeouts=StageTimeouts.from_settings(settings.pipeline),
    )


def _restart_only_sections(old: KpubSettings, new: KpubSettings) -> list[str]:
    return [
        name
        for name in ("telegram", "paths", "pipeline", "watch_config")
        if getattr(old, name) != getattr(new, name)
    ]


class ChatSupervisor:
    """Keep the monitor's chat registry in line with the config file."""

    def __init__(
        self,
        config_path: Path,
        settings: KpubSettings,
        *,
        monitor_factory: MonitorFactory = build_monitor,
        uploaders: UploaderCache | None = None,
        load: Loader = load_settings,
        watch: Watcher = watch_config,
        debounce_s: float = DEBOUNCE_S,
    ) -> None:
        self._config_path = config_path
        self._settings = settings
        self._chats = resolve_chats(settings)
        self._monitor_factory = monitor_factory
        self._uploaders = uploaders if uploaders is not None else UploaderCache()
        self._load = load
        self._watch = watch
        self._debounce_s = debounce_s
        self._monitor: SessionMonitor | None = None
        self._failure: SupervisorError | None = None

    @property
    def chats(self) -> dict[str, ResolvedChat]:
        return dict(self._chats)

    @property
    def monitor(self) -> SessionMonitor:
        if self._monitor is None:
            raise SupervisorError("session monitor is not running")
        return self._monitor

    async def run(self) -> None:
        """Run the monitor and reconcile chats until cancelled."""
        self._monitor = self._monitor_factory(self._settings)
        self._failure = None
        try:
            async with anyio.create_task_group() as tg:
                try:
                    await tg.start(self._run_monitor, self._monitor, tg.cancel_scope)
                except Exception as exc:
                    logger.error(
                        "supervisor.monitor.start_failed",
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )
                    self._failure = SupervisorError(
                        f"session monitor failed to start: {exc}"
                    )
                    self._failure.__cause__ = exc
                else:
                    await self._add_initial_chats()
                    if self._settings.watch_config:
                        logger.info(
                            "supervisor.watch.started", path=str(self._config_path)
                        )
                        await run_debounced(
                            self._watch(self._config_path),
                            self._on_config_change,
                            window_s=self._debounce_s,
                        )
                    else:
                        await anyio.sleep_forever()
        finally:
            with anyio.CancelScope(shield=True):
                await self._uploaders.aclose()
        if self._failure is not None:
            raise self._failure

    async def _run_monitor(
        self,
        monitor: SessionMonitor,
        scope: anyio.CancelScope,
        *,
        task_status=anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            await monitor.run(task_status=task_status)
        except Exception as exc:
            if not monitor.was_ready:
                raise
            logger.error(
                "supervisor.monitor.crashed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._failure = SupervisorError(f"session monitor crashed: {exc}")
            self._failure.__cause__ = exc
        else:
            logger.error("supervisor.monitor.exited")
            self._failure = SupervisorError("session monitor exited unexpectedly")
        scope.cancel()

    async def _add_initial_chats(self) -> None:
        for chat in self._chats.values():
            await self._add_logged(chat)
        logger.info("supervisor.chats.ready", count=len(self.monitor.handles()))

    async def add_chat(self, chat: ResolvedChat) -> None:
        uploader = self._uploaders.get(chat.storage)
        await self.monitor.register_chat(chat.handle, chat.accepted_formats, uploader)

    async def _add_logged(self, chat: ResolvedChat) -> bool:
        try:
            await self.add_chat(chat)
        except CHAT_ERRORS as exc:
            logger.error(
                "supervisor.chat.add_failed",
                handle=chat.handle,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return False
        return True

    async def _on_config_change(self, change: ConfigChange) -> None:
        if change.event is ConfigReload.DELETED:
            logger.warning("config.reload.skipped", path=str(change.path))
            return
        await self.reload()

    async def reload(self) -> ChatDiff | None:
        """Re-read the config file and apply the chat changes it holds.

        An unreadable or invalid file leaves every chat as it was. The new
        snapshot replaces the old one before any registry call, so a chat
        whose registration fails is retried on the next change that touches
        it, not on every reload.
        """
        logger.info("config.reload.starting", path=str(self._config_path))
        try:
            settings, _ = self._load(self._config_path)
        except ConfigError as exc:
            logger.error("config.reload.failed", error=str(exc))
            return None

        chats = resolve_chats(settings)
        diff = diff_chats(self._chats, chats)
        restart_only = _restart_only_sections(self._settings, settings)
        self._chats = chats
        self._settings = settings
        if restart_only:
            logger.warning("config.reload.restart_required", sections=restart_only)
        if diff.empty:
            logger.info("config.reload.unchanged")
            return diff

        logger.info(
            "config.reload.applying",
            removed=list(diff.removed),
            added=[chat.handle for chat in diff.added],
            changed=[chat.handle for chat in diff.changed],
        )
        monitor = self.monitor
        for handle in diff.removed:
            monitor.unregister_chat(handle)
        for chat in diff.changed:
            monitor.unregister_chat(chat.handle)
            await self._add_logged(chat)
        for chat in diff.added:
            await self._add_logged(chat)
        logger.info("config.reload.applied")
        return diff
