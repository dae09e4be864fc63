from __future__ import annotations

import enum
import math
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import anyio
import anyio.from_thread
import anyio.to_thread
from anyio.streams.memory import MemoryObjectReceiveStream
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .logging import get_logger

logger = get_logger(__name__)

DEBOUNCE_S = 0.5


class ConfigReload(enum.Enum):
    CHANGED = "changed"
    CREATED = "created"
    DELETED = "deleted"


@dataclass(frozen=True, slots=True)
class ConfigChange:
    path: Path
    event: ConfigReload


_SIMPLE_EVENTS = {
    EVENT_TYPE_CREATED: ConfigReload.CREATED,
    EVENT_TYPE_MODIFIED: ConfigReload.CHANGED,
    EVENT_TYPE_DELETED: ConfigReload.DELETED,
}


def classify_event(event: FileSystemEvent, name: str) -> ConfigReload | None:
    """Map a watchdog event in the config's directory onto a config change."""
    if event.is_directory:
        return None
    source = Path(os.fsdecode(event.src_path)).name
    if event.event_type == EVENT_TYPE_MOVED:
        # Editors save by renaming a temp file over the original.
        if Path(os.fsdecode(event.dest_path)).name == name:
            return ConfigReload.CREATED
        if source == name:
            return ConfigReload.DELETED
        return None
    if source != name:
        return None
    return _SIMPLE_EVENTS.get(event.event_type)


class _ConfigEventHandler(FileSystemEventHandler):
    def __init__(self, path: Path, emit: Callable[[ConfigChange], None]) -> None:
        self._path = path
        self._emit = emit

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = classify_event(event, self._path.name)
        if kind is None:
            return
        logger.debug("config.watch.event", path=str(self._path), event=kind.value)
        self._emit(ConfigChange(path=self._path, event=kind))


@asynccontextmanager
async def open_config_watch(
    path: Path,
) -> AsyncIterator[MemoryObjectReceiveStream[ConfigChange]]:
    """Watch the directory holding ``path`` and stream changes to that file.

    The observer runs in its own thread; events cross into the event loop
    through a blocking portal. The watch is live once the context is entered.
    """
    path = Path(path).absolute()
    send, receive = anyio.create_memory_object_stream[ConfigChange](math.inf)
    async with anyio.from_thread.BlockingPortal() as portal:
        handler = _ConfigEventHandler(
            path, lambda change: portal.call(send.send_nowait, change)
        )
        observer = Observer()
        observer.schedule(handler, str(path.parent), recursive=False)
        observer.start()
        logger.debug("config.watch.started", path=str(path))
        try:
            yield receive
        finally:
            observer.stop()
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(observer.join)
            send.close()
            receive.close()
            logger.debug("config.watch.stopped", path=str(path))


async def watch_config(path: Path) -> AsyncIterator[ConfigChange]:
    """Yield a change each time the file at ``path`` is written, created or removed."""
    async with open_config_watch(path) as changes:
        async for change in changes:
            yield change


async def _settle(
    receive: MemoryObjectReceiveStream[ConfigChange],
    first: ConfigChange,
    window_s: float,
) -> ConfigChange:
    latest = first
    while True:
        with anyio.move_on_after(window_s) as scope:
            try:
                latest = await receive.receive()
            except anyio.EndOfStream:
                return latest
        if scope.cancelled_caught:
            return latest


async def run_debounced(
    changes: AsyncIterator[ConfigChange],
    on_change: Callable[[ConfigChange], Awaitable[None]],
    *,
    window_s: float = DEBOUNCE_S,
) -> None:
    """Call ``on_change`` once per burst of changes.

    A burst ends after ``window_s`` without a new change. ``on_change`` is
    awaited inline, so two calls never overlap; changes that arrive while it
    runs start the next burst.
    """
    send, receive = anyio.create_memory_object_stream[ConfigChange](math.inf)

    async def pump() -> None:
        async with send:
            async for change in changes:
                send.send_nowait(change)

    async with anyio.create_task_group() as tg:
        tg.start_soon(pump)
        async with receive:
            async for change in receive:
                latest = await _settle(receive, change, window_s)
                await on_change(latest)
