import os
from contextlib import aclosing
from pathlib import Path

import anyio
import pytest
from anyio.streams.memory import MemoryObjectReceiveStream
from watchdog.events import (
    DirModifiedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from kpub.config_watch import (
    ConfigChange,
    ConfigReload,
    classify_event,
    open_config_watch,
    run_debounced,
    watch_config,
)


async def _changes(path: Path, gaps: list[float]):
    for gap in gaps:
        await anyio.sleep(gap)
        yield ConfigChange(path=path, event=ConfigReload.CHANGED)


@pytest.mark.anyio
async def test_five_changes_in_100ms_reload_once(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    calls: list[ConfigChange] = []

    async def on_change(change: ConfigChange) -> None:
        calls.append(change)

    with anyio.fail_after(2):
        await run_debounced(
            _changes(path, [0, 0.02, 0.02, 0.02, 0.02]), on_change, window_s=0.5
        )

    assert len(calls) == 1
    assert calls[0].path == path


@pytest.mark.anyio
async def test_separate_bursts_reload_separately(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    calls: list[ConfigChange] = []

    async def on_change(change: ConfigChange) -> None:
        calls.append(change)

    with anyio.fail_after(2):
        await run_debounced(
            _changes(path, [0, 0.01, 0.3, 0.01]), on_change, window_s=0.1
        )

    assert len(calls) == 2


@pytest.mark.anyio
async def test_reloads_never_overlap(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    running = 0
    peak = 0

    async def on_change(change: ConfigChange) -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await anyio.sleep(0.1)
        running -= 1

    with anyio.fail_after(2):
        await run_debounced(
            _changes(path, [0, 0.05, 0.05, 0.05]), on_change, window_s=0.01
        )

    assert peak == 1


class TestClassifyEvent:
    def test_write_is_a_change(self) -> None:
        event = FileModifiedEvent("/data/config.toml")
        assert classify_event(event, "config.toml") is ConfigReload.CHANGED

    def test_create_and_delete(self) -> None:
        created = FileCreatedEvent("/data/config.toml")
        deleted = FileDeletedEvent("/data/config.toml")
        assert classify_event(created, "config.toml") is ConfigReload.CREATED
        assert classify_event(deleted, "config.toml") is ConfigReload.DELETED

    def test_rename_over_the_config(self) -> None:
        event = FileMovedEvent("/data/.config.toml.swp", "/data/config.toml")
        assert classify_event(event, "config.toml") is ConfigReload.CREATED

    def test_rename_away_from_the_config(self) -> None:
        event = FileMovedEvent("/data/config.toml", "/data/config.toml.bak")
        assert classify_event(event, "config.toml") is ConfigReload.DELETED

    def test_other_files_and_directories_are_ignored(self) -> None:
        assert classify_event(FileModifiedEvent("/data/notes.txt"), "config.toml") is None
        assert classify_event(DirModifiedEvent("/data"), "config.toml") is None
        assert classify_event(FileClosedEvent("/data/config.toml"), "config.toml") is None


async def _next_event(
    changes: MemoryObjectReceiveStream[ConfigChange], kind: ConfigReload
) -> ConfigChange:
    with anyio.fail_after(5):
        while True:
            change = await changes.receive()
            if change.event is kind:
                return change


@pytest.mark.anyio
async def test_watch_reports_rewrite_delete_and_create(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("watch_config = true\n", encoding="utf-8")

    async with open_config_watch(path) as changes:
        path.write_text("watch_config = false\n# edited\n", encoding="utf-8")
        changed = await _next_event(changes, ConfigReload.CHANGED)
        path.unlink()
        await _next_event(changes, ConfigReload.DELETED)
        path.write_text("watch_config = true\n", encoding="utf-8")
        await _next_event(changes, ConfigReload.CREATED)

    assert changed.path == path


@pytest.mark.anyio
async def test_watch_sees_editor_rename_and_skips_neighbours(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("watch_config = true\n", encoding="utf-8")

    async with open_config_watch(path) as changes:
        (tmp_path / "notes.txt").write_text("unrelated", encoding="utf-8")
        swap = tmp_path / ".config.toml.swp"
        swap.write_text("watch_config = false\n", encoding="utf-8")
        os.replace(swap, path)
        with anyio.fail_after(5):
            change = await changes.receive()

    assert change == ConfigChange(path=path, event=ConfigReload.CREATED)


@pytest.mark.anyio
async def test_watch_config_yields_changes(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("watch_config = true\n", encoding="utf-8")
    seen: list[ConfigChange] = []

    async def consume() -> None:
        async with aclosing(watch_config(path)) as changes:
            async for change in changes:
                seen.append(change)
                break

    async with anyio.create_task_group() as tg:
        tg.start_soon(consume)
        with anyio.fail_after(5):
            while not seen:
                path.write_text("watch_config = false\n", encoding="utf-8")
                await anyio.sleep(0.05)

    assert seen[0].path == path
