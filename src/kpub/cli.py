from __future__ import annotations

import signal
from functools import partial
from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError, KpubSettings, load_settings, resolve_chats
from .lockfile import LockError, LockHandle, acquire_lock
from .logging import get_logger, setup_logging
from .storage import StorageConfigError, storage_key
from .storage.dropbox import load_tokens
from .supervisor import ChatSupervisor, SupervisorError

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to the config file (default: /data/config.toml).",
)
_DEBUG_OPTION = typer.Option(
    False,
    "--debug/--no-debug",
    help="Log at debug level with a human-readable renderer.",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load_config_or_exit(config_path: Path | None) -> tuple[KpubSettings, Path]:
    try:
        return load_settings(config_path)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def token_file_errors(settings: KpubSettings) -> list[str]:
    """Read every distinct token file once; return one message per bad file."""
    errors: list[str] = []
    seen: set[Path] = set()
    for chat in resolve_chats(settings).values():
        token_file = storage_key(chat.storage)
        if token_file in seen:
            continue
        seen.add(token_file)
        try:
            load_tokens(token_file)
        except StorageConfigError as exc:
            errors.append(str(exc))
    return errors


def _check_tokens_or_exit(settings: KpubSettings) -> None:
    errors = token_file_errors(settings)
    if not errors:
        return
    for message in errors:
        typer.echo(f"error: {message}", err=True)
    raise typer.Exit(code=1)


def _acquire_lock_or_exit(config_path: Path) -> LockHandle:
    try:
        return acquire_lock(config_path=config_path)
    except LockError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


async def _cancel_on_signal(scope: anyio.CancelScope) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("shutdown.signal", signal=signal.Signals(signum).name)
            scope.cancel()
            return


async def _serve(config_path: Path, settings: KpubSettings) -> None:
    supervisor = ChatSupervisor(config_path, settings)
    failure: SupervisorError | None = None
    async with anyio.create_task_group() as tg:
        tg.start_soon(_cancel_on_signal, tg.cancel_scope)
        try:
            await supervisor.run()
        except SupervisorError as exc:
            failure = exc
        tg.cancel_scope.cancel()
    if failure is not None:
        raise failure


def _run(config_path: Path | None, *, debug: bool) -> None:
    setup_logging(debug=debug)
    settings, cfg_path = _load_config_or_exit(config_path)
    _check_tokens_or_exit(settings)
    lock_handle = _acquire_lock_or_exit(cfg_path)
    logger.info(
        "startup",
        version=__version__,
        config=str(cfg_path),
        chats=[chat.handle for chat in settings.chats],
    )
    try:
        anyio.run(partial(_serve, cfg_path, settings), backend="asyncio")
    except SupervisorError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130) from None
    finally:
        lock_handle.release()
    logger.info("shutdown.complete")


def run(
    config: Path | None = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Watch the configured chats until interrupted."""
    _run(config, debug=debug)


def chats(config: Path | None = _CONFIG_OPTION) -> None:
    """List monitored chats with their resolved settings."""
    settings, _ = _load_config_or_exit(config)
    for chat in resolve_chats(settings).values():
        formats = ", ".join(sorted(chat.accepted_formats))
        dropbox = chat.storage.dropbox
        typer.echo(
            f"{chat.handle}\tformats: {formats}\t"
            f"token_file: {dropbox.token_file}\tupload_path: {dropbox.upload_path}"
        )


def check(config: Path | None = _CONFIG_OPTION) -> None:
    """Validate the config file and every Dropbox token file it references."""
    settings, cfg_path = _load_config_or_exit(config)
    _check_tokens_or_exit(settings)
    typer.echo(f"ok: {cfg_path} ({len(settings.chats)} chats)")


def app_main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Forward ebooks from Telegram chats to a Kobo through Dropbox."""
    if ctx.invoked_subcommand is None:
        _run(config, debug=debug)
        raise typer.Exit()


def create_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=False,
        invoke_without_command=True,
        help="Telegram to Kobo ebook pipeline.",
    )
    app.command(name="run")(run)
    app.command(name="chats")(chats)
    app.command(name="check")(check)
    app.callback()(app_main)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
