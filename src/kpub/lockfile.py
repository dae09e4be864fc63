"""Single-instance guard: one running kpub per config file.

Two processes sharing a Telegram session file and a Dropbox token file would
race on both, so ``kpub run`` takes an exclusive lock beside the config.
"""

from __future__ import annotations

import os
import socket
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

import msgspec

from .logging import get_logger

logger = get_logger(__name__)

LockState = Literal["running", "stale", "unknown"]


class LockInfo(msgspec.Struct, kw_only=True):
    instance_id: str | None = None
    pid: int | None = None
    hostname: str | None = None
    started_at: str | None = None
    config_path: str | None = None
    argv: list[str] = msgspec.field(default_factory=list)


class LockError(RuntimeError):
    def __init__(self, *, path: Path, state: str, existing: LockInfo | None = None):
        self.path = path
        self.state = state
        self.existing = existing
        super().__init__(_format_lock_message(path, state))


@dataclass
class LockHandle:
    path: Path
    instance_id: str
    released: bool = field(default=False, init=False)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        existing = read_lock_info(self.path)
        if existing is not None and existing.instance_id != self.instance_id:
            logger.warning("lock.release.foreign", path=str(self.path))
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("lock.release.failed", path=str(self.path), error=str(exc))

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def lock_path_for_config(config_path: Path) -> Path:
    return config_path.with_suffix(".lock")


def acquire_lock(*, config_path: Path) -> LockHandle:
    """Create the lock file, replacing it only if its owner is gone."""
    cfg_path = config_path.expanduser().resolve()
    lock_path = lock_path_for_config(cfg_path)
    info = LockInfo(
        instance_id=uuid.uuid4().hex,
        pid=os.getpid(),
        hostname=socket.gethostname(),
        started_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        config_path=str(cfg_path),
        argv=list(sys.argv),
    )
    payload = msgspec.json.format(msgspec.json.encode(info), indent=2) + b"\n"

    for _ in range(2):
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            existing = read_lock_info(lock_path)
            state = lock_state(existing)
            if state != "stale":
                raise LockError(path=lock_path, state=state, existing=existing) from None
            logger.warning(
                "lock.stale.replaced",
                path=str(lock_path),
                pid=existing.pid if existing else None,
            )
            lock_path.unlink(missing_ok=True)
            continue
        except OSError as exc:
            raise LockError(path=lock_path, state=str(exc)) from exc
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        return LockHandle(path=lock_path, instance_id=info.instance_id or "")

    raise LockError(path=lock_path, state="unknown")


def read_lock_info(path: Path) -> LockInfo | None:
    try:
        raw = path.read_bytes()
    except OSError:
        return None
    try:
        return msgspec.json.decode(raw, type=LockInfo)
    except msgspec.DecodeError:
        return None


def pid_running(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM and friends: the pid exists, we just cannot signal it.
        return True
    return True


def lock_state(existing: LockInfo | None) -> LockState:
    if existing is None or existing.pid is None:
        return "unknown"
    if existing.hostname and existing.hostname != socket.gethostname():
        return "unknown"
    return "running" if pid_running(existing.pid) else "stale"


def _format_lock_message(path: Path, state: str) -> str:
    if state == "running":
        header = "another kpub instance is already running with this config."
    elif state in {"stale", "unknown"}:
        header = "another kpub instance may already be running with this config."
    else:
        return f"failed to create lock {path}: {state}"
    return f"{header}\nif you are sure that's not the case, delete {path}"
