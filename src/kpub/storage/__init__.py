from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..config import StorageSettings
from ..logging import get_logger

logger = get_logger(__name__)


class StorageError(RuntimeError):
    pass


class StorageConfigError(StorageError):
    pass


class UploadError(StorageError):
    pass


class UnauthorizedError(UploadError):
    pass


class TokenRefreshError(UploadError):
    pass


class Uploader(Protocol):
    async def upload(self, local_path: Path, remote_name: str) -> None: ...


class SharedUploader(Protocol):
    """Holds one account's credentials; shared by every chat using them."""

    async def upload(
        self, local_path: Path, remote_name: str, *, upload_path: str | None = None
    ) -> None: ...

    def configure(self, storage: StorageSettings) -> None: ...

    async def aclose(self) -> None: ...


UploaderFactory = Callable[[StorageSettings], SharedUploader]


def storage_key(storage: StorageSettings) -> Path:
    return Path(storage.dropbox.token_file).expanduser().resolve()


def build_uploader(storage: StorageSettings) -> SharedUploader:
    from .dropbox import DropboxUploader

    return DropboxUploader(storage.dropbox)


def _credentials(storage: StorageSettings) -> tuple[str, str]:
    return (storage.dropbox.app_key, storage.dropbox.app_secret)


@dataclass(frozen=True, slots=True)
class BoundUploader:
    """A shared uploader pinned to one chat's destination folder."""

    shared: SharedUploader
    upload_path: str

    async def upload(self, local_path: Path, remote_name: str) -> None:
        await self.shared.upload(
            local_path, remote_name, upload_path=self.upload_path
        )


class UploaderCache:
    """One shared uploader per credential file, bound per chat to its folder.

    Settings that can change without a new token file (app key and secret)
    are pushed into the existing uploader, so the latest config always wins.
    """

    def __init__(self, factory: UploaderFactory = build_uploader) -> None:
        self._factory = factory
        self._uploaders: dict[Path, SharedUploader] = {}
        self._credentials: dict[Path, tuple[str, str]] = {}

    def __len__(self) -> int:
        return len(self._uploaders)

    def get(self, storage: StorageSettings) -> BoundUploader:
        key = storage_key(storage)
        shared = self._uploaders.get(key)
        if shared is None:
            shared = self._factory(storage)
            self._uploaders[key] = shared
            logger.info("storage.uploader.created", token_file=str(key))
        elif self._credentials[key] != _credentials(storage):
            shared.configure(storage)
            logger.info("storage.uploader.reconfigured", token_file=str(key))
        self._credentials[key] = _credentials(storage)
        return BoundUploader(shared=shared, upload_path=storage.dropbox.upload_path)

    async def aclose(self) -> None:
        uploaders = list(self._uploaders.values())
        self._uploaders.clear()
        self._credentials.clear()
        for uploader in uploaders:
            await uploader.aclose()


__all__ = [
    "BoundUploader",
    "SharedUploader",
    "StorageConfigError",
    "StorageError",
    "TokenRefreshError",
    "UnauthorizedError",
    "UploadError",
    "Uploader",
    "UploaderCache",
    "UploaderFactory",
    "build_uploader",
    "storage_key",
]
