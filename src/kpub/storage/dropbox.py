from __future__ import annotations

import json
from pathlib import Path

import anyio
import httpx
import msgspec

from ..config import DropboxSettings, StorageSettings
from ..logging import get_logger
from ..utils.files import write_bytes_atomic
from . import StorageConfigError, TokenRefreshError, UnauthorizedError, UploadError

logger = get_logger(__name__)

UPLOAD_URL = "https://content.dropboxapi.com/2/files/upload"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"


class DropboxTokens(msgspec.Struct, forbid_unknown_fields=False):
    access_token: str
    refresh_token: str


class _RefreshResponse(msgspec.Struct, forbid_unknown_fields=False):
    access_token: str


def load_tokens(path: Path) -> DropboxTokens:
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        raise StorageConfigError(f"Missing dropbox token file {path}.") from None
    except OSError as exc:
        raise StorageConfigError(
            f"Failed to read dropbox token file {path}: {exc}"
        ) from exc
    try:
        tokens = msgspec.json.decode(raw, type=DropboxTokens)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        raise StorageConfigError(
            f"Failed to parse dropbox token file {path}: {exc}"
        ) from None
    if not tokens.access_token or not tokens.refresh_token:
        raise StorageConfigError(
            f"'access_token' or 'refresh_token' is missing from {path}."
        )
    return tokens


def write_tokens(path: Path, tokens: DropboxTokens) -> None:
    payload = msgspec.json.format(msgspec.json.encode(tokens), indent=2) + b"\n"
    write_bytes_atomic(path, payload)


def remote_path(upload_path: str, remote_name: str) -> str:
    root = upload_path.rstrip("/")
    return f"{root}/{remote_name}"


def _body_snippet(resp: httpx.Response, limit: int = 500) -> str:
    try:
        text = resp.text
    except UnicodeDecodeError:
        return "<binary>"
    return text[:limit]


class DropboxUploader:
    """Upload files to one Dropbox account, refreshing the access token on 401."""

    def __init__(
        self,
        settings: DropboxSettings,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 120,
        upload_url: str = UPLOAD_URL,
        token_url: str = TOKEN_URL,
    ) -> None:
        self._token_file = Path(settings.token_file).expanduser()
        self._tokens = load_tokens(self._token_file)
        self._app_key = settings.app_key
        self._app_secret = settings.app_secret
        self._upload_path = settings.upload_path
        self._upload_url = upload_url
        self._token_url = token_url
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None
        # Guards token reads/writes only; never held across a request.
        self._credentials_lock = anyio.Lock()
        self._refresh_lock = anyio.Lock()

    @property
    def token_file(self) -> Path:
        return self._token_file

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def access_token(self) -> str:
        async with self._credentials_lock:
            return self._tokens.access_token

    def configure(self, storage: StorageSettings) -> None:
        """Pick up new app credentials; the token file stays the same."""
        settings = storage.dropbox
        self._app_key = settings.app_key
        self._app_secret = settings.app_secret
        self._upload_path = settings.upload_path

    async def upload(
        self, local_path: Path, remote_name: str, *, upload_path: str | None = None
    ) -> None:
        target = remote_path(upload_path or self._upload_path, remote_name)
        try:
            data = await anyio.Path(local_path).read_bytes()
        except OSError as exc:
            raise UploadError(f"failed to read {local_path} for upload: {exc}") from exc

        token = await self.access_token()
        try:
            await self._send(data, remote_name, target, token)
            return
        except UnauthorizedError:
            logger.warning("dropbox.upload.unauthorized", file=remote_name)

        await self._refresh_after(token)
        logger.info("dropbox.upload.retrying", file=remote_name)
        await self._send(data, remote_name, target, await self.access_token())

    async def _refresh_after(self, stale_token: str) -> None:
        async with self._refresh_lock:
            if await self.access_token() != stale_token:
                logger.info("dropbox.refresh.skipped", reason="already refreshed")
                return
            await self.refresh()

    async def _send(
        self, data: bytes, remote_name: str, target: str, access_token: str
    ) -> None:
        api_arg = {"path": target, "mode": "add"}
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/octet-stream",
            "Dropbox-API-Arg": json.dumps(api_arg),
        }
        try:
            resp = await self._client.post(self._upload_url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(
                "dropbox.network_error",
                file=remote_name,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise UploadError(f"failed to execute upload request: {exc}") from exc

        if resp.is_success:
            logger.info("dropbox.upload.ok", file=remote_name, path=api_arg["path"])
            return

        body = _body_snippet(resp)
        if resp.status_code == 401:
            raise UnauthorizedError(f"dropbox returned 401: {body}")
        logger.error(
            "dropbox.http_error",
            file=remote_name,
            status=resp.status_code,
            body=body,
        )
        raise UploadError(f"dropbox API returned status {resp.status_code}: {body}")

    async def refresh(self) -> None:
        """Exchange the refresh token for a new access token and persist it."""
        logger.info("dropbox.refresh.starting", token_file=str(self._token_file))
        async with self._credentials_lock:
            refresh_token = self._tokens.refresh_token

        try:
            resp = await self._client.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(self._app_key, self._app_secret),
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"failed to execute refresh request: {exc}"
            ) from exc

        if resp.status_code != 200:
            raise TokenRefreshError(
                f"token refresh failed with status {resp.status_code}: "
                f"{_body_snippet(resp)}"
            )
        try:
            result = msgspec.json.decode(resp.content, type=_RefreshResponse)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            raise TokenRefreshError(f"failed to decode refresh response: {exc}") from exc
        if not result.access_token:
            raise TokenRefreshError("refresh response carried an empty access_token")

        async with self._credentials_lock:
            updated = DropboxTokens(
                access_token=result.access_token,
                refresh_token=self._tokens.refresh_token,
            )
            try:
                await anyio.to_thread.run_sync(
                    write_tokens, self._token_file, updated
                )
            except OSError as exc:
                raise TokenRefreshError(
                    f"failed to save refreshed token to {self._token_file}: {exc}"
                ) from exc
            self._tokens = updated

        logger.info("dropbox.refresh.ok", token_file=str(self._token_file))
