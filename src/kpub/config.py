from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

# Environment variable names for secrets
ENV_API_ID = "KPUB_API_ID"
ENV_API_HASH = "KPUB_API_HASH"

DEFAULT_CONFIG_PATH = Path("/data/config.toml")
DEFAULT_FORMATS = (".epub", ".mobi", ".azw3")


class ConfigError(RuntimeError):
    pass


class _Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TelegramSettings(_Settings):
    api_id: int = 0
    api_hash: SecretStr = SecretStr("")
    session_path: str = "/data/session"


class DropboxSettings(_Settings):
    model_config = ConfigDict(extra="forbid", frozen=True)

    app_key: str = ""
    app_secret: str = ""
    token_file: str = "/data/dropbox.json"
    upload_path: str = "/Apps/Rakuten Kobo/"


class StorageSettings(_Settings):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["dropbox"] = "dropbox"
    dropbox: DropboxSettings = Field(default_factory=DropboxSettings)


class DropboxOverride(_Settings):
    app_key: str | None = None
    app_secret: str | None = None
    token_file: str | None = None
    upload_path: str | None = None


class StorageOverride(_Settings):
    type: Literal["dropbox"] | None = None
    dropbox: DropboxOverride | None = None


class DefaultsSettings(_Settings):
    accepted_formats: list[str] = Field(default_factory=lambda: list(DEFAULT_FORMATS))
    storage: StorageSettings = Field(default_factory=StorageSettings)

    @field_validator("accepted_formats")
    @classmethod
    def _empty_means_default(cls, value: list[str]) -> list[str]:
        if not value:
            return list(DEFAULT_FORMATS)
        return value


class PathsSettings(_Settings):
    download_dir: str = "/data/downloads"
    converted_dir: str = "/data/converted"


class PipelineSettings(_Settings):
    converter: list[str] = Field(default_factory=lambda: ["ebook-convert"])
    download_timeout_s: float = Field(default=600, ge=0)
    convert_timeout_s: float = Field(default=900, ge=0)
    upload_timeout_s: float = Field(default=600, ge=0)

    @field_validator("converter")
    @classmethod
    def _converter_not_empty(cls, value: list[str]) -> list[str]:
        if not value or not all(part.strip() for part in value):
            raise ValueError("expected a non-empty command")
        return value


class ChatSettings(_Settings):
    handle: str
    accepted_formats: list[str] | None = None
    storage: StorageOverride | None = None

    @field_validator("handle")
    @classmethod
    def _handle_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("@") or len(value) < 2:
            raise ValueError("handle must start with @")
        return value


class KpubSettings(_Settings):
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    defaults: DefaultsSettings = Field(default_factory=DefaultsSettings)
    paths: PathsSettings = Field(default_factory=PathsSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    watch_config: bool = True
    chats: list[ChatSettings] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_required(self) -> KpubSettings:
        if self.telegram.api_id == 0:
            raise ValueError("telegram.api_id is required")
        if not self.telegram.api_hash.get_secret_value().strip():
            raise ValueError("telegram.api_hash is required")
        if not self.chats:
            raise ValueError("at least one chat must be configured")
        seen: set[str] = set()
        for chat in self.chats:
            if chat.handle in seen:
                raise ValueError(f"duplicate chat handle: {chat.handle!r}")
            seen.add(chat.handle)
        if self.defaults.storage.type == "dropbox":
            dropbox = self.defaults.storage.dropbox
            if not dropbox.app_key:
                raise ValueError("defaults.storage.dropbox.app_key is required")
            if not dropbox.app_secret:
                raise ValueError("defaults.storage.dropbox.app_secret is required")
        return self


@dataclass(frozen=True, slots=True)
class ResolvedChat:
    handle: str
    accepted_formats: frozenset[str]
    storage: StorageSettings


def read_config(cfg_path: Path) -> dict[str, Any]:
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Environment variables take precedence over the config file."""
    telegram = config.get("telegram")
    if telegram is None:
        telegram = {}
    elif not isinstance(telegram, dict):
        return config
    telegram = dict(telegram)

    env_api_id = os.environ.get(ENV_API_ID)
    if env_api_id and env_api_id.strip():
        try:
            telegram["api_id"] = int(env_api_id.strip())
        except ValueError:
            raise ConfigError(
                f"Invalid {ENV_API_ID} environment variable; expected an integer."
            ) from None
    env_api_hash = os.environ.get(ENV_API_HASH)
    if env_api_hash and env_api_hash.strip():
        telegram["api_hash"] = env_api_hash.strip()

    return {**config, "telegram": telegram}


def validate_settings(config: dict[str, Any], *, config_path: Path) -> KpubSettings:
    try:
        return KpubSettings.model_validate(_apply_env_overrides(config))
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc


def load_settings(path: str | Path | None = None) -> tuple[KpubSettings, Path]:
    cfg_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
    return validate_settings(read_config(cfg_path), config_path=cfg_path), cfg_path


def normalize_format(value: str) -> str:
    value = value.strip().lower()
    if value and not value.startswith("."):
        value = f".{value}"
    return value


def resolve_chat(defaults: DefaultsSettings, chat: ChatSettings) -> ResolvedChat:
    """Merge per-chat overrides onto the global defaults, field by field."""
    formats = chat.accepted_formats or defaults.accepted_formats
    accepted = frozenset(
        fmt for fmt in (normalize_format(value) for value in formats) if fmt
    )

    storage = defaults.storage
    override = chat.storage
    if override is not None:
        dropbox = storage.dropbox
        if override.dropbox is not None:
            fields = override.dropbox.model_dump(exclude_none=True)
            dropbox = dropbox.model_copy(
                update={key: value for key, value in fields.items() if value}
            )
        storage = StorageSettings(
            type=override.type or storage.type,
            dropbox=dropbox,
        )

    return ResolvedChat(handle=chat.handle, accepted_formats=accepted, storage=storage)


def resolve_chats(settings: KpubSettings) -> dict[str, ResolvedChat]:
    return {
        chat.handle: resolve_chat(settings.defaults, chat) for chat in settings.chats
    }
