import asyncio
import logging
import os
from pathlib import Path
from typing import Annotated, Dict, List, Literal

from dotenv import set_key
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

OPENAI_SESSION_KEY = "OPENAI_SESSION"
OPENAI_SESSION_CHAT_KEY = "OPENAI_SESSION_CHAT"
ENV_FILE_PATH_VAR = "ENV_FILE_PATH"


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    telegram_token: str = ""
    telegram_id: Annotated[List[int], NoDecode] = []
    telegram_api_url: str = "https://api.telegram.org"
    telegram_poll_timeout: int = 30
    telegram_max_retries: int = 3
    telegram_request_timeout_seconds: float = 60.0

    # Seconds between live edits; 0 or negative edits on every fragment.
    edit_wait_seconds: float = 1.0

    webhook_url: str | None = None
    webhook_secret: str | None = None

    openai_session: str = ""
    # Chat the persisted token belongs to; unset means every allow-listed user.
    openai_session_chat: int | None = None
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    system_prompt: str = (
        "You are a helpful assistant chatting with a user on Telegram. "
        "Keep answers concise and use plain text."
    )

    redis_url: str | None = None
    session_ttl_seconds: int = 0

    env_file_path: Path = Path(".env")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    @field_validator("telegram_id", mode="before")
    @classmethod
    def _split_ids(cls, value: object) -> object:
        """Accept TELEGRAM_ID as a comma separated list."""
        if value is None:
            return []
        if isinstance(value, int):
            return [value]
        if isinstance(value, str):
            return [int(part) for part in value.replace(" ", "").split(",") if part]
        return value

    @field_validator("openai_session_chat", mode="before")
    @classmethod
    def _blank_chat(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def has_telegram_id(self, user_id: int | None) -> bool:
        """True when no allow-list is configured or user_id is on it."""
        if not self.telegram_id:
            return True
        return user_id in self.telegram_id

    def validate_required(self) -> None:
        """Raise ConfigError when mandatory values are missing; log the defaults in use."""
        if not self.telegram_token:
            raise ConfigError("TELEGRAM_TOKEN is not set")
        if not self.openai_api_key:
            raise ConfigError("OPENAI_API_KEY is not set")
        if not self.telegram_id:
            logger.warning("TELEGRAM_ID is not set, all users will be able to use the bot")
        if self.edit_wait_seconds <= 0:
            logger.info("EDIT_WAIT_SECONDS is %s, live edits are not throttled", self.edit_wait_seconds)
        if not self.openai_session:
            logger.info("OPENAI_SESSION not set, conversations start fresh")


_SETTINGS: Settings | None = None


def load_settings(env_file: Path | str | None = None) -> Settings:
    """Build settings from the environment and the config file.

    The file is env_file, else $ENV_FILE_PATH, else .env. The same path is
    kept as env_file_path so values written back are read on the next start.
    """
    path = Path(env_file or os.environ.get(ENV_FILE_PATH_VAR) or ".env")
    return Settings(_env_file=path, env_file_path=path)


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = load_settings()
    return _SETTINGS


class EnvConfigWriter:
    """Writes keys back to the .env file so they survive a restart.

    Read-modify-write of the file happens under one lock; concurrent writers
    wait for each other instead of interleaving.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, values: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.touch(exist_ok=True)
        for key, value in values.items():
            set_key(str(self._path), key, value)

    async def persist(self, key: str, value: str) -> None:
        """Write key=value into the config file."""
        await self.persist_values({key: value})

    async def persist_values(self, values: Dict[str, str]) -> None:
        """Write several keys in one locked pass."""
        async with self._lock:
            await asyncio.to_thread(self._write, values)
        logger.info("Persisted %s to %s", ", ".join(values), self._path)
