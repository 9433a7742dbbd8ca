"""Centralised settings for relaybot, loaded from env / .env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_AGENT_ID = "71f6f657-6800-0892-875f-f26e8c213756"


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RELAYBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- general ---
    app_name: str = "relaybot"
    debug: bool = False
    enable_logging: bool = True

    # --- messaging client (required) ---
    wallet_key: str
    db_encryption_key: str
    xmtp_env: Literal["local", "dev", "production"] = "dev"
    client_factory: str = ""  # "package.module:callable"

    # --- backend agent API ---
    agent_api_url: str
    default_agent_id: str = DEFAULT_AGENT_ID
    service_url: str = "http://localhost:3000"
    backend_timeout_seconds: float = 120.0
    require_backend_at_boot: bool = True  # false: start even if /health fails
    chain_id: int = 8453  # Base mainnet

    # --- group policy ---
    agent_mentions: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["@jessexbt", "@jessexbtai.base.eth"]
    )
    mention_filter_agent_id: str = DEFAULT_AGENT_ID
    enable_reactions: bool = False
    reaction_emoji: str = "👀"

    # --- vision ---
    vision_api_key: str = ""
    vision_model: str = "gemini/gemini-2.0-flash-exp"

    # --- HTTP ---
    http_host: str = "0.0.0.0"
    http_port: int = 3000

    # --- file-system paths ---
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".relaybot")
    log_dir: Path = Field(default_factory=lambda: Path("logs"))
    database_url: str = ""  # empty -> sqlite under state_dir

    # --- core tuning ---
    batch_delay_seconds: float = 1.0
    mapping_snapshot: bool = True
    mapping_max_age_hours: float = 24.0
    mapping_cleanup_interval_seconds: int = 3600

    @field_validator("agent_mentions", mode="before")
    @classmethod
    def _split_mentions(cls, value: object) -> object:
        if isinstance(value, str):
            return [m.strip() for m in value.split(",") if m.strip()]
        return value

    @property
    def db_dir(self) -> Path:
        """Directory the messaging client keeps its local store in."""
        return self.state_dir / "db"

    @property
    def mapping_snapshot_path(self) -> Path | None:
        return self.state_dir / "mappings.json" if self.mapping_snapshot else None

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.state_dir / 'relaybot.db'}"

    @property
    def uses_mention_filter(self) -> bool:
        """Mention matching only applies to one specially configured agent."""
        return self.default_agent_id == self.mention_filter_agent_id


@lru_cache
def get_settings() -> RelaySettings:
    s = RelaySettings()
    s.state_dir.mkdir(parents=True, exist_ok=True)
    s.db_dir.mkdir(parents=True, exist_ok=True)
    return s
