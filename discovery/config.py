"""Application settings loaded from environment variables."""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Discovery configuration. All values come from environment variables."""

    # Anthropic
    anthropic_api_key: str = Field(default="")
    chat_model: str = Field(default="claude-sonnet-4-5-20250929")
    planner_model: str = Field(default="claude-haiku-4-5-20251001")
    max_tokens: int = Field(default=2048)

    # Database
    database_path: Path = Field(default=Path("data/discovery.db"))
    # Optional JSON corpus imported at startup
    corpus_path: Path | None = Field(default=None)

    # Timeouts (seconds)
    tool_timeout_seconds: float = Field(default=10.0)
    planner_timeout_seconds: float = Field(default=20.0)
    generation_timeout_seconds: float = Field(default=60.0)

    # Branching
    max_branch_depth: int = Field(default=64)

    # Streaming: buffered characters between checkpoints (0 = every chunk)
    stream_checkpoint_chars: int = Field(default=0)

    # Citations: "degrade" keeps the turn with zero citations, "fail" fails it
    citation_failure_mode: Literal["degrade", "fail"] = Field(default="degrade")

    # HTTP transport
    web_host: str = Field(default="127.0.0.1")
    web_port: int = Field(default=8080)

    # Logging
    log_level: str = Field(default="INFO")

    @field_validator("citation_failure_mode", mode="before")
    @classmethod
    def normalise_failure_mode(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def citations_fail_turn(self) -> bool:
        """Whether a citation failure should fail the whole turn."""
        return self.citation_failure_mode == "fail"


settings = Settings()
