from __future__ import annotations

import functools
import typing as t

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sr_council.core.constants import DEFAULT_COUNCIL_MODELS, DEFAULT_EXTRACTION_MODEL
from sr_council.core.schemas import COUNCIL_SIZE
from sr_council.core.types import LogLevel


class Settings(BaseSettings):
    """Application settings.

    These are loaded from environment variables prefixed with COUNCIL_ or council_,
    and from ``.env`` / ``.env.local``.

    Attributes:
        ollama_base_url (str): Local inference service URL.
        connect_timeout (float): Seconds to wait for a connection and for the
            connectivity check.
        request_timeout (float): Seconds to wait for one generation.
        council_models (list[str]): Screening panel, exactly three models. Set as a
            JSON list, e.g. ``COUNCIL_COUNCIL_MODELS='["a", "b", "c"]'``.
        extraction_model (str): Single model used for data extraction.
        screening_temperature (float): Sampling temperature of council votes.
        extraction_temperature (float): Sampling temperature of extraction.
        database_url (str): SQLAlchemy URL of the SQLite store.
        log_level (LogLevel): Minimum level of the stderr handler.
        log_file (str | None): Serialized JSON log file, None to disable.
        env: t.Literal["local", "test", "prototype"]
        debug (bool): Enable debug mode.
    """

    model_config: t.ClassVar[SettingsConfigDict] = {
        "env_prefix": "council_",
        "env_file": (
            ".env",
            ".env.local",  # takes priority over .env
        ),
        "extra": "ignore",
    }

    ollama_base_url: str = Field(default="http://localhost:11434")
    """Ollama API base URL."""

    connect_timeout: float = Field(default=5.0, gt=0)
    request_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Large models on CPU can take minutes per screening call.",
    )

    council_models: list[str] = Field(default_factory=lambda: list(DEFAULT_COUNCIL_MODELS))
    """Screening panel in declaration order. Votes are reported in this order."""

    extraction_model: str = Field(default=DEFAULT_EXTRACTION_MODEL)
    """The most capable installed model, used alone for extraction."""

    screening_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    extraction_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    database_url: str = Field(default="sqlite:///sr_council.db")

    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_file: str | None = Field(default="sr_council.log")
    log_to_db: bool = Field(default=True)
    """Persist log records to the ``log_records`` table."""

    debug: bool = Field(
        default=False,
        description="Enable debug mode in app and asyncio. NOTE: logs prompts and model output, do not use with confidential articles.",
    )

    env: t.Literal["local", "test", "prototype"] = Field(
        default="local",
        description="Environment to run in (local, test, prototype).",
    )
    """Read from COUNCIL_ENV."""

    @field_validator("council_models")
    @classmethod
    def _exactly_three(cls, value: list[str]) -> list[str]:
        if len(value) != COUNCIL_SIZE or not all(name.strip() for name in value):
            msg = f"council_models must name exactly {COUNCIL_SIZE} models, got {value!r}"
            raise ValueError(msg)
        return value


@functools.cache
def get_settings() -> Settings:
    return Settings()
