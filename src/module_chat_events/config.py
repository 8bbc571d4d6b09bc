"""Runtime settings for turn processing and transport buffering."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX: str = "MODULE_CHAT_"


class ProtocolSettings(BaseSettings):
    """Tunable limits for the streaming turn protocol.

    Defaults are suitable for interactive use; each field can be overridden
    per deployment with a ``MODULE_CHAT_<FIELD>`` environment variable.
    Keyword arguments take precedence over the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    turn_timeout_seconds: float = Field(
        120.0,
        gt=0,
        description="Watchdog bound on a whole turn, after which the in-flight slot is released",
    )
    fragment_timeout_seconds: float = Field(
        30.0,
        gt=0,
        description="Longest wait for the next model output item",
    )
    transport_buffer_size: int = Field(
        256,
        ge=1,
        description="Frames buffered per subscriber before new frames are dropped",
    )
    error_log_max_entries: int = Field(
        100,
        ge=1,
        description="Retention limit of the in-memory error log",
    )
