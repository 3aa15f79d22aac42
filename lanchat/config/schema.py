"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChatConfig(BaseSettings):
    """Root configuration for a lanchat node.

    Values come from (lowest to highest priority) the defaults below,
    ``LANCHAT_*`` environment variables, a JSON config file and
    command-line flags.
    """

    model_config = SettingsConfigDict(env_prefix="LANCHAT_", extra="ignore")

    nickname: str = ""                    # Prompted for at startup when empty

    # Networking
    host: str = "0.0.0.0"                 # Interface the message server binds on
    discovery_port: int = Field(default=8888, ge=0, le=65535)  # UDP announcements
    message_port: int = Field(default=1234, ge=0, le=65535)    # TCP private messages
    broadcast_address: str = "255.255.255.255"
    probe_host: str = "8.8.8.8"           # Route probe target for the outbound address
    probe_port: int = 80

    # Timing
    broadcast_interval: float = Field(default=10.0, gt=0)  # Seconds between announcements
    stale_after: float = Field(default=60.0, gt=0)         # Seconds before a peer counts as stale
    prune_after: float = Field(default=0.0, ge=0)          # Evict peers silent this long. 0 = never
    read_timeout: float = Field(default=0.0, ge=0)         # Inbound read limit. 0 = wait forever

    # Messages
    max_message_bytes: int = Field(default=1024, gt=0)     # Single read size on inbound connections

    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "WARNING"

    @field_validator("nickname")
    @classmethod
    def _nickname_is_utf8(cls, value: str) -> str:
        # Undecodable argv bytes arrive as lone surrogates, which cannot go on the wire.
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise ValueError("nickname must be valid UTF-8 text") from None
        return value
