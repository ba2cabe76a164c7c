"""Configuration schema using Pydantic."""

from typing import Any, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


class RendezvousConfig(BaseSettings):
    """Root configuration for the rendezvous server.

    Read from ``RENDEZVOUS_*`` environment variables; ``PORT`` is honoured
    too so the server drops into platforms that only set that.  Keyword
    arguments may use snake_case or camelCase names.
    """

    host: str = "0.0.0.0"
    port: int = Field(
        default=3030,
        ge=0,
        le=65535,
        validation_alias=AliasChoices("port", "RENDEZVOUS_PORT", "PORT"),
    )
    sweep_interval: float = Field(default=10.0, gt=0)       # Seconds between liveness sweeps
    liveness_timeout: float = Field(default=30.0, gt=0)     # Seconds without heartbeat before eviction
    max_message_size: int = Field(default=100_000_000, gt=0)  # Largest accepted frame (bytes)
    trust_forwarded_for: bool = True  # Take the peer address from X-Forwarded-For when present
    close_evicted: bool = True        # Close the socket of an evicted session
    log_level: LogLevel = "INFO"

    @model_validator(mode="before")
    @classmethod
    def _camel_keys(cls, data: Any) -> Any:
        # Aliases would replace the RENDEZVOUS_* env names.  Init kwargs come
        # after env values in *data*, so a camelCase kwarg still wins.
        if not isinstance(data, dict):
            return data
        names = {to_camel(name): name for name in cls.model_fields}
        folded: dict[str, Any] = {}
        for key, value in data.items():
            folded[names.get(key, key)] = value
        return folded

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    model_config = SettingsConfigDict(env_prefix="RENDEZVOUS_")
