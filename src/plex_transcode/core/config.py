"""Client configuration utilities.

This module defines the settings used to talk to a media server, loaded from
environment variables. The output directory itself is created on demand by
``infra.fs.resolve_output_dir``.
"""
from __future__ import annotations

import uuid
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed client settings loaded from the environment.

    Notes
    -----
    - Environment variables are read with the ``PLEX_`` prefix (e.g., ``PLEX_API_URL``).
    - ``client_identifier`` scopes the server-side download queue: one queue exists per
      user and client identifier, so keep it stable across runs to find earlier items.
    - ``strict_schema`` turns unrecognized response fields into decode errors. It is
      meant for tests; production clients should leave it off.
    """

    model_config = SettingsConfigDict(env_prefix="PLEX_", env_file=".env", extra="ignore")

    api_url: str = Field(default="http://127.0.0.1:32400", description="Base URL of the media server")
    token: SecretStr | None = Field(default=None, description="Authentication token (X-Plex-Token)")
    client_identifier: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier of this client device",
    )
    product: str = Field(default="plex-transcode", description="Application name reported to the server")
    version: str = Field(default="0.1.0", description="Application version reported to the server")
    platform: str = Field(default="Generic", description="Client platform; Generic selects the server's neutral profile")
    platform_version: str = Field(default="unknown", description="Client platform version")
    device: str = Field(default="Generic", description="Device model")
    device_name: str = Field(default="plex-transcode", description="Human-readable device name")
    provides: str = Field(default="controller", description="Comma-separated client capabilities")

    request_timeout: float = Field(default=30.0, description="Default timeout for control requests, in seconds")
    strict_schema: bool = Field(default=False, description="Reject unknown fields in server responses")
    debug: bool = Field(default=False, description="Enable debug logging")

    output_dir: Path = Field(
        default=Path.home() / "Downloads" / "plex",
        description="Directory where the CLI stores downloaded renditions",
    )
    deciding_poll_interval: float = Field(
        default=0.2,
        description="Seconds between queue item refreshes while the server is deciding or waiting",
    )
    processing_poll_interval: float = Field(
        default=1.0,
        description="Seconds between queue item refreshes while the server is transcoding",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache client settings.

    Notes
    -----
    - Cached with ``functools.lru_cache(maxsize=1)`` so every caller shares one settings
      instance (and therefore one generated client identifier) per process.

    Returns
    -------
    Settings
        The client settings instance.
    """

    settings: Settings = Settings()
    return settings
