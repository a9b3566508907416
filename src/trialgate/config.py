"""Trialgate configuration system using pydantic-settings with YAML support."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    workers: int = 1


class StorageConfig(BaseModel):
    """Database location."""

    data_dir: str = "./data"
    database_url: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.database_url:
            db_path = Path(self.data_dir) / "trialgate.db"
            self.database_url = f"sqlite+aiosqlite:///{db_path}"


class SigningConfig(BaseModel):
    """Entitlement token signing keys.

    The private key is only needed by the server. Clients only carry the
    public key.
    """

    algorithm: str = "RS256"
    private_key: str = ""
    private_key_path: str = ""
    public_key: str = ""
    public_key_path: str = ""


class PolicyConfig(BaseModel):
    """Defaults for the stored policy record (used until one is saved)."""

    latest_version: str = "0.1.0"
    trial_days: int = 30
    token_expiry_days: int = 30
    server_message: str | None = None
    force_update_below_version: str | None = None


class LimitsConfig(BaseModel):
    """Rate limiting and device quota settings."""

    heartbeats_per_day: int = 10
    default_max_devices: int = 3
    stale_device_days: int = 90


class ClientConfig(BaseModel):
    """Desktop-side license resolution settings."""

    server_url: str = "http://localhost:8080"
    probe_url: str = "https://www.google.com/generate_204"
    probe_timeout: float = 3.0
    heartbeat_timeout: float = 15.0
    app_version: str = "0.1.0"
    credential_path: str = str(Path.home() / ".trialgate" / "credential.json")
    freshness_hours: int = 24
    mode_override: str | None = Field(
        default=None,
        description="Force a fixed license mode (development builds only)",
    )


class Settings(BaseSettings):
    """Root configuration for trialgate."""

    model_config = SettingsConfigDict(
        env_prefix="TRIALGATE_",
        env_nested_delimiter="__",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    debug: bool = False


def load_config(config_path: str | Path | None = None) -> Settings:
    """Load configuration from YAML file and environment variables.

    Environment variables override YAML values. YAML overrides defaults.
    """
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        candidates = [
            Path("trialgate.yaml"),
            Path("trialgate.yml"),
            Path("/etc/trialgate/trialgate.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    return Settings(**yaml_data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings singleton."""
    global _settings
    if _settings is None:
        _settings = load_config()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (for testing)."""
    global _settings
    _settings = None
