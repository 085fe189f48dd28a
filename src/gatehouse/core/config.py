"""Configuration types with environment variable support.

Engine settings can be configured via environment variables with the
GATEHOUSE_ prefix. Example: GATEHOUSE_POLL_MAX_ATTEMPTS=60 doubles the
login polling budget.

The server list lives in its own YAML, TOML or JSON file:

    servers:
      - id: prod
        name: Production
        url: https://boundary.example.com
        oidc:
          provider_hints: {name: Okta, type: okta}
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gatehouse.core.exceptions import ConfigError


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML, TOML or JSON file.

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        elif path.suffix == ".json":
            return json.loads(content) if content.strip() else {}
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e


class ProviderHints(BaseModel):
    """Display hints for the identity provider behind a server."""

    model_config = ConfigDict(frozen=True)

    name: str = "OIDC"
    type: str = "oidc"
    logo_url: str | None = None


class OidcHints(BaseModel):
    """OIDC hints for one server. All optional; discovery fills the gaps."""

    model_config = ConfigDict(frozen=True)

    auto_discover: bool = True
    discovery_url: str | None = None
    issuer: str | None = None
    client_id: str | None = None
    scopes: tuple[str, ...] = ("openid", "email", "profile")
    provider_hints: ProviderHints = Field(default_factory=ProviderHints)


class ServerDescriptor(BaseModel):
    """One configured remote-access server. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    url: str
    description: str = ""
    enabled: bool = True
    oidc: OidcHints = Field(default_factory=OidcHints)
    cli_path: str | None = Field(
        default=None,
        description="Per-server override of the boundary CLI executable.",
    )

    @field_validator("id")
    @classmethod
    def _id_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Server ID cannot be empty")
        return value

    @field_validator("url")
    @classmethod
    def _url_is_http(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid server URL: {value!r}")
        return value


class GatehouseSettings(BaseSettings):
    """Engine settings.

    All settings can be overridden via environment variables:
    - GATEHOUSE_BOUNDARY_CLI_PATH: boundary executable
    - GATEHOUSE_POLL_INTERVAL: seconds between login status checks
    - GATEHOUSE_POLL_MAX_ATTEMPTS: login status checks before timing out
    - GATEHOUSE_TOKEN_STORE: keyring or memory
    - etc.
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    boundary_cli_path: str = Field(
        default="boundary",
        description="Path or name of the boundary CLI executable.",
    )
    command_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for short boundary CLI commands.",
    )
    poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between login status checks.",
    )
    poll_max_attempts: int = Field(
        default=30,
        ge=1,
        description="Login status checks before the login times out.",
    )
    connect_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Seconds to wait for the local proxy to report its address.",
    )
    terminate_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for a proxy process to exit before killing it.",
    )
    health_interval: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between liveness checks of open proxies.",
    )
    auto_launch: bool = Field(
        default=True,
        description="Launch a remote desktop client after connecting to an RDP target.",
    )
    preferred_client: str | None = Field(
        default=None,
        description="Name of the remote desktop client to prefer over the detected default.",
    )
    fullscreen: bool = Field(
        default=False,
        description="Start remote desktop clients fullscreen.",
    )
    resolution: str = Field(
        default="auto",
        description="Remote desktop resolution as WIDTHxHEIGHT, or 'auto'.",
    )
    token_store: Literal["keyring", "memory"] = Field(
        default="keyring",
        description="Where tokens are kept: the OS keyring, or process memory only.",
    )
    servers_file: str = Field(
        default="servers.yaml",
        description="Path to the server list file.",
    )
    log_level: str = Field(
        default="warning",
        description="Log level: debug, info, warning or error.",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON lines.",
    )

    @field_validator("resolution")
    @classmethod
    def _resolution_format(cls, value: str) -> str:
        if value == "auto":
            return value
        width, sep, height = value.partition("x")
        if not sep or not width.isdigit() or not height.isdigit():
            raise ValueError("resolution must be 'auto' or WIDTHxHEIGHT")
        return value

    def to_display_dict(self) -> dict[str, Any]:
        """Export current settings grouped for display."""
        return {
            "boundary": {
                "cli_path": self.boundary_cli_path,
                "command_timeout": self.command_timeout,
            },
            "auth": {
                "poll_interval": self.poll_interval,
                "poll_max_attempts": self.poll_max_attempts,
                "token_store": self.token_store,
            },
            "connection": {
                "connect_timeout": self.connect_timeout,
                "terminate_timeout": self.terminate_timeout,
                "health_interval": self.health_interval,
            },
            "rdp": {
                "auto_launch": self.auto_launch,
                "preferred_client": self.preferred_client,
                "fullscreen": self.fullscreen,
                "resolution": self.resolution,
            },
            "logging": {
                "level": self.log_level,
                "json": self.log_json,
            },
        }


def parse_servers(raw: dict[str, Any]) -> tuple[list[ServerDescriptor], list[ConfigError]]:
    """Validate the `servers` list of a loaded config dict.

    Invalid entries are returned as errors; valid ones still load.
    """
    entries = raw.get("servers", [])
    if not isinstance(entries, list):
        raise ConfigError("'servers' must be a list")

    servers: list[ServerDescriptor] = []
    errors: list[ConfigError] = []
    seen: set[str] = set()

    for index, entry in enumerate(entries):
        entry_id = entry.get("id") if isinstance(entry, dict) else None
        try:
            server = ServerDescriptor.model_validate(entry)
        except ValidationError as e:
            detail = "; ".join(err["msg"] for err in e.errors())
            errors.append(
                ConfigError(
                    f"Invalid server entry #{index}: {detail}",
                    server_id=entry_id or None,
                    cause=e,
                )
            )
            continue
        if server.id in seen:
            errors.append(ConfigError(f"Duplicate server id '{server.id}'", server_id=server.id))
            continue
        seen.add(server.id)
        servers.append(server)

    return servers, errors


_config: GatehouseSettings | None = None


def get_config() -> GatehouseSettings:
    """Get the cached settings instance.

    To reload settings (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = GatehouseSettings()
    return _config


def clear_config() -> None:
    """Clear the cached settings so the next get_config() re-reads the environment."""
    global _config
    _config = None
