"""Core."""

from .config import (
    GatehouseSettings,
    OidcHints,
    ProviderHints,
    ServerDescriptor,
    clear_config,
    get_config,
    load_config_from_file,
    parse_servers,
)
from .exceptions import (
    AuthError,
    AuthorizationError,
    AuthTimeoutError,
    CommandError,
    ConfigError,
    DiscoveryError,
    GatehouseError,
    ScopeSelectionRequired,
    TargetConnectionError,
    TargetDiscoveryError,
    TokenStoreError,
    TransientError,
    format_error_for_user,
    scrub_secrets,
)
from .logging import configure_logging, emit, redact_secrets

__all__ = [
    # Config
    "GatehouseSettings",
    "OidcHints",
    "ProviderHints",
    "ServerDescriptor",
    "clear_config",
    "get_config",
    "load_config_from_file",
    "parse_servers",
    # Errors
    "AuthError",
    "AuthorizationError",
    "AuthTimeoutError",
    "CommandError",
    "ConfigError",
    "DiscoveryError",
    "GatehouseError",
    "ScopeSelectionRequired",
    "TargetConnectionError",
    "TargetDiscoveryError",
    "TokenStoreError",
    "TransientError",
    "format_error_for_user",
    "scrub_secrets",
    # Logging
    "configure_logging",
    "emit",
    "redact_secrets",
]
