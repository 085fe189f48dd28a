"""Access engine: login state machine, target discovery and connections."""

from .connections import ConnectionManager
from .discovery import OIDCDiscoveryClient
from .engine import AccessEngine
from .protocols import (
    AuthCheck,
    AuthenticationClient,
    AuthMethodSource,
    ConnectionClient,
    ProxyHandle,
    RemoteClientLauncher,
    ScopeSource,
    TargetSource,
    TokenStore,
)
from .scopes import ScopeResolution, resolve_scope
from .session import AuthSessionMachine, PollPolicy
from .targets import TargetDiscoveryClient, TargetListing

__all__ = [
    "AccessEngine",
    "AuthSessionMachine",
    "PollPolicy",
    "OIDCDiscoveryClient",
    "TargetDiscoveryClient",
    "TargetListing",
    "ConnectionManager",
    "ScopeResolution",
    "resolve_scope",
    # Collaborator interfaces
    "AuthCheck",
    "AuthMethodSource",
    "AuthenticationClient",
    "ScopeSource",
    "TargetSource",
    "ConnectionClient",
    "ProxyHandle",
    "RemoteClientLauncher",
    "TokenStore",
]
