"""Capability interfaces injected into the engine.

The production implementation of every auth/target/connection protocol is
gatehouse.boundary.client.BoundaryClient; tests substitute doubles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from gatehouse.core.config import ServerDescriptor
from gatehouse.models import (
    AuthMethod,
    RemoteClient,
    Scope,
    SessionAuthorization,
    Target,
    Token,
)


@dataclass
class AuthCheck:
    """Outcome of one login status check.

    Exactly one of three shapes: still pending (both None), a token, or an
    error message from the identity provider.
    """

    token: Token | None = None
    error: str | None = None

    @property
    def pending(self) -> bool:
        return self.token is None and self.error is None


@runtime_checkable
class AuthMethodSource(Protocol):
    """Lists the authentication methods a server offers."""

    async def list_auth_methods(self, server: ServerDescriptor) -> list[AuthMethod]:
        ...


@runtime_checkable
class AuthenticationClient(Protocol):
    """Starts a browser-based login and reports its progress."""

    async def start_authentication(
        self,
        server: ServerDescriptor,
        auth_method_id: str,
        scope_id: str | None = None,
    ) -> Any:
        """Submit the login request and return an opaque pending handle."""
        ...

    async def check_authentication(self, pending: Any) -> AuthCheck:
        """Check the pending handle once.

        Raises:
            TransientError: For recoverable failures that should not abort polling.
        """
        ...

    async def release_authentication(self, pending: Any) -> None:
        """Release everything held by the pending handle. Must be idempotent."""
        ...


@runtime_checkable
class ScopeSource(Protocol):
    async def list_scopes(self, server: ServerDescriptor, token: Token) -> list[Scope]:
        ...


@runtime_checkable
class TargetSource(Protocol):
    async def list_targets(
        self,
        server: ServerDescriptor,
        token: Token,
        scope_id: str | None = None,
    ) -> list[Target]:
        ...


@runtime_checkable
class ProxyHandle(Protocol):
    """A running local proxy."""

    address: str
    port: int

    @property
    def running(self) -> bool:
        """False once the proxy process has exited."""
        ...

    async def close(self) -> None:
        """Stop the proxy. Must be safe to call more than once."""
        ...


@runtime_checkable
class ConnectionClient(Protocol):
    async def authorize_session(
        self,
        server: ServerDescriptor,
        token: Token,
        target_id: str,
        host_id: str | None = None,
    ) -> SessionAuthorization:
        ...

    async def connect(
        self,
        server: ServerDescriptor,
        authorization: SessionAuthorization,
        protocol: str,
    ) -> ProxyHandle:
        ...

    async def cancel_session(self, server: ServerDescriptor, token: Token, session_id: str) -> None:
        ...


@runtime_checkable
class RemoteClientLauncher(Protocol):
    """Detects and launches protocol-specific clients."""

    def supports(self, protocol: str) -> bool:
        ...

    async def detect(self) -> list[RemoteClient]:
        ...

    async def launch(
        self,
        client: RemoteClient,
        address: str,
        port: int,
        target_name: str,
    ) -> None:
        ...


@runtime_checkable
class TokenStore(Protocol):
    """Secure storage for tokens, keyed by server."""

    async def store(self, token: Token) -> None:
        ...

    async def retrieve(self, server_id: str) -> Token | None:
        ...

    async def clear(self, server_id: str) -> None:
        ...
