"""Domain types shared by the engine and its collaborators."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from gatehouse.core.exceptions import GatehouseError


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp as printed by the boundary CLI."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class AuthStatus(Enum):
    """Authentication session state."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    INITIATED = "initiated"
    POLLING = "polling"
    SCOPE_SELECTION = "scope_selection"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AuthStatus.COMPLETED, AuthStatus.FAILED, AuthStatus.TIMED_OUT, AuthStatus.CANCELLED)

    @property
    def in_flight(self) -> bool:
        return self in (
            AuthStatus.DISCOVERING,
            AuthStatus.INITIATED,
            AuthStatus.POLLING,
            AuthStatus.SCOPE_SELECTION,
        )


class ConnectionStatus(Enum):
    """Local proxy connection state."""

    ACTIVE = "active"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthMethod:
    id: str
    name: str = ""
    type: str = ""
    description: str = ""
    issuer: str | None = None

    @property
    def is_oidc(self) -> bool:
        return self.type.lower() == "oidc"


@dataclass(frozen=True)
class Scope:
    id: str
    name: str = ""
    type: str = ""
    description: str = ""


@dataclass(frozen=True)
class Target:
    """A remote resource reachable through the server.

    `type` is an open protocol tag (tcp, ssh, rdp, http, ...). `address` may be
    absent when the server assigns hosts dynamically.
    """

    id: str
    name: str
    type: str
    address: str | None = None
    description: str | None = None
    default_port: int | None = None
    scope_id: str | None = None

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match over name, description, id and address."""
        needle = query.strip().lower()
        if not needle:
            return True
        haystack = (self.name, self.description or "", self.id, self.address or "")
        return any(needle in part.lower() for part in haystack)


@dataclass(frozen=True)
class Token:
    """Credential bound to one server and scope.

    The value is excluded from repr and str so it cannot leak into logs or
    tracebacks by accident.
    """

    value: str = field(repr=False)
    server_id: str
    user_id: str = ""
    scope_id: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)

    def __str__(self) -> str:
        return f"Token(server_id={self.server_id!r}, user_id={self.user_id!r}, value=***)"

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and _utc_now() >= self.expires_at

    @property
    def remaining_seconds(self) -> float | None:
        """Seconds until expiry, or None for tokens without an expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - _utc_now()).total_seconds())

    def with_scope(self, scope_id: str | None) -> Token:
        return Token(
            value=self.value,
            server_id=self.server_id,
            user_id=self.user_id,
            scope_id=scope_id,
            expires_at=self.expires_at,
            created_at=self.created_at,
        )


@dataclass
class AuthSession:
    """One authentication attempt against one server."""

    server_id: str
    auth_method_id: str | None = None
    requested_scope_id: str | None = None
    status: AuthStatus = AuthStatus.IDLE
    session_id: str = field(default_factory=lambda: secrets.token_hex(8))
    started_at: datetime = field(default_factory=_utc_now)
    attempts: int = 0
    token: Token | None = field(default=None, repr=False)
    scopes: list[Scope] = field(default_factory=list)
    scope: Scope | None = None
    error: GatehouseError | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def in_flight(self) -> bool:
        return self.status.in_flight

    def discard_credentials(self) -> None:
        """Drop token and scope material from an aborted attempt."""
        self.token = None
        self.scopes = []
        self.scope = None


@dataclass(frozen=True)
class AuthStatusReport:
    """Snapshot of a session for status queries."""

    success: bool
    status: AuthStatus
    session_id: str | None = None
    token: Token | None = field(default=None, repr=False)
    scopes: tuple[Scope, ...] = ()
    scope: Scope | None = None
    attempts: int = 0
    error: GatehouseError | None = None

    @classmethod
    def from_session(cls, session: AuthSession | None) -> AuthStatusReport:
        if session is None:
            return cls(success=False, status=AuthStatus.IDLE)
        return cls(
            success=session.status is AuthStatus.COMPLETED,
            status=session.status,
            session_id=session.session_id,
            token=session.token,
            scopes=tuple(session.scopes),
            scope=session.scope,
            attempts=session.attempts,
            error=session.error,
        )

    @property
    def needs_scope(self) -> bool:
        return self.status is AuthStatus.SCOPE_SELECTION


@dataclass(frozen=True)
class SessionAuthorization:
    """Result of authorizing a session against one target."""

    authorization_token: str = field(repr=False)
    session_id: str
    target_id: str
    user_id: str = ""
    host_id: str | None = None
    scope_id: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    connection_limit: int = -1


@dataclass
class Connection:
    """A live local proxy endpoint tunneled to one target."""

    session_id: str
    target_id: str
    target_name: str
    protocol: str
    local_address: str
    local_port: int
    auth_session_id: str
    server_id: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    created_at: datetime = field(default_factory=_utc_now)
    expires_at: datetime | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.local_address}:{self.local_port}"

    @property
    def is_active(self) -> bool:
        return self.status is ConnectionStatus.ACTIVE


@dataclass(frozen=True)
class RemoteClient:
    """A remote desktop client found on this machine."""

    name: str
    executable_path: str
    client_type: str
    platform: str
    protocols: tuple[str, ...] = ("rdp",)
    version: str | None = None


@dataclass(frozen=True)
class ManualConnection:
    """Connection details for the user when no client could be launched."""

    protocol: str
    address: str
    port: int
    target_name: str
    reason: str

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class LaunchOutcome:
    """What happened after a connection was handed to the launcher."""

    launched: bool
    client: RemoteClient | None = None
    manual: ManualConnection | None = None


@dataclass(frozen=True)
class ConnectResult:
    connection: Connection
    launch: LaunchOutcome
