"""Authentication session state machine.

Drives one login from auth method discovery through browser-based OIDC
authentication, status polling and scope resolution:

    IDLE -> DISCOVERING -> INITIATED -> POLLING -> SCOPE_SELECTION -> COMPLETED
                                                +-> FAILED / TIMED_OUT / CANCELLED

At most one session is in flight per machine. Starting a new login cancels
the previous in-flight one, whatever its server: polling stops before the
next tick, the pending login is released and partial token material is
dropped. Completed sessions are kept per server and stay authoritative
until a newer login for the same server completes.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from gatehouse.core.config import ServerDescriptor
from gatehouse.core.exceptions import (
    AuthError,
    AuthTimeoutError,
    DiscoveryError,
    GatehouseError,
    ScopeSelectionRequired,
    TransientError,
)
from gatehouse.engine.discovery import OIDCDiscoveryClient
from gatehouse.engine.protocols import AuthenticationClient, ScopeSource
from gatehouse.engine.scopes import ScopeResolution, resolve_scope
from gatehouse.models import AuthSession, AuthStatus, AuthStatusReport, Scope, Token

logger = structlog.get_logger(component="session")

CompletionHook = Callable[[AuthSession, "AuthSession | None"], Awaitable[None]]


@dataclass(frozen=True)
class PollPolicy:
    """Login polling budget: `max_attempts` checks, `interval` seconds apart."""

    interval: float = 1.0
    max_attempts: int = 30

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError("poll interval must be positive")
        if self.max_attempts < 1:
            raise ValueError("poll max_attempts must be at least 1")

    @property
    def timeout_seconds(self) -> float:
        return self.interval * self.max_attempts


@dataclass
class _Flight:
    """Runtime state of an in-flight session."""

    session: AuthSession
    server: ServerDescriptor
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    pending: Any = None
    task: asyncio.Task | None = None
    released: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


class AuthSessionMachine:
    """Owns the in-flight login and the completed session of every server.

    Safe for concurrent status reads; state changes for one server are
    serialized by a per-server lock.
    """

    def __init__(
        self,
        discovery: OIDCDiscoveryClient,
        auth_client: AuthenticationClient,
        scope_source: ScopeSource,
        policy: PollPolicy | None = None,
        on_complete: CompletionHook | None = None,
    ) -> None:
        self._discovery = discovery
        self._auth = auth_client
        self._scopes = scope_source
        self.policy = policy or PollPolicy()
        self._on_complete = on_complete

        self._attempts: dict[str, AuthSession] = {}
        self._active: dict[str, AuthSession] = {}
        self._flights: dict[str, _Flight] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = self._locks[server_id] = asyncio.Lock()
        return lock

    # Queries

    def latest(self, server_id: str) -> AuthSession | None:
        """The most recent login attempt for a server, in any state."""
        return self._attempts.get(server_id)

    def completed(self, server_id: str) -> AuthSession | None:
        """The authoritative completed session for a server, if any."""
        return self._active.get(server_id)

    def completed_sessions(self) -> list[AuthSession]:
        return list(self._active.values())

    def in_flight(self) -> AuthSession | None:
        for flight in self._flights.values():
            return flight.session
        return None

    def report(self, server_id: str) -> AuthStatusReport:
        return AuthStatusReport.from_session(self._attempts.get(server_id))

    # Transitions

    async def start(
        self,
        server: ServerDescriptor,
        auth_method_id: str | None = None,
        scope_id: str | None = None,
    ) -> AuthSession:
        """Start a login and return once polling has begun.

        Without an explicit auth method the first OIDC method in discovery
        order is used.

        Raises:
            DiscoveryError: No OIDC method is available (session FAILED)
            AuthError: The login could not be submitted (session FAILED)
        """
        async with self._lock_for(server.id):
            await self._supersede_in_flight()

            session = AuthSession(
                server_id=server.id,
                auth_method_id=auth_method_id,
                requested_scope_id=scope_id,
            )
            flight = _Flight(session=session, server=server)
            self._attempts[server.id] = session
            self._flights[server.id] = flight

            if auth_method_id is None:
                self._transition(session, AuthStatus.DISCOVERING)
                try:
                    methods = await self._discovery.discover_auth_methods(server)
                except DiscoveryError as e:
                    if flight.cancelled:
                        return session
                    self._fail(flight, e)
                    raise
                if flight.cancelled:
                    return session
                session.auth_method_id = methods[0].id
                logger.info(
                    "Using auth method",
                    server_id=server.id,
                    auth_method_id=session.auth_method_id,
                    available=len(methods),
                )

            self._transition(session, AuthStatus.INITIATED)
            try:
                flight.pending = await self._auth.start_authentication(
                    server, session.auth_method_id, scope_id
                )
            except (GatehouseError, OSError) as e:
                if flight.cancelled:
                    return session
                error = AuthError(
                    f"Failed to start authentication: {e}",
                    server_id=server.id,
                    cause=e,
                )
                self._fail(flight, error)
                raise error from e

            if flight.cancelled:
                await self._release(flight)
                return session

            self._transition(session, AuthStatus.POLLING)
            flight.task = asyncio.create_task(
                self._poll(flight), name=f"auth-poll-{server.id}-{session.session_id}"
            )
            return session

    async def wait(self, server_id: str) -> AuthSession:
        """Wait until the current login stops polling.

        Returns the session in SCOPE_SELECTION or a terminal state.
        """
        flight = self._flights.get(server_id)
        if flight is not None and flight.task is not None:
            await flight.done.wait()
        session = self._attempts.get(server_id)
        if session is None:
            raise AuthError("No authentication started", server_id=server_id)
        return session

    async def select_scope(self, server_id: str, scope_id: str) -> ScopeResolution:
        """Finalize a login that is waiting for a scope choice.

        Selecting the same scope again on a completed session returns the
        same resolution; a different scope is rejected and the completed
        session is left unchanged.

        Raises:
            AuthError: No login awaits a scope, or the scope is unknown
        """
        async with self._lock_for(server_id):
            session = self._attempts.get(server_id)
            if session is None:
                raise AuthError("No authentication started", server_id=server_id)

            if session.status is AuthStatus.COMPLETED:
                current = session.scope.id if session.scope else None
                if current == scope_id and session.token is not None:
                    return ScopeResolution(token=session.token, scope=session.scope)
                raise AuthError(
                    f"Authentication already completed with scope '{current}'; "
                    "log in again to use a different scope",
                    server_id=server_id,
                )

            if session.status is not AuthStatus.SCOPE_SELECTION or session.token is None:
                raise AuthError(
                    f"Authentication is not waiting for a scope (status: {session.status.value})",
                    server_id=server_id,
                )

            resolution = resolve_scope(session.token, session.scopes, scope_id)
            flight = self._flights.get(server_id)
            await self._complete(session, resolution, flight)
            return resolution

    async def cancel(self, server_id: str) -> bool:
        """Cancel the in-flight login for a server. False if there was none."""
        async with self._lock_for(server_id):
            return await self._cancel_flight(server_id)

    async def discard(self, server_id: str) -> AuthSession | None:
        """Forget everything about a server (logout). Returns the completed session."""
        async with self._lock_for(server_id):
            await self._cancel_flight(server_id)
            session = self._active.pop(server_id, None)
            if session is not None:
                session.discard_credentials()
            return session

    async def expire(self, session: AuthSession) -> bool:
        """Drop a completed session whose token expired. False if already replaced."""
        async with self._lock_for(session.server_id):
            if self._active.get(session.server_id) is not session:
                return False
            del self._active[session.server_id]
            session.discard_credentials()
            session.error = AuthError("Token expired", server_id=session.server_id)
            logger.info("Session expired", server_id=session.server_id, session_id=session.session_id)
            return True

    async def restore(self, server: ServerDescriptor, token: Token) -> AuthSession:
        """Adopt a stored token as the completed session of its server.

        An existing completed session wins and is returned unchanged.
        """
        async with self._lock_for(server.id):
            current = self._active.get(server.id)
            if current is not None:
                return current
            session = AuthSession(
                server_id=server.id,
                requested_scope_id=token.scope_id,
                token=token,
                scope=Scope(id=token.scope_id) if token.scope_id else None,
                completed_at=datetime.now(UTC),
            )
            self._transition(session, AuthStatus.COMPLETED, scope_id=token.scope_id, restored=True)
            self._active[server.id] = session
            self._attempts.setdefault(server.id, session)
            return session

    async def close(self) -> None:
        """Cancel every in-flight login."""
        for server_id in list(self._flights):
            await self._cancel_flight(server_id)

    # Internals

    async def _poll(self, flight: _Flight) -> None:
        session, server = flight.session, flight.server
        try:
            for attempt in range(1, self.policy.max_attempts + 1):
                if flight.cancelled:
                    return
                session.attempts = attempt
                try:
                    check = await self._auth.check_authentication(flight.pending)
                except TransientError as e:
                    logger.warning(
                        "Transient error while checking authentication",
                        server_id=server.id,
                        attempt=attempt,
                        error=e.message,
                    )
                    check = None
                except (GatehouseError, OSError) as e:
                    if not flight.cancelled:
                        self._fail(
                            flight,
                            AuthError(
                                f"Authentication status check failed: {e}",
                                server_id=server.id,
                                cause=e,
                            ),
                        )
                    return

                if flight.cancelled:
                    # The check finished after cancellation; its result is stale.
                    return

                if check is not None and check.token is not None:
                    await self._on_token(flight, check.token)
                    return
                if check is not None and check.error is not None:
                    self._fail(flight, AuthError(check.error, server_id=server.id))
                    return

                logger.debug(
                    "Authentication pending",
                    server_id=server.id,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                )
                if await self._sleep_or_cancelled(flight):
                    return

            self._fail(
                flight,
                AuthTimeoutError(
                    f"Authentication timed out after {self.policy.max_attempts} attempts",
                    server_id=server.id,
                ),
                status=AuthStatus.TIMED_OUT,
            )
        finally:
            await self._release(flight)
            if not session.in_flight and self._flights.get(server.id) is flight:
                del self._flights[server.id]
            flight.done.set()

    async def _sleep_or_cancelled(self, flight: _Flight) -> bool:
        try:
            await asyncio.wait_for(flight.cancel.wait(), timeout=self.policy.interval)
        except TimeoutError:
            return False
        return True

    async def _on_token(self, flight: _Flight, token: Token) -> None:
        session, server = flight.session, flight.server
        session.token = token
        logger.info("Authentication succeeded", server_id=server.id, user_id=token.user_id)

        try:
            scopes = await self._scopes.list_scopes(server, token)
        except (GatehouseError, OSError) as e:
            logger.warning("Scope discovery failed, continuing without scope", server_id=server.id, error=str(e))
            scopes = []

        if flight.cancelled:
            session.discard_credentials()
            return

        session.scopes = list(scopes)
        try:
            resolution = resolve_scope(token, session.scopes, session.requested_scope_id)
        except ScopeSelectionRequired:
            self._transition(session, AuthStatus.SCOPE_SELECTION, scopes=len(session.scopes))
            return
        except AuthError as e:
            self._fail(flight, e)
            return
        await self._complete(session, resolution, flight)

    async def _complete(
        self,
        session: AuthSession,
        resolution: ScopeResolution,
        flight: _Flight | None,
    ) -> None:
        session.token = resolution.token
        session.scope = resolution.scope
        session.error = None
        session.completed_at = datetime.now(UTC)
        self._transition(session, AuthStatus.COMPLETED, scope_id=resolution.scope_id)

        if flight is not None and self._flights.get(session.server_id) is flight:
            del self._flights[session.server_id]
        previous = self._active.get(session.server_id)
        self._active[session.server_id] = session
        if previous is session:
            previous = None
        if previous is not None:
            previous.discard_credentials()

        if self._on_complete is not None:
            await self._on_complete(session, previous)

    async def _supersede_in_flight(self) -> None:
        for server_id in list(self._flights):
            flight = self._flights.get(server_id)
            if flight is not None:
                logger.info(
                    "Superseding in-flight authentication",
                    server_id=server_id,
                    session_id=flight.session.session_id,
                )
            await self._cancel_flight(server_id)

    async def _cancel_flight(self, server_id: str) -> bool:
        flight = self._flights.pop(server_id, None)
        if flight is None:
            return False

        flight.cancel.set()
        if flight.task is not None and not flight.task.done():
            flight.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await flight.task
        await self._release(flight)

        session = flight.session
        if session.in_flight:
            session.discard_credentials()
            self._transition(session, AuthStatus.CANCELLED)
        flight.done.set()
        return True

    async def _release(self, flight: _Flight) -> None:
        if flight.released or flight.pending is None:
            return
        flight.released = True
        try:
            await self._auth.release_authentication(flight.pending)
        except (GatehouseError, OSError) as e:
            logger.warning("Failed to release pending authentication", server_id=flight.server.id, error=str(e))

    def _fail(
        self,
        flight: _Flight,
        error: GatehouseError,
        status: AuthStatus = AuthStatus.FAILED,
    ) -> None:
        session = flight.session
        session.error = error
        session.discard_credentials()
        context = error.context()
        context.pop("server_id", None)
        self._transition(session, status, attempts=session.attempts, error=error.message, **context)
        if self._flights.get(session.server_id) is flight and flight.task is None:
            del self._flights[session.server_id]
            flight.done.set()

    def _transition(self, session: AuthSession, status: AuthStatus, **data: Any) -> None:
        previous = session.status
        session.status = status
        log = logger.warning if status in (AuthStatus.FAILED, AuthStatus.TIMED_OUT) else logger.info
        log(
            "Authentication state changed",
            server_id=session.server_id,
            session_id=session.session_id,
            previous=previous.value,
            status=status.value,
            **data,
        )
