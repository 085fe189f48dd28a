"""AccessEngine: the single entry point used by the CLI and by embedders."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from gatehouse.core.config import GatehouseSettings, ServerDescriptor, get_config
from gatehouse.core.exceptions import (
    AuthError,
    GatehouseError,
    TargetDiscoveryError,
    TokenStoreError,
)
from gatehouse.engine.connections import ConnectionManager
from gatehouse.engine.discovery import OIDCDiscoveryClient
from gatehouse.engine.protocols import (
    AuthenticationClient,
    AuthMethodSource,
    ConnectionClient,
    RemoteClientLauncher,
    ScopeSource,
    TargetSource,
    TokenStore,
)
from gatehouse.engine.scopes import ScopeResolution
from gatehouse.engine.session import AuthSessionMachine, PollPolicy
from gatehouse.engine.targets import TargetDiscoveryClient, TargetListing
from gatehouse.models import (
    AuthMethod,
    AuthSession,
    AuthStatus,
    AuthStatusReport,
    Connection,
    ConnectResult,
    LaunchOutcome,
    ManualConnection,
    RemoteClient,
    SessionAuthorization,
)
from gatehouse.registry import ServerRegistry, load_servers
from gatehouse.tokens import KeyringTokenStore, MemoryTokenStore

if TYPE_CHECKING:
    from gatehouse.boundary.client import BoundaryClient

logger = structlog.get_logger(component="engine")


class AccessEngine:
    """Orchestrates login, target discovery, connections and client launch.

    Each engine owns its sessions, connections and watchdog tasks; nothing
    is shared between engines. Use it as an async context manager, or call
    `close()` when done, so proxies and pending logins are released.

    Example:
        async with AccessEngine.from_settings() as engine:
            await engine.authenticate("prod")
            listing = await engine.discover_targets("prod")
            result = await engine.connect("prod", listing.targets[0].id)
    """

    def __init__(
        self,
        registry: ServerRegistry,
        *,
        auth_methods: AuthMethodSource,
        authenticator: AuthenticationClient,
        scopes: ScopeSource,
        targets: TargetSource,
        connections: ConnectionClient,
        launcher: RemoteClientLauncher | None = None,
        token_store: TokenStore | None = None,
        settings: GatehouseSettings | None = None,
        policy: PollPolicy | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_config()
        self.discovery = OIDCDiscoveryClient(auth_methods, transport=http_transport)
        self.sessions = AuthSessionMachine(
            self.discovery,
            authenticator,
            scopes,
            policy=policy
            or PollPolicy(
                interval=self.settings.poll_interval,
                max_attempts=self.settings.poll_max_attempts,
            ),
            on_complete=self._on_session_complete,
        )
        self.targets = TargetDiscoveryClient(targets)
        self.connections = ConnectionManager(
            connections, terminate_timeout=self.settings.terminate_timeout
        )
        self.launcher = launcher
        self.token_store: TokenStore = token_store or MemoryTokenStore()
        self._watchdogs: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls,
        settings: GatehouseSettings | None = None,
        registry: ServerRegistry | None = None,
    ) -> AccessEngine:
        """Build an engine backed by the boundary CLI and the system launcher."""
        from gatehouse.boundary.client import BoundaryClient
        from gatehouse.boundary.runner import BoundaryRunner
        from gatehouse.launcher import SystemLauncher

        settings = settings or get_config()
        if registry is None:
            registry = load_servers(settings.servers_file)
        runner = BoundaryRunner(
            cli_path=settings.boundary_cli_path,
            timeout=settings.command_timeout,
        )
        client: BoundaryClient = BoundaryClient(runner, connect_timeout=settings.connect_timeout)
        launcher = SystemLauncher(
            fullscreen=settings.fullscreen,
            resolution=settings.resolution,
        )
        token_store: TokenStore = (
            KeyringTokenStore() if settings.token_store == "keyring" else MemoryTokenStore()
        )
        return cls(
            registry,
            auth_methods=client,
            authenticator=client,
            scopes=client,
            targets=client,
            connections=client,
            launcher=launcher,
            token_store=token_store,
            settings=settings,
        )

    async def __aenter__(self) -> AccessEngine:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def server(self, server_id: str) -> ServerDescriptor:
        """Look up a configured server. Raises ConfigError if unknown or invalid."""
        return self.registry.get(server_id)

    # Authentication

    async def discover_auth_methods(self, server_id: str) -> list[AuthMethod]:
        return await self.discovery.discover_auth_methods(self.server(server_id))

    async def verify_oidc_support(self, server_id: str) -> bool:
        return await self.discovery.verify_oidc_support(self.server(server_id))

    async def issuer_metadata(self, server_id: str, issuer: str | None = None) -> dict[str, Any]:
        """Fetch the OpenID configuration of the server's identity provider.

        Raises:
            DiscoveryError: No issuer is known, or the document could not be fetched
        """
        return await self.discovery.fetch_issuer_metadata(self.server(server_id), issuer)

    async def initiate_auth(
        self,
        server_id: str,
        auth_method_id: str | None = None,
        scope_id: str | None = None,
    ) -> AuthSession:
        """Start a browser login. Any other in-flight login is cancelled."""
        return await self.sessions.start(self.server(server_id), auth_method_id, scope_id)

    def poll_auth_status(self, server_id: str) -> AuthStatusReport:
        return self.sessions.report(server_id)

    async def wait_for_auth(self, server_id: str) -> AuthSession:
        return await self.sessions.wait(server_id)

    async def authenticate(
        self,
        server_id: str,
        auth_method_id: str | None = None,
        scope_id: str | None = None,
    ) -> AuthSession:
        """Log in and wait for the result.

        Returns the session COMPLETED, or in SCOPE_SELECTION when the caller
        has to pick a scope with `resolve_scope`.

        Raises:
            DiscoveryError: No OIDC method is available
            AuthError: The login failed or was cancelled
            AuthTimeoutError: The login was not completed in time
        """
        await self.initiate_auth(server_id, auth_method_id, scope_id)
        session = await self.wait_for_auth(server_id)
        if session.status in (AuthStatus.FAILED, AuthStatus.TIMED_OUT) and session.error is not None:
            raise session.error
        if session.status is AuthStatus.CANCELLED:
            raise AuthError("Authentication was cancelled", server_id=server_id)
        return session

    async def resolve_scope(self, server_id: str, scope_id: str) -> ScopeResolution:
        return await self.sessions.select_scope(server_id, scope_id)

    async def cancel_auth(self, server_id: str) -> bool:
        return await self.sessions.cancel(server_id)

    async def restore_session(self, server_id: str) -> AuthSession | None:
        """Resume a login saved in the token store by an earlier process.

        Returns the completed session, or None when no usable token is stored.
        """
        session = self.sessions.completed(server_id)
        if session is not None:
            return session
        token = await self.token_store.retrieve(server_id)
        if token is None:
            return None
        if token.is_expired:
            await self.token_store.clear(server_id)
            return None

        session = await self.sessions.restore(self.server(server_id), token)
        if session.token is token:
            self._schedule_expiry(session)
            logger.info("Restored saved login", server_id=server_id, user_id=token.user_id)
        return session

    async def require_session(self, server_id: str) -> AuthSession:
        """Return the completed session for a server.

        A login saved by an earlier process is restored on first use.

        Raises:
            AuthError: Not logged in, or the token has expired
        """
        session = self.sessions.completed(server_id)
        if session is None:
            session = await self.restore_session(server_id)
        if session is None or session.token is None:
            raise AuthError("Not authenticated", server_id=server_id)
        if session.token.is_expired:
            await self._expire(session)
            raise AuthError("Token expired", server_id=server_id)
        return session

    # Targets

    async def discover_targets(self, server_id: str) -> TargetListing:
        session = await self.require_session(server_id)
        scope_id = session.scope.id if session.scope else None
        return await self.targets.discover(self.server(server_id), session.token, scope_id)

    def filter_targets(self, server_id: str, query: str) -> TargetListing:
        """Filter the last successful listing for a server.

        Raises:
            TargetDiscoveryError: Targets have not been listed yet
        """
        listing = self.targets.last_listing(server_id)
        if listing is None:
            raise TargetDiscoveryError("Targets have not been listed yet", server_id=server_id)
        return listing.filter(query)

    # Connections

    async def authorize_session(self, server_id: str, target_id: str) -> SessionAuthorization:
        session = await self.require_session(server_id)
        return await self.connections.authorize(self.server(server_id), session.token, target_id)

    async def establish_connection(
        self,
        server_id: str,
        authorization: SessionAuthorization,
        target_name: str,
        protocol: str | None = None,
    ) -> Connection:
        session = await self.require_session(server_id)
        if protocol is None:
            protocol = self._target_protocol(server_id, authorization.target_id)
        connection = await self.connections.establish(
            self.server(server_id),
            session.token,
            authorization,
            target_name,
            protocol,
            session.session_id,
        )
        if self.sessions.completed(server_id) is not session or session.token is None:
            # Logged out or expired while the proxy was starting.
            await self.connections.terminate(connection.session_id)
            raise AuthError(
                "Session ended while the connection was being established",
                server_id=server_id,
                target_id=authorization.target_id,
            )
        return connection

    async def connect(self, server_id: str, target_id: str) -> ConnectResult:
        """Authorize, establish and hand the connection to a remote client.

        A missing or failing client never fails the call; the result then
        carries manual connection details instead.
        """
        listing = self.targets.last_listing(server_id)
        if listing is None:
            listing = await self.discover_targets(server_id)
        target = listing.get(target_id)
        target_name = target.name if target else target_id
        protocol = target.type if target else "tcp"

        authorization = await self.authorize_session(server_id, target_id)
        connection = await self.establish_connection(
            server_id, authorization, target_name, protocol
        )
        launch = await self._launch(connection)
        return ConnectResult(connection=connection, launch=launch)

    async def terminate_connection(self, session_id: str) -> bool:
        return await self.connections.terminate(session_id)

    def active_connections(self) -> list[Connection]:
        return self.connections.active()

    async def check_connections(self) -> list[Connection]:
        """Tear down connections whose proxy has exited. Returns the lost ones."""
        return await self.connections.check_health()

    # Remote clients

    async def detect_remote_clients(self) -> list[RemoteClient]:
        if self.launcher is None:
            return []
        return await self.launcher.detect()

    async def launch_remote_client(
        self,
        client: RemoteClient,
        address: str,
        port: int,
        target_name: str,
    ) -> None:
        if self.launcher is None:
            raise GatehouseError("No remote client launcher configured")
        await self.launcher.launch(client, address, port, target_name)

    # Lifecycle

    async def logout(self, server_id: str) -> bool:
        """Drop the session, saved token and connections for a server.

        Returns:
            False if there was neither a session nor a saved login
        """
        stored = await self.token_store.retrieve(server_id)
        session = await self.sessions.discard(server_id)
        self._cancel_watchdog(server_id)
        await self.token_store.clear(server_id)
        self.targets.forget(server_id)
        if session is None:
            return stored is not None
        closed = await self.connections.terminate_session(session.session_id)
        logger.info("Logged out", server_id=server_id, connections_closed=closed)
        return True

    async def close(self) -> None:
        """Cancel pending logins and watchdogs and stop every proxy."""
        await self.sessions.close()
        watchdogs = list(self._watchdogs.values())
        self._watchdogs.clear()
        for task in watchdogs:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        closed = await self.connections.terminate_all()
        logger.debug("Engine closed", connections_closed=closed)

    # Internals

    def _target_protocol(self, server_id: str, target_id: str) -> str:
        listing = self.targets.last_listing(server_id)
        target = listing.get(target_id) if listing is not None else None
        return target.type if target else "tcp"

    async def _launch(self, connection: Connection) -> LaunchOutcome:
        def manual(reason: str) -> LaunchOutcome:
            logger.info(
                "Manual connection required",
                target_id=connection.target_id,
                endpoint=connection.endpoint,
                reason=reason,
            )
            return LaunchOutcome(
                launched=False,
                manual=ManualConnection(
                    protocol=connection.protocol,
                    address=connection.local_address,
                    port=connection.local_port,
                    target_name=connection.target_name,
                    reason=reason,
                ),
            )

        if not self.settings.auto_launch:
            return manual("Automatic client launch is disabled")
        if self.launcher is None or not self.launcher.supports(connection.protocol):
            return manual(f"No client launcher for protocol '{connection.protocol}'")

        clients = [
            c for c in await self.launcher.detect() if connection.protocol.lower() in c.protocols
        ]
        client = self._pick_client(clients)
        if client is None:
            return manual("No remote desktop client found")

        try:
            await self.launcher.launch(
                client,
                connection.local_address,
                connection.local_port,
                connection.target_name,
            )
        except (GatehouseError, OSError) as e:
            logger.warning("Client launch failed", client=client.name, error=str(e))
            return manual(f"Failed to launch {client.name}: {e}")

        logger.info("Launched remote client", client=client.name, endpoint=connection.endpoint)
        return LaunchOutcome(launched=True, client=client)

    def _pick_client(self, clients: list[RemoteClient]) -> RemoteClient | None:
        preferred = (self.settings.preferred_client or "").lower()
        if preferred:
            for client in clients:
                if preferred in (client.name.lower(), client.client_type.lower()):
                    return client
        return clients[0] if clients else None

    async def _on_session_complete(
        self,
        session: AuthSession,
        previous: AuthSession | None,
    ) -> None:
        if previous is not None:
            self._cancel_watchdog(session.server_id)
            closed = await self.connections.terminate_session(previous.session_id)
            if closed:
                logger.info(
                    "Closed connections of superseded session",
                    server_id=session.server_id,
                    count=closed,
                )

        if session.token is None:
            return
        try:
            await self.token_store.store(session.token)
        except TokenStoreError as e:
            logger.warning("Login not saved", server_id=session.server_id, error=e.message)
        self._schedule_expiry(session)

    def _schedule_expiry(self, session: AuthSession) -> None:
        remaining = session.token.remaining_seconds if session.token else None
        if remaining is None:
            return
        self._cancel_watchdog(session.server_id)
        self._watchdogs[session.server_id] = asyncio.create_task(
            self._watch_expiry(session, remaining),
            name=f"token-expiry-{session.server_id}",
        )

    async def _watch_expiry(self, session: AuthSession, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("Token expired", server_id=session.server_id)
        await self._expire(session)

    async def _expire(self, session: AuthSession) -> None:
        if not await self.sessions.expire(session):
            return
        if self._watchdogs.get(session.server_id) is not asyncio.current_task():
            self._cancel_watchdog(session.server_id)
        else:
            del self._watchdogs[session.server_id]
        await self.token_store.clear(session.server_id)
        self.targets.forget(session.server_id)
        await self.connections.terminate_session(session.session_id)

    def _cancel_watchdog(self, server_id: str) -> None:
        task = self._watchdogs.pop(server_id, None)
        if task is not None and not task.done():
            task.cancel()
