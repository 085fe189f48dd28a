"""Session authorization and local proxy lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from gatehouse.core.config import ServerDescriptor
from gatehouse.core.exceptions import (
    AuthorizationError,
    GatehouseError,
    TargetConnectionError,
)
from gatehouse.engine.protocols import ConnectionClient, ProxyHandle
from gatehouse.models import Connection, ConnectionStatus, SessionAuthorization, Token

logger = structlog.get_logger(component="connections")


@dataclass
class _Tracked:
    connection: Connection
    proxy: ProxyHandle
    server: ServerDescriptor
    token: Token


class ConnectionManager:
    """Authorizes sessions, runs their local proxies and tears them down.

    Every established connection is tracked until `terminate` releases it.
    Connections are independent: tearing one down never touches another.
    """

    def __init__(self, client: ConnectionClient, terminate_timeout: float = 5.0) -> None:
        self._client = client
        self._terminate_timeout = terminate_timeout
        self._tracked: dict[str, _Tracked] = {}
        self._lock = asyncio.Lock()

    async def authorize(
        self,
        server: ServerDescriptor,
        token: Token,
        target_id: str,
    ) -> SessionAuthorization:
        """Obtain a session authorization for one target.

        Raises:
            AuthorizationError: Access to the target was denied or the call failed
        """
        logger.info("Authorizing session", server_id=server.id, target_id=target_id)
        try:
            authorization = await self._client.authorize_session(server, token, target_id)
        except AuthorizationError:
            raise
        except (GatehouseError, OSError) as e:
            raise AuthorizationError(
                f"Failed to authorize session: {e}",
                server_id=server.id,
                target_id=target_id,
                cause=e,
            ) from e
        logger.info(
            "Session authorized",
            server_id=server.id,
            target_id=target_id,
            session_id=authorization.session_id,
        )
        return authorization

    async def establish(
        self,
        server: ServerDescriptor,
        token: Token,
        authorization: SessionAuthorization,
        target_name: str,
        protocol: str,
        auth_session_id: str,
    ) -> Connection:
        """Start the local proxy for an authorized session.

        Raises:
            TargetConnectionError: The proxy did not come up
        """
        target_id = authorization.target_id
        logger.info(
            "Establishing connection",
            server_id=server.id,
            target_id=target_id,
            session_id=authorization.session_id,
            protocol=protocol,
        )
        try:
            proxy = await self._client.connect(server, authorization, protocol)
        except TargetConnectionError:
            raise
        except (GatehouseError, OSError) as e:
            raise TargetConnectionError(
                f"Failed to establish connection: {e}",
                server_id=server.id,
                target_id=target_id,
                cause=e,
            ) from e

        connection = Connection(
            session_id=authorization.session_id,
            target_id=target_id,
            target_name=target_name,
            protocol=protocol,
            local_address=proxy.address,
            local_port=proxy.port,
            auth_session_id=auth_session_id,
            server_id=server.id,
            expires_at=authorization.expires_at,
        )
        async with self._lock:
            self._tracked[connection.session_id] = _Tracked(connection, proxy, server, token)

        logger.info(
            "Connection established",
            server_id=server.id,
            target_id=target_id,
            session_id=connection.session_id,
            endpoint=connection.endpoint,
        )
        return connection

    def get(self, session_id: str) -> Connection | None:
        tracked = self._tracked.get(session_id)
        return tracked.connection if tracked else None

    def active(self) -> list[Connection]:
        """Tracked connections whose proxy is still running."""
        return [
            t.connection
            for t in self._tracked.values()
            if t.connection.is_active and t.proxy.running
        ]

    async def check_health(self) -> list[Connection]:
        """Release connections whose proxy exited on its own.

        Returns:
            The connections that were found dead and torn down
        """
        async with self._lock:
            dead = [
                self._tracked.pop(sid)
                for sid, t in list(self._tracked.items())
                if not t.proxy.running
            ]
        for tracked in dead:
            connection = tracked.connection
            logger.warning(
                "Proxy exited unexpectedly",
                server_id=connection.server_id,
                target_id=connection.target_id,
                session_id=connection.session_id,
            )
            await self._teardown(tracked, status=ConnectionStatus.FAILED)
        return [t.connection for t in dead]

    async def terminate(self, session_id: str) -> bool:
        """Tear down one connection.

        Returns:
            True if a live connection was torn down, False if there was nothing to do
        """
        async with self._lock:
            tracked = self._tracked.pop(session_id, None)
        if tracked is None:
            logger.debug("Nothing to terminate", session_id=session_id)
            return False
        await self._teardown(tracked)
        return True

    async def terminate_session(self, auth_session_id: str) -> int:
        """Tear down every connection opened under one auth session."""
        async with self._lock:
            doomed = [
                self._tracked.pop(sid)
                for sid, t in list(self._tracked.items())
                if t.connection.auth_session_id == auth_session_id
            ]
        for tracked in doomed:
            await self._teardown(tracked)
        return len(doomed)

    async def terminate_all(self) -> int:
        async with self._lock:
            doomed = list(self._tracked.values())
            self._tracked.clear()
        for tracked in doomed:
            await self._teardown(tracked)
        return len(doomed)

    async def _teardown(
        self,
        tracked: _Tracked,
        status: ConnectionStatus = ConnectionStatus.TERMINATED,
    ) -> None:
        connection = tracked.connection
        connection.status = status
        try:
            await asyncio.wait_for(tracked.proxy.close(), timeout=self._terminate_timeout)
        except TimeoutError:
            logger.warning("Proxy did not stop in time", session_id=connection.session_id)
        except (GatehouseError, OSError) as e:
            logger.warning("Failed to stop proxy", session_id=connection.session_id, error=str(e))

        try:
            await self._client.cancel_session(tracked.server, tracked.token, connection.session_id)
        except (GatehouseError, OSError) as e:
            # The server expires the session on its own.
            logger.warning(
                "Failed to cancel remote session",
                server_id=connection.server_id,
                session_id=connection.session_id,
                error=str(e),
            )
        logger.info(
            "Connection terminated",
            server_id=connection.server_id,
            target_id=connection.target_id,
            session_id=connection.session_id,
        )
