"""Engine collaborators backed by the boundary CLI.

BoundaryClient implements every auth, scope, target and connection
interface the engine consumes. All commands ask for `-format json`; the CLI
wraps single results in "item" and listings in "items", and both shapes are
accepted along with bare objects and arrays.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from gatehouse.boundary.runner import AUTHZ_TOKEN_ENV, BoundaryRunner, CommandResult
from gatehouse.core.config import ServerDescriptor
from gatehouse.core.exceptions import (
    AuthError,
    AuthorizationError,
    CommandError,
    DiscoveryError,
    GatehouseError,
    TargetConnectionError,
    TargetDiscoveryError,
    scrub_secrets,
)
from gatehouse.engine.protocols import AuthCheck
from gatehouse.models import (
    AuthMethod,
    Scope,
    SessionAuthorization,
    Target,
    Token,
    parse_timestamp,
)

logger = structlog.get_logger(component="boundary")

_ADDRESS_PATTERN = re.compile(r"Address:\s+(\S+)")
_PORT_PATTERN = re.compile(r"Port:\s+(\d+)")


def _items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, dict)]
    if isinstance(payload, dict):
        if "items" in payload:
            return [p for p in payload["items"] or [] if isinstance(p, dict)]
        if isinstance(payload.get("item"), dict):
            return [payload["item"]]
    return []


def _item(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict):
        inner = payload.get("item")
        return inner if isinstance(inner, dict) else payload
    return {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_proxy_listing(output: str) -> tuple[str, int] | None:
    """Extract the local proxy address and port from `boundary connect` output.

    Accepts the JSON line printed with `-format json` and the plain text
    "Address: ... / Port: ..." block. Returns None until both are present.
    """
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except ValueError:
            continue
        data = _item(data)
        port = data.get("port")
        if isinstance(port, int) and port > 0:
            return _text(data.get("address")) or "127.0.0.1", port

    port_match = _PORT_PATTERN.search(output)
    if port_match is None:
        return None
    port = int(port_match.group(1))
    if port <= 0:
        return None
    address_match = _ADDRESS_PATTERN.search(output)
    return (address_match.group(1) if address_match else "127.0.0.1"), port


@dataclass
class PendingLogin:
    """A running `boundary authenticate oidc` child."""

    server: ServerDescriptor
    auth_method_id: str
    process: asyncio.subprocess.Process
    output: asyncio.Task = field(repr=False)


class BoundaryProxy:
    """A running `boundary connect` child serving a local proxy endpoint."""

    def __init__(self, process: asyncio.subprocess.Process, address: str, port: int, session_id: str) -> None:
        self.process = process
        self.address = address
        self.port = port
        self.session_id = session_id

    def __repr__(self) -> str:
        return f"BoundaryProxy(session_id={self.session_id!r}, endpoint={self.address}:{self.port})"

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def close(self) -> None:
        await BoundaryRunner.stop(self.process)


class BoundaryClient:
    """Talks to Boundary servers through the boundary CLI."""

    def __init__(self, runner: BoundaryRunner | None = None, connect_timeout: float = 15.0) -> None:
        self.runner = runner or BoundaryRunner()
        self.connect_timeout = connect_timeout

    async def _run(
        self,
        server: ServerDescriptor,
        args: list[str],
        token: Token | None = None,
    ) -> CommandResult:
        return await self.runner.run(
            args,
            addr=server.url,
            token=token.value if token else None,
            cli_path=server.cli_path,
        )

    @staticmethod
    def _json(result: CommandResult, what: str, error_cls: type[GatehouseError], server: ServerDescriptor) -> Any:
        if not result.success:
            raise error_cls(f"Failed to {what}: {result.error_text}", server_id=server.id)
        try:
            return result.json()
        except ValueError as e:
            raise error_cls(f"Unreadable output while trying to {what}", server_id=server.id, cause=e) from e

    async def verify_cli(self, server: ServerDescriptor | None = None) -> str:
        """Return the version number of the installed CLI.

        Raises:
            CommandError: The CLI is missing or broken
        """
        banner = await self.runner.version(server.cli_path if server else None)
        for line in banner.splitlines():
            label, sep, value = line.partition(":")
            if sep and label.strip().lower() == "version number":
                return value.strip()
        return banner.splitlines()[0] if banner else ""

    # AuthMethodSource

    async def list_auth_methods(self, server: ServerDescriptor) -> list[AuthMethod]:
        result = await self._run(server, ["auth-methods", "list", "-format", "json"])
        payload = self._json(result, "list auth methods", DiscoveryError, server)
        methods = []
        for item in _items(payload):
            attributes = item.get("attributes") or {}
            methods.append(
                AuthMethod(
                    id=_text(item.get("id")),
                    name=_text(item.get("name")),
                    type=_text(item.get("type")),
                    description=_text(item.get("description")),
                    issuer=attributes.get("issuer") if isinstance(attributes, dict) else None,
                )
            )
        return methods

    # AuthenticationClient

    async def start_authentication(
        self,
        server: ServerDescriptor,
        auth_method_id: str,
        scope_id: str | None = None,
    ) -> PendingLogin:
        args = [
            "authenticate",
            "oidc",
            "-auth-method-id",
            auth_method_id,
            "-format",
            "json",
            "-keyring-type",
            "none",
        ]
        if scope_id:
            args.extend(["-scope-id", scope_id])
        # The CLI opens the browser itself and exits once the login finishes.
        process = await self.runner.spawn(
            args,
            addr=server.url,
            cli_path=server.cli_path,
        )
        output = asyncio.create_task(process.communicate(), name=f"authenticate-{server.id}")
        logger.info("Browser login started", server_id=server.id, auth_method_id=auth_method_id)
        return PendingLogin(server=server, auth_method_id=auth_method_id, process=process, output=output)

    async def check_authentication(self, pending: PendingLogin) -> AuthCheck:
        if not pending.output.done():
            return AuthCheck()

        stdout, stderr = pending.output.result()
        server = pending.server
        if pending.process.returncode != 0:
            message = scrub_secrets(stderr.decode(errors="replace").strip())
            return AuthCheck(error=message or "Authentication failed")

        try:
            payload = json.loads(stdout.decode(errors="replace"))
        except ValueError as e:
            raise AuthError("Unreadable authentication response", server_id=server.id, cause=e) from e

        item = _item(payload)
        attributes = item.get("attributes") if isinstance(item.get("attributes"), dict) else item
        value = _text(attributes.get("token"))
        if not value:
            raise AuthError("Authentication response did not include a token", server_id=server.id)
        return AuthCheck(
            token=Token(
                value=value,
                server_id=server.id,
                user_id=_text(attributes.get("user_id")),
                expires_at=parse_timestamp(attributes.get("expiration_time")),
            )
        )

    async def release_authentication(self, pending: PendingLogin) -> None:
        await BoundaryRunner.stop(pending.process)
        if not pending.output.done():
            pending.output.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pending.output

    # ScopeSource

    async def list_scopes(self, server: ServerDescriptor, token: Token) -> list[Scope]:
        result = await self._run(server, ["scopes", "list", "-format", "json"], token)
        payload = self._json(result, "list scopes", AuthError, server)
        return [
            Scope(
                id=_text(item.get("id")),
                name=_text(item.get("name")),
                type=_text(item.get("type")),
                description=_text(item.get("description")),
            )
            for item in _items(payload)
        ]

    # TargetSource

    async def list_targets(
        self,
        server: ServerDescriptor,
        token: Token,
        scope_id: str | None = None,
    ) -> list[Target]:
        args = ["targets", "list", "-format", "json"]
        if scope_id:
            args.extend(["-scope-id", scope_id])
        else:
            args.extend(["-recursive", "-scope-id", "global"])
        result = await self._run(server, args, token)
        payload = self._json(result, "list targets", TargetDiscoveryError, server)

        targets = []
        for item in _items(payload):
            attributes = item.get("attributes") if isinstance(item.get("attributes"), dict) else {}
            port = item.get("default_port", attributes.get("default_port"))
            targets.append(
                Target(
                    id=_text(item.get("id")),
                    name=_text(item.get("name")) or _text(item.get("id")),
                    type=_text(item.get("type")) or "tcp",
                    address=item.get("address") or None,
                    description=item.get("description") or None,
                    default_port=port if isinstance(port, int) else None,
                    scope_id=item.get("scope_id") or scope_id,
                )
            )
        return targets

    # ConnectionClient

    async def authorize_session(
        self,
        server: ServerDescriptor,
        token: Token,
        target_id: str,
        host_id: str | None = None,
    ) -> SessionAuthorization:
        args = ["targets", "authorize-session", "-id", target_id, "-format", "json"]
        if host_id:
            args.extend(["-host-id", host_id])
        result = await self._run(server, args, token)
        if not result.success:
            raise AuthorizationError(
                f"Failed to authorize session: {result.error_text}",
                server_id=server.id,
                target_id=target_id,
            )
        try:
            data = _item(result.json())
        except ValueError as e:
            raise AuthorizationError(
                "Unreadable session authorization",
                server_id=server.id,
                target_id=target_id,
                cause=e,
            ) from e

        authz = _text(data.get("authorization_token"))
        session_id = _text(data.get("session_id"))
        if not authz or not session_id:
            raise AuthorizationError(
                "Session authorization is incomplete",
                server_id=server.id,
                target_id=target_id,
            )
        limit = data.get("connection_limit")
        return SessionAuthorization(
            authorization_token=authz,
            session_id=session_id,
            target_id=_text(data.get("target_id")) or target_id,
            user_id=_text(data.get("user_id")),
            host_id=data.get("host_id") or None,
            scope_id=data.get("scope_id") or None,
            created_at=parse_timestamp(data.get("created_time")),
            expires_at=parse_timestamp(data.get("expiration")) or parse_timestamp(data.get("expiration_time")),
            connection_limit=limit if isinstance(limit, int) else -1,
        )

    async def connect(
        self,
        server: ServerDescriptor,
        authorization: SessionAuthorization,
        protocol: str,
    ) -> BoundaryProxy:
        """Start `boundary connect` and wait for it to report its listener."""
        process = await self.runner.spawn(
            ["connect", "-format", "json"],
            addr=server.url,
            cli_path=server.cli_path,
            env={AUTHZ_TOKEN_ENV: authorization.authorization_token},
        )
        try:
            address, port = await asyncio.wait_for(
                self._read_listener(process, server, authorization.target_id),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            await BoundaryRunner.stop(process)
            raise TargetConnectionError(
                f"Proxy did not report a listening port within {self.connect_timeout:g}s",
                server_id=server.id,
                target_id=authorization.target_id,
                cause=e,
            ) from e
        except BaseException:
            await BoundaryRunner.stop(process)
            raise

        logger.info(
            "Proxy listening",
            server_id=server.id,
            session_id=authorization.session_id,
            protocol=protocol,
            address=address,
            port=port,
        )
        return BoundaryProxy(process, address, port, authorization.session_id)

    async def _read_listener(
        self,
        process: asyncio.subprocess.Process,
        server: ServerDescriptor,
        target_id: str,
    ) -> tuple[str, int]:
        seen: list[str] = []
        while True:
            line = await process.stdout.readline()
            if not line:
                stderr = await process.stderr.read()
                message = scrub_secrets(stderr.decode(errors="replace").strip())
                raise TargetConnectionError(
                    f"Proxy exited before listening: {message or 'no output'}",
                    server_id=server.id,
                    target_id=target_id,
                )
            seen.append(line.decode(errors="replace"))
            listing = parse_proxy_listing("".join(seen))
            if listing is not None:
                return listing

    async def cancel_session(self, server: ServerDescriptor, token: Token, session_id: str) -> None:
        result = await self._run(server, ["sessions", "cancel", "-id", session_id, "-format", "json"], token)
        if not result.success:
            raise CommandError(
                f"Failed to cancel session {session_id}: {result.error_text}",
                server_id=server.id,
            )
