"""Shared test doubles for the engine collaborators."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from gatehouse.core.config import GatehouseSettings, ServerDescriptor
from gatehouse.core.exceptions import AuthorizationError
from gatehouse.engine.engine import AccessEngine
from gatehouse.engine.protocols import AuthCheck, TokenStore
from gatehouse.engine.session import PollPolicy
from gatehouse.models import (
    AuthMethod,
    RemoteClient,
    Scope,
    SessionAuthorization,
    Target,
    Token,
)
from gatehouse.registry import ServerRegistry

PENDING = "pending"


def make_token(server_id: str = "S1", expires_in: float | None = None, value: str = "at_1234567890_secretvalue") -> Token:
    expires_at = datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in is not None else None
    return Token(value=value, server_id=server_id, user_id="u_alice", expires_at=expires_at)


class FakeAuthMethods:
    def __init__(self, methods: list[AuthMethod] | None = None) -> None:
        self.methods = methods if methods is not None else [AuthMethod(id="M1", name="Okta", type="oidc")]
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def list_auth_methods(self, server: ServerDescriptor) -> list[AuthMethod]:
        self.calls.append(server.id)
        if self.error is not None:
            raise self.error
        return list(self.methods)


@dataclass
class FakePending:
    id: int
    server_id: str
    auth_method_id: str
    script: list[Any]
    checks: int = 0
    released: int = 0


class FakeAuthenticator:
    """Scripted login: each check pops the next outcome; an empty script means pending.

    Outcomes are PENDING, a Token, an error string (IdP rejection) or an
    exception instance (raised from the check).
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[Any]] = {}
        self.started: list[FakePending] = []
        self.start_error: Exception | None = None
        self._ids = itertools.count(1)

    def script(self, server_id: str, *outcomes: Any) -> None:
        self.scripts[server_id] = list(outcomes)

    async def start_authentication(self, server: ServerDescriptor, auth_method_id: str, scope_id: str | None = None) -> FakePending:
        if self.start_error is not None:
            raise self.start_error
        pending = FakePending(
            id=next(self._ids),
            server_id=server.id,
            auth_method_id=auth_method_id,
            script=list(self.scripts.get(server.id, [])),
        )
        self.started.append(pending)
        return pending

    async def check_authentication(self, pending: FakePending) -> AuthCheck:
        pending.checks += 1
        if not pending.script:
            return AuthCheck()
        outcome = pending.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, Token):
            return AuthCheck(token=outcome)
        if outcome == PENDING:
            return AuthCheck()
        return AuthCheck(error=outcome)

    async def release_authentication(self, pending: FakePending) -> None:
        pending.released += 1


class FakeScopes:
    def __init__(self, scopes: list[Scope] | None = None) -> None:
        self.scopes = scopes or []
        self.error: Exception | None = None

    async def list_scopes(self, server: ServerDescriptor, token: Token) -> list[Scope]:
        if self.error is not None:
            raise self.error
        return list(self.scopes)


class FakeTargets:
    def __init__(self, targets: list[Target] | None = None) -> None:
        self.targets = targets if targets is not None else [Target(id="T1", name="Windows Jumpbox", type="rdp")]
        self.error: Exception | None = None
        self.calls: list[tuple[str, str | None]] = []

    async def list_targets(self, server: ServerDescriptor, token: Token, scope_id: str | None = None) -> list[Target]:
        self.calls.append((server.id, scope_id))
        if self.error is not None:
            raise self.error
        return list(self.targets)


@dataclass
class FakeProxy:
    address: str
    port: int
    closed: int = 0
    exited: bool = False

    @property
    def running(self) -> bool:
        return not self.exited and self.closed == 0

    async def close(self) -> None:
        self.closed += 1


@dataclass
class FakeConnections:
    denied: set[str] = field(default_factory=set)
    connect_error: Exception | None = None
    gate: asyncio.Event | None = None
    proxies: list[FakeProxy] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    _sessions: itertools.count = field(default_factory=lambda: itertools.count(1))
    _ports: itertools.count = field(default_factory=lambda: itertools.count(50001))

    async def authorize_session(self, server, token, target_id, host_id=None) -> SessionAuthorization:
        if target_id in self.denied:
            raise AuthorizationError("Permission denied", server_id=server.id, target_id=target_id)
        return SessionAuthorization(
            authorization_token=f"authz-{target_id}",
            session_id=f"s_{next(self._sessions)}",
            target_id=target_id,
            user_id=token.user_id,
        )

    async def connect(self, server, authorization, protocol) -> FakeProxy:
        if self.gate is not None:
            await self.gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        proxy = FakeProxy(address="127.0.0.1", port=next(self._ports))
        self.proxies.append(proxy)
        return proxy

    async def cancel_session(self, server, token, session_id) -> None:
        self.cancelled.append(session_id)


class FakeLauncher:
    def __init__(self, clients: list[RemoteClient] | None = None) -> None:
        self.clients = clients if clients is not None else [
            RemoteClient(name="xfreerdp", executable_path="/usr/bin/xfreerdp", client_type="freerdp", platform="linux"),
        ]
        self.launches: list[tuple[str, str, int, str]] = []
        self.launch_error: Exception | None = None

    def supports(self, protocol: str) -> bool:
        return protocol.lower() == "rdp"

    async def detect(self) -> list[RemoteClient]:
        return list(self.clients)

    async def launch(self, client: RemoteClient, address: str, port: int, target_name: str) -> None:
        if self.launch_error is not None:
            raise self.launch_error
        self.launches.append((client.name, address, port, target_name))


@dataclass
class Fakes:
    methods: FakeAuthMethods = field(default_factory=FakeAuthMethods)
    auth: FakeAuthenticator = field(default_factory=FakeAuthenticator)
    scopes: FakeScopes = field(default_factory=FakeScopes)
    targets: FakeTargets = field(default_factory=FakeTargets)
    connections: FakeConnections = field(default_factory=FakeConnections)
    launcher: FakeLauncher = field(default_factory=FakeLauncher)


@pytest.fixture
def fakes() -> Fakes:
    return Fakes()


@pytest.fixture
def registry() -> ServerRegistry:
    return ServerRegistry(
        [
            ServerDescriptor(id="S1", name="Server One", url="https://boundary-one.example.com"),
            ServerDescriptor(id="S2", name="Server Two", url="https://boundary-two.example.com"),
        ]
    )


@pytest.fixture
def settings() -> GatehouseSettings:
    return GatehouseSettings(poll_interval=0.01, poll_max_attempts=5, terminate_timeout=1.0)


def build_engine(
    fakes: Fakes,
    registry: ServerRegistry,
    settings: GatehouseSettings,
    policy: PollPolicy | None = None,
    token_store: TokenStore | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> AccessEngine:
    return AccessEngine(
        registry,
        auth_methods=fakes.methods,
        authenticator=fakes.auth,
        scopes=fakes.scopes,
        targets=fakes.targets,
        connections=fakes.connections,
        launcher=fakes.launcher,
        token_store=token_store,
        settings=settings,
        policy=policy,
        http_transport=http_transport,
    )


@pytest_asyncio.fixture
async def engine(fakes, registry, settings):
    engine = build_engine(fakes, registry, settings)
    yield engine
    await engine.close()
