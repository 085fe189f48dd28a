"""End-to-end tests for AccessEngine with test doubles."""

from __future__ import annotations

import asyncio

import pytest
from conftest import PENDING, build_engine, make_token

from gatehouse.core.config import GatehouseSettings
from gatehouse.core.exceptions import (
    AuthError,
    AuthorizationError,
    AuthTimeoutError,
    CommandError,
    ConfigError,
    DiscoveryError,
    TargetDiscoveryError,
    TokenStoreError,
)
from gatehouse.engine.engine import AccessEngine
from gatehouse.models import AuthMethod, AuthStatus, Scope, Target
from gatehouse.tokens import KeyringTokenStore, MemoryTokenStore


class TestAuthenticate:
    """Test login through the engine."""

    @pytest.mark.asyncio
    async def test_authenticate_stores_token(self, engine, fakes):
        fakes.auth.script("S1", make_token())

        session = await engine.authenticate("S1")

        assert session.status is AuthStatus.COMPLETED
        stored = await engine.token_store.retrieve("S1")
        assert stored is not None
        assert stored.value == session.token.value
        assert engine.poll_auth_status("S1").success

    @pytest.mark.asyncio
    async def test_unknown_server_raises_config_error(self, engine):
        with pytest.raises(ConfigError):
            await engine.authenticate("nope")

    @pytest.mark.asyncio
    async def test_no_oidc_method(self, engine, fakes):
        fakes.methods.methods = [AuthMethod(id="pw", type="password")]

        with pytest.raises(DiscoveryError):
            await engine.authenticate("S1")
        assert fakes.auth.started == []

    @pytest.mark.asyncio
    async def test_timeout_raises(self, engine, fakes):
        with pytest.raises(AuthTimeoutError):
            await engine.authenticate("S1")
        assert fakes.auth.started[0].checks == 5

    @pytest.mark.asyncio
    async def test_rejection_raises(self, engine, fakes):
        fakes.auth.script("S1", "invalid_grant")
        with pytest.raises(AuthError):
            await engine.authenticate("S1")

    @pytest.mark.asyncio
    async def test_scope_selection_through_engine(self, engine, fakes):
        fakes.scopes.scopes = [Scope(id="A"), Scope(id="B")]
        fakes.auth.script("S1", make_token())

        session = await engine.authenticate("S1")
        assert session.status is AuthStatus.SCOPE_SELECTION
        with pytest.raises(AuthError):
            await engine.discover_targets("S1")

        await engine.resolve_scope("S1", "A")
        await engine.discover_targets("S1")
        assert fakes.targets.calls == [("S1", "A")]

    @pytest.mark.asyncio
    async def test_initiate_and_poll(self, engine, fakes):
        fakes.auth.script("S1", PENDING, make_token())

        session = await engine.initiate_auth("S1")
        assert session.status is AuthStatus.POLLING

        await engine.wait_for_auth("S1")
        report = engine.poll_auth_status("S1")
        assert report.success
        assert report.attempts == 2

    @pytest.mark.asyncio
    async def test_cancel_auth(self, engine, fakes):
        await engine.initiate_auth("S1")
        assert await engine.cancel_auth("S1") is True
        assert engine.poll_auth_status("S1").status is AuthStatus.CANCELLED
        assert await engine.cancel_auth("S1") is False


class TestTargets:
    """Test target discovery through the engine."""

    @pytest.mark.asyncio
    async def test_requires_login(self, engine):
        with pytest.raises(AuthError):
            await engine.discover_targets("S1")

    @pytest.mark.asyncio
    async def test_empty_listing_is_distinguishable_from_failure(self, engine, fakes):
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        fakes.targets.targets = []
        listing = await engine.discover_targets("S1")
        assert listing.is_empty

        fakes.targets.error = CommandError("targets list failed")
        with pytest.raises(TargetDiscoveryError):
            await engine.discover_targets("S1")

    @pytest.mark.asyncio
    async def test_filter_targets_uses_last_listing(self, engine, fakes):
        fakes.targets.targets = [
            Target(id="T1", name="Windows Jumpbox", type="rdp"),
            Target(id="T2", name="Postgres", type="tcp"),
        ]
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        with pytest.raises(TargetDiscoveryError):
            engine.filter_targets("S1", "post")

        await engine.discover_targets("S1")
        assert [t.id for t in engine.filter_targets("S1", "post")] == ["T2"]
        assert len(fakes.targets.calls) == 1


class TestConnect:
    """Test connect() end to end."""

    @pytest.mark.asyncio
    async def test_rdp_target_launches_client_once(self, engine, fakes):
        """S1 / M1 / no scopes / T1 rdp: one connection, one launch at the proxy endpoint."""
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        result = await engine.connect("S1", "T1")

        assert engine.active_connections() == [result.connection]
        assert result.connection.protocol == "rdp"
        assert result.launch.launched is True
        assert fakes.launcher.launches == [
            ("xfreerdp", "127.0.0.1", result.connection.local_port, "Windows Jumpbox")
        ]
        assert fakes.auth.started[0].auth_method_id == "M1"

    @pytest.mark.asyncio
    async def test_no_client_falls_back_to_manual(self, engine, fakes):
        fakes.launcher.clients = []
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        result = await engine.connect("S1", "T1")

        assert result.launch.launched is False
        assert result.launch.manual.endpoint == result.connection.endpoint
        assert result.launch.manual.reason == "No remote desktop client found"
        assert engine.active_connections() == [result.connection]

    @pytest.mark.asyncio
    async def test_unsupported_protocol_falls_back_to_manual(self, engine, fakes):
        fakes.targets.targets = [Target(id="T9", name="ssh box", type="ssh")]
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        result = await engine.connect("S1", "T9")

        assert result.launch.manual is not None
        assert result.launch.manual.protocol == "ssh"
        assert fakes.launcher.launches == []

    @pytest.mark.asyncio
    async def test_launch_failure_falls_back_to_manual(self, engine, fakes):
        fakes.launcher.launch_error = FileNotFoundError("xfreerdp")
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        result = await engine.connect("S1", "T1")

        assert result.launch.launched is False
        assert "xfreerdp" in result.launch.manual.reason
        assert result.connection.is_active

    @pytest.mark.asyncio
    async def test_auto_launch_disabled(self, fakes, registry, settings):
        engine = build_engine(fakes, registry, settings.model_copy(update={"auto_launch": False}))
        async with engine:
            fakes.auth.script("S1", make_token())
            await engine.authenticate("S1")
            result = await engine.connect("S1", "T1")

        assert result.launch.manual is not None
        assert fakes.launcher.launches == []

    @pytest.mark.asyncio
    async def test_preferred_client_is_used(self, fakes, registry, settings):
        from gatehouse.models import RemoteClient

        fakes.launcher.clients = [
            RemoteClient(name="xfreerdp", executable_path="/usr/bin/xfreerdp", client_type="freerdp", platform="linux"),
            RemoteClient(name="remmina", executable_path="/usr/bin/remmina", client_type="remmina", platform="linux"),
        ]
        engine = build_engine(fakes, registry, settings.model_copy(update={"preferred_client": "Remmina"}))
        async with engine:
            fakes.auth.script("S1", make_token())
            await engine.authenticate("S1")
            result = await engine.connect("S1", "T1")

        assert result.launch.client.name == "remmina"

    @pytest.mark.asyncio
    async def test_authorization_denied(self, engine, fakes):
        fakes.connections.denied.add("T1")
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        with pytest.raises(AuthorizationError):
            await engine.connect("S1", "T1")
        assert engine.active_connections() == []

    @pytest.mark.asyncio
    async def test_terminate_connection(self, engine, fakes):
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")
        result = await engine.connect("S1", "T1")

        assert await engine.terminate_connection(result.connection.session_id) is True
        assert await engine.terminate_connection(result.connection.session_id) is False
        assert engine.active_connections() == []


class TestLifecycle:
    """Test logout, expiry and superseded sessions."""

    @pytest.mark.asyncio
    async def test_logout_tears_everything_down(self, engine, fakes):
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")
        await engine.connect("S1", "T1")

        assert await engine.logout("S1") is True

        assert engine.active_connections() == []
        assert fakes.connections.proxies[0].closed == 1
        assert await engine.token_store.retrieve("S1") is None
        with pytest.raises(AuthError):
            await engine.discover_targets("S1")
        assert await engine.logout("S1") is False

    @pytest.mark.asyncio
    async def test_logout_during_connect_closes_the_new_proxy(self, engine, fakes):
        """A proxy that comes up after logout is torn down instead of being tracked."""
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")
        await engine.discover_targets("S1")
        fakes.connections.gate = asyncio.Event()

        connecting = asyncio.create_task(engine.connect("S1", "T1"))
        await asyncio.sleep(0.01)
        assert await engine.logout("S1") is True
        fakes.connections.gate.set()

        with pytest.raises(AuthError, match="Session ended"):
            await connecting
        assert engine.active_connections() == []
        assert fakes.connections.proxies[0].closed == 1
        assert fakes.connections.cancelled == ["s_1"]

    @pytest.mark.asyncio
    async def test_expiry_during_connect_closes_the_new_proxy(self, engine, fakes):
        fakes.auth.script("S1", make_token(expires_in=60))
        session = await engine.authenticate("S1")
        await engine.discover_targets("S1")
        fakes.connections.gate = asyncio.Event()

        connecting = asyncio.create_task(engine.connect("S1", "T1"))
        await asyncio.sleep(0.01)
        await engine._expire(session)
        fakes.connections.gate.set()

        with pytest.raises(AuthError):
            await connecting
        assert engine.active_connections() == []
        assert fakes.connections.proxies[0].closed == 1

    @pytest.mark.asyncio
    async def test_new_login_closes_connections_of_old_session(self, engine, fakes):
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")
        await engine.connect("S1", "T1")

        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")

        assert engine.active_connections() == []
        assert fakes.connections.proxies[0].closed == 1

    @pytest.mark.asyncio
    async def test_login_to_other_server_keeps_connections(self, engine, fakes):
        fakes.auth.script("S1", make_token())
        await engine.authenticate("S1")
        result = await engine.connect("S1", "T1")

        fakes.auth.script("S2", make_token(server_id="S2"))
        await engine.authenticate("S2")

        assert engine.active_connections() == [result.connection]

    @pytest.mark.asyncio
    async def test_expiry_watchdog_tears_session_down(self, engine, fakes):
        fakes.auth.script("S1", make_token(expires_in=0.2))
        await engine.authenticate("S1")
        await engine.connect("S1", "T1")

        await asyncio.sleep(0.4)

        assert engine.sessions.completed("S1") is None
        assert engine.active_connections() == []
        assert await engine.token_store.retrieve("S1") is None

    @pytest.mark.asyncio
    async def test_expired_token_rejected_before_use(self, engine, fakes):
        fakes.auth.script("S1", make_token(expires_in=0.05))
        await engine.authenticate("S1")
        engine._cancel_watchdog("S1")
        await asyncio.sleep(0.1)

        with pytest.raises(AuthError, match="expired"):
            await engine.discover_targets("S1")
        assert engine.sessions.completed("S1") is None

    @pytest.mark.asyncio
    async def test_close_is_safe_to_repeat(self, fakes, registry, settings):
        engine = build_engine(fakes, registry, settings)
        fakes.auth.script("S1", make_token(expires_in=60))
        await engine.authenticate("S1")
        await engine.connect("S1", "T1")

        await engine.close()
        await engine.close()

        assert engine.active_connections() == []
        assert fakes.connections.proxies[0].closed == 1


class TestRemoteClients:
    """Test client detection passthrough."""

    @pytest.mark.asyncio
    async def test_detect_remote_clients(self, engine):
        clients = await engine.detect_remote_clients()
        assert [c.name for c in clients] == ["xfreerdp"]

    @pytest.mark.asyncio
    async def test_launch_remote_client(self, engine, fakes):
        client = fakes.launcher.clients[0]
        await engine.launch_remote_client(client, "127.0.0.1", 50123, "Jumpbox")
        assert fakes.launcher.launches == [("xfreerdp", "127.0.0.1", 50123, "Jumpbox")]


class TestSavedLogin:
    """Test logins carried across engines through the token store."""

    @pytest.mark.asyncio
    async def test_second_engine_reuses_saved_token(self, fakes, registry, settings):
        store = MemoryTokenStore()
        first = build_engine(fakes, registry, settings, token_store=store)
        fakes.scopes.scopes = [Scope(id="o_1", name="Ops")]
        fakes.auth.script("S1", make_token(expires_in=60))
        await first.authenticate("S1")
        await first.close()

        second = build_engine(fakes, registry, settings, token_store=store)
        try:
            listing = await second.discover_targets("S1")

            assert len(fakes.auth.started) == 1
            assert [t.id for t in listing] == ["T1"]
            assert fakes.targets.calls[-1] == ("S1", "o_1")
            session = second.sessions.completed("S1")
            assert session.status is AuthStatus.COMPLETED
            assert session.scope.id == "o_1"
            assert "S1" in second._watchdogs
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_restore_without_saved_token(self, engine):
        assert await engine.restore_session("S1") is None
        with pytest.raises(AuthError, match="Not authenticated"):
            await engine.require_session("S1")

    @pytest.mark.asyncio
    async def test_restore_keeps_existing_session(self, engine, fakes):
        fakes.auth.script("S1", make_token())
        session = await engine.authenticate("S1")
        await engine.token_store.store(make_token(value="at_0987654321_othervalue"))

        assert await engine.restore_session("S1") is session
        assert session.token.value == "at_1234567890_secretvalue"

    @pytest.mark.asyncio
    async def test_logout_forgets_saved_token(self, fakes, registry, settings):
        store = MemoryTokenStore()
        await store.store(make_token())
        engine = build_engine(fakes, registry, settings, token_store=store)
        try:
            assert await engine.logout("S1") is True
            assert await store.retrieve("S1") is None
            assert await engine.logout("S1") is False
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_login(self, fakes, registry, settings):
        class BrokenStore(MemoryTokenStore):
            async def store(self, token):
                raise TokenStoreError("keyring locked", server_id=token.server_id)

        engine = build_engine(fakes, registry, settings, token_store=BrokenStore())
        try:
            fakes.auth.script("S1", make_token())
            session = await engine.authenticate("S1")
            assert session.status is AuthStatus.COMPLETED
            assert engine.sessions.completed("S1") is session
        finally:
            await engine.close()


class TestFromSettings:
    """Test engine construction from settings."""

    def test_token_store_follows_setting(self, registry):
        keyring_engine = AccessEngine.from_settings(GatehouseSettings(token_store="keyring"), registry)
        memory_engine = AccessEngine.from_settings(GatehouseSettings(token_store="memory"), registry)

        assert isinstance(keyring_engine.token_store, KeyringTokenStore)
        assert isinstance(memory_engine.token_store, MemoryTokenStore)
