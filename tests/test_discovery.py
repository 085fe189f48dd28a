"""Tests for OIDC auth method discovery and issuer metadata."""

from __future__ import annotations

import httpx
import pytest
from conftest import FakeAuthMethods

from gatehouse.core.config import ServerDescriptor
from gatehouse.core.exceptions import CommandError, DiscoveryError
from gatehouse.engine.discovery import OIDCDiscoveryClient
from gatehouse.models import AuthMethod

ISSUER = "https://idp.example.com"
WELL_KNOWN = f"{ISSUER}/.well-known/openid-configuration"


def server(**oidc) -> ServerDescriptor:
    return ServerDescriptor(id="S1", name="Server One", url="https://boundary.example.com", oidc=oidc)


class TestDiscoverAuthMethods:
    """Test discover_auth_methods()."""

    @pytest.mark.asyncio
    async def test_keeps_only_oidc_in_server_order(self):
        source = FakeAuthMethods(
            [
                AuthMethod(id="pw", type="password"),
                AuthMethod(id="M2", type="oidc"),
                AuthMethod(id="M1", type="oidc"),
            ]
        )
        methods = await OIDCDiscoveryClient(source).discover_auth_methods(server())
        assert [m.id for m in methods] == ["M2", "M1"]

    @pytest.mark.asyncio
    async def test_no_oidc_method(self):
        source = FakeAuthMethods([AuthMethod(id="pw", type="password")])
        with pytest.raises(DiscoveryError, match="No OIDC"):
            await OIDCDiscoveryClient(source).discover_auth_methods(server())

    @pytest.mark.asyncio
    async def test_listing_failure_is_wrapped(self):
        source = FakeAuthMethods()
        source.error = CommandError("boundary not found")
        with pytest.raises(DiscoveryError) as exc_info:
            await OIDCDiscoveryClient(source).discover_auth_methods(server())
        assert exc_info.value.server_id == "S1"
        assert isinstance(exc_info.value.cause, CommandError)

    @pytest.mark.asyncio
    async def test_verify_oidc_support(self):
        assert await OIDCDiscoveryClient(FakeAuthMethods()).verify_oidc_support(server())
        assert not await OIDCDiscoveryClient(FakeAuthMethods([])).verify_oidc_support(server())


class TestIssuerMetadata:
    """Test well-known URL resolution and metadata fetch."""

    def test_well_known_url_from_issuer(self):
        client = OIDCDiscoveryClient(FakeAuthMethods())
        assert client.well_known_url(server(issuer=ISSUER)) == WELL_KNOWN

    def test_explicit_discovery_url_wins(self):
        client = OIDCDiscoveryClient(FakeAuthMethods())
        explicit = "https://other.example.com/config"
        assert client.well_known_url(server(issuer=ISSUER, discovery_url=explicit)) == explicit

    def test_no_hints(self):
        assert OIDCDiscoveryClient(FakeAuthMethods()).well_known_url(server()) is None

    def test_reported_issuer_is_used_without_hints(self):
        client = OIDCDiscoveryClient(FakeAuthMethods())
        assert client.well_known_url(server(), ISSUER) == WELL_KNOWN

    def test_configured_issuer_beats_reported_one(self):
        client = OIDCDiscoveryClient(FakeAuthMethods())
        assert client.well_known_url(server(issuer=ISSUER), "https://elsewhere.example.com") == WELL_KNOWN

    @pytest.mark.asyncio
    async def test_fetch_issuer_metadata(self):
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, json={"issuer": ISSUER, "authorization_endpoint": f"{ISSUER}/auth"})

        client = OIDCDiscoveryClient(FakeAuthMethods(), transport=httpx.MockTransport(handler))
        metadata = await client.fetch_issuer_metadata(server(issuer=ISSUER))

        assert metadata["issuer"] == ISSUER
        assert requested == [WELL_KNOWN]

    @pytest.mark.asyncio
    async def test_http_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        client = OIDCDiscoveryClient(FakeAuthMethods(), transport=transport)
        with pytest.raises(DiscoveryError, match="Failed to fetch"):
            await client.fetch_issuer_metadata(server(issuer=ISSUER))

    @pytest.mark.asyncio
    async def test_document_without_issuer(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"jwks_uri": "x"}))
        client = OIDCDiscoveryClient(FakeAuthMethods(), transport=transport)
        with pytest.raises(DiscoveryError, match="no issuer"):
            await client.fetch_issuer_metadata(server(issuer=ISSUER))

    @pytest.mark.asyncio
    async def test_nothing_configured(self):
        with pytest.raises(DiscoveryError):
            await OIDCDiscoveryClient(FakeAuthMethods()).fetch_issuer_metadata(server())
