"""OIDC discovery: auth methods and issuer metadata for a server."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from authlib.oidc.discovery import get_well_known_url

from gatehouse.core.config import ServerDescriptor
from gatehouse.core.exceptions import DiscoveryError, GatehouseError
from gatehouse.engine.protocols import AuthMethodSource
from gatehouse.models import AuthMethod

logger = structlog.get_logger(component="discovery")


class OIDCDiscoveryClient:
    """Resolves the OIDC auth methods a server offers.

    Methods come back in the server's own order; callers that need a single
    method take the first one.
    """

    def __init__(
        self,
        source: AuthMethodSource,
        http_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._source = source
        self._http_timeout = http_timeout
        self._transport = transport

    async def discover_auth_methods(self, server: ServerDescriptor) -> list[AuthMethod]:
        """Return the OIDC auth methods for a server.

        Raises:
            DiscoveryError: The listing failed, or no OIDC method is available.
        """
        logger.info("Discovering auth methods", server_id=server.id, url=server.url)
        try:
            methods = await self._source.list_auth_methods(server)
        except DiscoveryError:
            raise
        except (GatehouseError, OSError) as e:
            raise DiscoveryError(
                f"Failed to discover auth methods: {e}",
                server_id=server.id,
                cause=e,
            ) from e

        oidc = [m for m in methods if m.is_oidc]
        logger.info(
            "Discovered auth methods",
            server_id=server.id,
            total=len(methods),
            oidc=len(oidc),
        )
        if not oidc:
            raise DiscoveryError(
                "No OIDC authentication method available on this server",
                server_id=server.id,
            )
        return oidc

    async def verify_oidc_support(self, server: ServerDescriptor) -> bool:
        """True if the server offers at least one OIDC method."""
        try:
            await self.discover_auth_methods(server)
        except DiscoveryError as e:
            logger.warning("OIDC not available", server_id=server.id, error=e.message)
            return False
        return True

    def well_known_url(self, server: ServerDescriptor, issuer: str | None = None) -> str | None:
        """Configured discovery URL, else the well-known URL of the configured or given issuer."""
        hints = server.oidc
        if hints.discovery_url:
            return hints.discovery_url
        issuer = hints.issuer or issuer
        if issuer:
            return get_well_known_url(issuer, external=True)
        return None

    async def fetch_issuer_metadata(
        self,
        server: ServerDescriptor,
        issuer: str | None = None,
    ) -> dict[str, Any]:
        """Fetch the issuer's OpenID configuration document.

        `issuer` is used when the server config names neither a discovery
        URL nor an issuer, typically the one reported by the auth method.

        Raises:
            DiscoveryError: No discovery URL is known, or the fetch failed.
        """
        url = self.well_known_url(server, issuer)
        if url is None:
            raise DiscoveryError(
                "No OIDC discovery URL or issuer configured",
                server_id=server.id,
            )

        client_kwargs: dict[str, Any] = {"timeout": self._http_timeout}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.get(url)
                response.raise_for_status()
                metadata = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DiscoveryError(
                f"Failed to fetch OIDC configuration from {url}: {e}",
                server_id=server.id,
                cause=e,
            ) from e

        if not isinstance(metadata, dict) or "issuer" not in metadata:
            raise DiscoveryError(
                f"OIDC configuration at {url} has no issuer",
                server_id=server.id,
            )
        logger.debug("Fetched issuer metadata", server_id=server.id, issuer=metadata["issuer"])
        return metadata
