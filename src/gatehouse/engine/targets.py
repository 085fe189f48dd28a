"""Target discovery for an authenticated session."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from gatehouse.core.config import ServerDescriptor
from gatehouse.core.exceptions import GatehouseError, TargetDiscoveryError
from gatehouse.engine.protocols import TargetSource
from gatehouse.models import Target, Token

logger = structlog.get_logger(component="targets")


def _sort_key(target: Target) -> tuple[str, str]:
    return (target.name.lower(), target.id)


@dataclass(frozen=True)
class TargetListing:
    """Targets visible to one session, sorted by name then id.

    An empty listing is a successful result; check `is_empty` rather than
    catching an error.
    """

    server_id: str
    scope_id: str | None
    targets: tuple[Target, ...] = ()
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        return not self.targets

    def __len__(self) -> int:
        return len(self.targets)

    def __iter__(self) -> Iterator[Target]:
        return iter(self.targets)

    def get(self, target_id: str) -> Target | None:
        for target in self.targets:
            if target.id == target_id:
                return target
        return None

    def find(self, ref: str) -> Target | None:
        """Look a target up by id, then by exact (case-insensitive) name."""
        found = self.get(ref)
        if found is not None:
            return found
        lowered = ref.lower()
        for target in self.targets:
            if target.name.lower() == lowered:
                return target
        return None

    def filter(self, query: str) -> TargetListing:
        """Return the subset matching `query`. A blank query returns everything."""
        if not query.strip():
            return self
        return TargetListing(
            server_id=self.server_id,
            scope_id=self.scope_id,
            targets=tuple(t for t in self.targets if t.matches(query)),
            fetched_at=self.fetched_at,
        )


class TargetDiscoveryClient:
    """Lists targets for a token and remembers the last listing per server."""

    def __init__(self, source: TargetSource) -> None:
        self._source = source
        self._last: dict[str, TargetListing] = {}

    async def discover(
        self,
        server: ServerDescriptor,
        token: Token,
        scope_id: str | None = None,
    ) -> TargetListing:
        """List targets visible to `token`.

        Raises:
            TargetDiscoveryError: The listing failed.
        """
        logger.info("Discovering targets", server_id=server.id, scope_id=scope_id)
        try:
            targets = await self._source.list_targets(server, token, scope_id)
        except TargetDiscoveryError:
            raise
        except (GatehouseError, OSError) as e:
            raise TargetDiscoveryError(
                f"Failed to list targets: {e}",
                server_id=server.id,
                cause=e,
            ) from e

        listing = TargetListing(
            server_id=server.id,
            scope_id=scope_id,
            targets=tuple(sorted(targets, key=_sort_key)),
        )
        self._last[server.id] = listing
        logger.info("Discovered targets", server_id=server.id, count=len(listing))
        return listing

    def last_listing(self, server_id: str) -> TargetListing | None:
        return self._last.get(server_id)

    def forget(self, server_id: str) -> None:
        self._last.pop(server_id, None)
