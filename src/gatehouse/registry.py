"""Registry of configured servers."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

import structlog

from gatehouse.core.config import ServerDescriptor, load_config_from_file, parse_servers
from gatehouse.core.exceptions import ConfigError

logger = structlog.get_logger(component="registry")


class ServerRegistry:
    """Read-only, validated view of the configured servers.

    Entries that failed validation are kept in `errors` so callers can report
    them without losing the servers that did load.
    """

    def __init__(
        self,
        servers: Iterable[ServerDescriptor] = (),
        errors: Iterable[ConfigError] = (),
    ) -> None:
        self._servers: dict[str, ServerDescriptor] = {}
        for server in servers:
            if server.id in self._servers:
                raise ConfigError(f"Duplicate server id '{server.id}'", server_id=server.id)
            self._servers[server.id] = server
        self.errors: list[ConfigError] = list(errors)

    def __iter__(self) -> Iterator[ServerDescriptor]:
        return iter(self._servers.values())

    def __len__(self) -> int:
        return len(self._servers)

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._servers

    def get(self, server_id: str) -> ServerDescriptor:
        """Return a server by id.

        Raises:
            ConfigError: If the server is unknown, or is listed with a config error.
        """
        server = self._servers.get(server_id)
        if server is not None:
            return server
        for error in self.errors:
            if error.server_id == server_id:
                raise error
        raise ConfigError(f"Server with id '{server_id}' not found", server_id=server_id)

    def enabled(self) -> list[ServerDescriptor]:
        return [s for s in self._servers.values() if s.enabled]


def load_servers(path: str | Path) -> ServerRegistry:
    """Load and validate the server list file.

    Raises:
        ConfigError: If the file is missing or cannot be parsed at all.
    """
    try:
        raw = load_config_from_file(path)
    except (FileNotFoundError, ValueError) as e:
        raise ConfigError(str(e), cause=e) from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Server list in {path} must be a mapping with a 'servers' key")

    servers, errors = parse_servers(raw)
    for error in errors:
        logger.warning("Skipping invalid server entry", **error.context(), error=error.message)
    logger.info("Loaded servers", path=str(path), count=len(servers), invalid=len(errors))
    return ServerRegistry(servers, errors)
