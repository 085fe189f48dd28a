"""Token storage: in process memory or in the OS credential store."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import keyring
import structlog
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from gatehouse.core.exceptions import TokenStoreError
from gatehouse.models import Token, parse_timestamp

logger = structlog.get_logger(component="tokens")

KEYRING_SERVICE = "gatehouse"


class MemoryTokenStore:
    """Token store that never leaves process memory.

    Expired tokens are dropped when read.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, Token] = {}
        self._lock = asyncio.Lock()

    async def store(self, token: Token) -> None:
        async with self._lock:
            self._tokens[token.server_id] = token

    async def retrieve(self, server_id: str) -> Token | None:
        async with self._lock:
            token = self._tokens.get(server_id)
            if token is None:
                return None
            if token.is_expired:
                del self._tokens[server_id]
                return None
            return token

    async def clear(self, server_id: str) -> None:
        async with self._lock:
            self._tokens.pop(server_id, None)

    async def count(self) -> int:
        async with self._lock:
            return len(self._tokens)


def token_to_dict(token: Token) -> dict[str, Any]:
    return {
        "value": token.value,
        "server_id": token.server_id,
        "user_id": token.user_id,
        "scope_id": token.scope_id,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
        "created_at": token.created_at.isoformat(),
    }


def token_from_dict(data: dict[str, Any]) -> Token:
    """Rebuild a token from `token_to_dict` output.

    Raises:
        KeyError: If `value` or `server_id` is missing
    """
    fields: dict[str, Any] = {
        "value": data["value"],
        "server_id": data["server_id"],
        "user_id": data.get("user_id") or "",
        "scope_id": data.get("scope_id"),
        "expires_at": parse_timestamp(data.get("expires_at")),
    }
    created_at = parse_timestamp(data.get("created_at"))
    if created_at is not None:
        fields["created_at"] = created_at
    return Token(**fields)


class KeyringTokenStore:
    """Tokens kept in the OS credential store, one entry per server.

    Entries live under the `gatehouse` service with the server id as the
    account name, so a login survives the process that made it. Entries
    that are expired or unreadable are deleted when read.

    Keyring calls run in a worker thread.
    """

    def __init__(self, service: str = KEYRING_SERVICE, backend: KeyringBackend | None = None) -> None:
        self.service = service
        self._backend = backend
        self._lock = asyncio.Lock()

    def _keyring(self) -> Any:
        return self._backend if self._backend is not None else keyring.get_keyring()

    async def store(self, token: Token) -> None:
        """Save a token, replacing the server's previous one.

        Raises:
            TokenStoreError: If the credential store rejected the write
        """
        payload = json.dumps(token_to_dict(token))
        async with self._lock:
            try:
                await asyncio.to_thread(
                    self._keyring().set_password, self.service, token.server_id, payload
                )
            except KeyringError as e:
                raise TokenStoreError(
                    "Failed to save token to the credential store",
                    server_id=token.server_id,
                    cause=e,
                ) from e
        logger.debug("Token stored", server_id=token.server_id, service=self.service)

    async def retrieve(self, server_id: str) -> Token | None:
        async with self._lock:
            try:
                payload = await asyncio.to_thread(
                    self._keyring().get_password, self.service, server_id
                )
            except KeyringError as e:
                logger.warning("Credential store unavailable", server_id=server_id, error=type(e).__name__)
                return None
            if payload is None:
                return None

            try:
                token = token_from_dict(json.loads(payload))
            except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
                logger.warning("Discarding unreadable stored token", server_id=server_id)
                await self._delete(server_id)
                return None

            if token.server_id != server_id or token.is_expired:
                await self._delete(server_id)
                return None
            return token

    async def clear(self, server_id: str) -> None:
        async with self._lock:
            await self._delete(server_id)

    async def _delete(self, server_id: str) -> None:
        try:
            await asyncio.to_thread(self._keyring().delete_password, self.service, server_id)
        except PasswordDeleteError:
            return
        except KeyringError as e:
            logger.warning("Failed to delete stored token", server_id=server_id, error=type(e).__name__)
            return
        logger.debug("Stored token deleted", server_id=server_id, service=self.service)
