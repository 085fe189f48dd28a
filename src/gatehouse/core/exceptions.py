"""Error taxonomy for the access engine.

Every error raised by the engine derives from GatehouseError and carries the
server id, the target id where one applies, and the underlying cause. None of
them ever carries a token value: messages built from CLI output go through
scrub_secrets() first.
"""

from __future__ import annotations

import re

# Boundary auth tokens look like at_XXXXXXXXXX_<base58 blob>.
_TOKEN_PATTERN = re.compile(r"\bat_[A-Za-z0-9]{10}_[A-Za-z0-9]+")
_ASSIGNMENT_PATTERN = re.compile(
    r"(?i)((?:authz[_-]?)?token|secret|password)(\s*[=:]\s*)(\S+)"
)


def scrub_secrets(text: str) -> str:
    """Mask anything in free-form text that looks like a credential."""
    text = _TOKEN_PATTERN.sub("at_***", text)
    return _ASSIGNMENT_PATTERN.sub(r"\1\2***", text)


class GatehouseError(Exception):
    """Base class for all engine errors."""

    code = "error"

    def __init__(
        self,
        message: str,
        *,
        server_id: str | None = None,
        target_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = scrub_secrets(message)
        self.server_id = server_id
        self.target_id = target_id
        self.cause = cause
        super().__init__(self.message)

    def context(self) -> dict[str, str]:
        """Diagnostic context suitable for logging."""
        ctx = {"code": self.code}
        if self.server_id:
            ctx["server_id"] = self.server_id
        if self.target_id:
            ctx["target_id"] = self.target_id
        if self.cause is not None:
            ctx["cause"] = scrub_secrets(str(self.cause)) or type(self.cause).__name__
        return ctx


class ConfigError(GatehouseError):
    """Bad or missing server configuration. Fatal to that server only."""

    code = "config"


class CommandError(GatehouseError):
    """The wrapped CLI could not be started or did not finish in time."""

    code = "command"


class DiscoveryError(GatehouseError):
    """Auth method discovery failed or found nothing usable."""

    code = "discovery"


class AuthError(GatehouseError):
    """The identity provider rejected the login, or the scope is unresolved."""

    code = "auth"


class ScopeSelectionRequired(AuthError):
    """More than one scope is available and none was chosen."""

    code = "scope_required"

    def __init__(self, message: str, *, scope_ids: list[str], **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.scope_ids = scope_ids


class AuthTimeoutError(GatehouseError):
    """The polling budget ran out before the login finished."""

    code = "timeout"


class TransientError(GatehouseError):
    """A recoverable failure (network, busy server) while polling."""

    code = "transient"


class TargetDiscoveryError(GatehouseError):
    """Authenticated, but listing targets failed."""

    code = "target_discovery"


class AuthorizationError(GatehouseError):
    """Access to a specific target was denied."""

    code = "authorization"
    phase = "authorize"


class TargetConnectionError(GatehouseError):
    """The local proxy could not be established after authorization."""

    code = "connection"
    phase = "establish"


class TokenStoreError(GatehouseError):
    """The OS credential store could not be written."""

    code = "token_store"


_HINTS: dict[str, str] = {
    "config": "Check the server list file.",
    "command": "Check that the boundary CLI is installed and on PATH.",
    "discovery": "Check the server address and try again.",
    "auth": "Log in again.",
    "scope_required": "Choose one of the available scopes.",
    "timeout": "The browser login was not completed in time. Try again.",
    "target_discovery": "Try listing targets again.",
    "authorization": "You may not have access to this target.",
    "connection": "Try connecting to the target again.",
    "token_store": "Check that a system keyring is available, or set GATEHOUSE_TOKEN_STORE=memory.",
}


def format_error_for_user(error: BaseException) -> str:
    """Render an error as a one-line, actionable message."""
    if isinstance(error, GatehouseError):
        where = []
        if error.server_id:
            where.append(f"server {error.server_id}")
        if error.target_id:
            where.append(f"target {error.target_id}")
        prefix = f"[{', '.join(where)}] " if where else ""
        hint = _HINTS.get(error.code)
        return f"{prefix}{error.message}" + (f" {hint}" if hint else "")
    return scrub_secrets(str(error)) or type(error).__name__
