"""Token/scope resolution.

Zero scopes resolve to no scope, one scope is selected automatically, and
more than one always needs an explicit choice. There is no default in the
ambiguous case: binding a token to the wrong scope is an authorization
mistake, not a convenience.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from gatehouse.core.exceptions import AuthError, ScopeSelectionRequired
from gatehouse.models import Scope, Token


@dataclass(frozen=True)
class ScopeResolution:
    """A finalized (token, scope) pair. The token is bound to the scope id."""

    token: Token = field(repr=False)
    scope: Scope | None

    @property
    def scope_id(self) -> str | None:
        return self.scope.id if self.scope else None


def resolve_scope(
    token: Token,
    scopes: Sequence[Scope],
    choice: str | None = None,
) -> ScopeResolution:
    """Bind a token to its scope.

    Args:
        token: Token returned by a completed login
        scopes: Scopes visible to that token, in discovery order
        choice: Explicit scope id picked by the caller

    Raises:
        ScopeSelectionRequired: More than one scope and no choice given
        AuthError: The choice is not one of the available scopes
    """
    if not scopes:
        return ScopeResolution(token=token.with_scope(None), scope=None)

    if choice is not None:
        for scope in scopes:
            if scope.id == choice:
                return ScopeResolution(token=token.with_scope(scope.id), scope=scope)
        raise AuthError(
            f"Scope '{choice}' is not available",
            server_id=token.server_id,
        )

    if len(scopes) == 1:
        only = scopes[0]
        return ScopeResolution(token=token.with_scope(only.id), scope=only)

    raise ScopeSelectionRequired(
        f"{len(scopes)} scopes available, choose one",
        scope_ids=[s.id for s in scopes],
        server_id=token.server_id,
    )
