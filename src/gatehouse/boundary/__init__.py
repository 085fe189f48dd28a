"""Boundary CLI adapter."""

from .client import BoundaryClient, BoundaryProxy, parse_proxy_listing
from .runner import BoundaryRunner, CommandResult

__all__ = [
    "BoundaryClient",
    "BoundaryProxy",
    "BoundaryRunner",
    "CommandResult",
    "parse_proxy_listing",
]
