"""Gatehouse: browser-based OIDC login and target access through Boundary servers."""

__version__ = "0.1.0"
