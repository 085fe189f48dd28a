"""Tests for the error taxonomy and log redaction."""

from __future__ import annotations

import structlog
from structlog.testing import capture_logs

from gatehouse.core.exceptions import (
    AuthorizationError,
    CommandError,
    GatehouseError,
    ScopeSelectionRequired,
    TargetConnectionError,
    format_error_for_user,
    scrub_secrets,
)
from gatehouse.core.logging import emit, redact_secrets

TOKEN = "at_1234567890_secretvalue"


class TestScrubSecrets:
    """Test scrub_secrets()."""

    def test_masks_boundary_tokens(self):
        assert TOKEN not in scrub_secrets(f"bad token {TOKEN} rejected")

    def test_masks_assignments(self):
        scrubbed = scrub_secrets("error: authz_token=abc123 password: hunter2")
        assert "abc123" not in scrubbed
        assert "hunter2" not in scrubbed

    def test_leaves_plain_text_alone(self):
        assert scrub_secrets("target not found") == "target not found"


class TestGatehouseError:
    """Test error context and user formatting."""

    def test_message_is_scrubbed(self):
        error = CommandError(f"boundary failed: {TOKEN}", server_id="S1")
        assert TOKEN not in str(error)
        assert error.context() == {"code": "command", "server_id": "S1"}

    def test_context_includes_cause(self):
        error = GatehouseError("wrapped", cause=OSError("no such file"))
        assert error.context()["cause"] == "no such file"

    def test_phases(self):
        assert AuthorizationError("denied").phase == "authorize"
        assert TargetConnectionError("no proxy").phase == "establish"

    def test_scope_selection_lists_scopes(self):
        error = ScopeSelectionRequired("pick one", scope_ids=["A", "B"], server_id="S1")
        assert error.scope_ids == ["A", "B"]
        assert error.code == "scope_required"

    def test_format_error_for_user(self):
        error = AuthorizationError("Access denied", server_id="S1", target_id="T1")
        message = format_error_for_user(error)
        assert message.startswith("[server S1, target T1] Access denied")
        assert "access to this target" in message

    def test_format_plain_exception(self):
        assert format_error_for_user(RuntimeError(f"boom {TOKEN}")) == "boom at_***"
        assert format_error_for_user(RuntimeError()) == "RuntimeError"


class TestLogging:
    """Test the redaction processor and the emit sink."""

    def test_redact_secrets(self):
        event = {"event": "connected", "token": TOKEN, "authz_token": "x", "server_id": "S1"}
        redacted = redact_secrets(None, "info", event)
        assert redacted["token"] == "***"
        assert redacted["authz_token"] == "***"
        assert redacted["server_id"] == "S1"
        assert redacted["event"] == "connected"

    def test_redact_keeps_missing_values(self):
        assert redact_secrets(None, "info", {"event": "x", "token": None})["token"] is None

    def test_emit_routes_level_and_component(self):
        structlog.reset_defaults()
        with capture_logs() as logs:
            emit("warning", "engine", "Token expired", {"server_id": "S1"})
        assert logs == [
            {"event": "Token expired", "log_level": "warning", "component": "engine", "server_id": "S1"}
        ]

    def test_emit_unknown_level_falls_back_to_info(self):
        structlog.reset_defaults()
        with capture_logs() as logs:
            emit("chatty", "cli", "hello")
        assert logs[0]["log_level"] == "info"
