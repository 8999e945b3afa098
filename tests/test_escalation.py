"""
Tests for the Escalation Handler
================================

Tests for loopwarden/escalation.py

HTTP channels use httpx.MockTransport; the desktop notifier is patched.
"""

import json
import subprocess

import httpx
import pytest

from loopwarden.config import EscalationConfig
from loopwarden.escalation import (
    CHANNEL_DESKTOP,
    CHANNEL_ISSUE,
    CHANNEL_WEBHOOK,
    EscalationContext,
    EscalationHandler,
    EscalationLevel,
    EscalationResult,
)
from loopwarden.models import PauseIntervention, Severity, StuckDetection


def make_context(**overrides):
    detection = StuckDetection(
        severity=Severity.CRITICAL,
        message="Loop stuck: same error repeated 6 times with minimal progress",
        recommendations=("Change approach or strategy",),
        repeated_error="TimeoutError",
        occurrences=6,
    )
    values = dict(
        loop_id="loop-42",
        task_description="Stabilize the payment webhook tests",
        iteration_number=6,
        reason=detection.message,
        detection=detection,
        intervention=PauseIntervention(reason=detection.message, detection=detection, pause_reason="stuck"),
    )
    values.update(overrides)
    return EscalationContext(**values)


class Recorder:
    """MockTransport handler that records requests and returns a fixed response."""

    def __init__(self, status=201, body=None, error=None):
        self.status = status
        self.body = body if body is not None else {"number": 42, "html_url": "https://git.example/acme/app/issues/42", "id": 9}
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, json=self.body)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def token_file(temp_project):
    path = temp_project / "token"
    path.write_text("s3cret\n")
    return path


def make_handler(recorder, token_file=None, **config):
    values = dict(enable_notifications=False)
    if token_file is not None:
        values.update(repository="acme/app", token_path=str(token_file))
    values.update(config)
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return EscalationHandler(EscalationConfig(**values), http_client=client)


@pytest.fixture
def notifier_calls(monkeypatch):
    """Patch subprocess.run and record notifier invocations."""
    calls = []

    def fake_run(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0)

    monkeypatch.setattr("loopwarden.escalation.subprocess.run", fake_run)
    return calls


# =============================================================================
# Issue Channel
# =============================================================================

class TestIssueChannel:
    """Tests for issue creation."""

    def test_critical_opens_issue(self, token_file):
        """Critical escalations create an issue with auth and labels."""
        recorder = Recorder()
        handler = make_handler(recorder, token_file)

        result = handler.escalate(EscalationLevel.CRITICAL, make_context())

        assert result.channels == [CHANNEL_ISSUE]
        assert result.issue_number == 42
        assert result.issue_url.endswith("/issues/42")
        assert result.succeeded

        request = recorder.requests[0]
        assert request.url.path.endswith("/repos/acme/app/issues")
        assert request.headers["Authorization"] == "token s3cret"
        payload = json.loads(request.content)
        assert payload["title"].startswith("[Loop Warden] CRITICAL:")
        assert payload["labels"] == ["loopwarden", "critical", "automated"]

    def test_warning_does_not_open_issue(self, token_file):
        """Only critical and emergency open issues."""
        recorder = Recorder()
        handler = make_handler(recorder, token_file)

        result = handler.escalate(EscalationLevel.WARNING, make_context())

        assert recorder.requests == []
        assert result.channels == []
        assert result.errors == []

    def test_server_error_is_recorded(self, token_file):
        """An HTTP 500 becomes a channel error, not an exception."""
        handler = make_handler(Recorder(status=500, body={"message": "boom"}), token_file)

        result = handler.escalate(EscalationLevel.EMERGENCY, make_context())

        assert result.channels == []
        assert [e.channel for e in result.errors] == [CHANNEL_ISSUE]
        assert result.issue_number is None

    def test_connection_error_is_recorded(self, token_file):
        """Transport failures are captured too."""
        handler = make_handler(Recorder(error=httpx.ConnectError("connection refused")), token_file)

        result = handler.escalate(EscalationLevel.CRITICAL, make_context())

        assert result.errors[0].channel == CHANNEL_ISSUE
        assert "connection refused" in result.errors[0].error

    def test_missing_token(self, temp_project):
        """A missing token file is reported as an issue channel error."""
        recorder = Recorder()
        handler = make_handler(recorder, temp_project / "missing-token")

        result = handler.escalate(EscalationLevel.CRITICAL, make_context())

        assert recorder.requests == []
        assert "token not found" in result.errors[0].error

    def test_create_issue_without_repository(self):
        """create_issue() itself raises when no repository is configured."""
        handler = make_handler(Recorder())

        with pytest.raises(RuntimeError):
            handler.create_issue("title", "body")


# =============================================================================
# Desktop & Webhook Channels
# =============================================================================

class TestDesktopChannel:
    """Tests for desktop notifications."""

    def test_urgency_follows_level(self, notifier_calls):
        """Critical uses critical urgency, warning uses normal."""
        handler = make_handler(Recorder(), enable_notifications=True)

        handler.escalate(EscalationLevel.WARNING, make_context())
        handler.escalate(EscalationLevel.CRITICAL, make_context())

        assert notifier_calls[0][:3] == ["notify-send", "--urgency", "normal"]
        assert notifier_calls[1][:3] == ["notify-send", "--urgency", "critical"]
        assert "Loop Warden: WARNING" in notifier_calls[0]

    def test_disabled_notifications(self, notifier_calls):
        """Nothing is launched when notifications are off."""
        handler = make_handler(Recorder())

        handler.escalate(EscalationLevel.INFO, make_context())

        assert notifier_calls == []

    def test_missing_notifier(self, monkeypatch):
        """A notifier that cannot run is recorded, not raised."""
        def broken_run(args, **kwargs):
            raise FileNotFoundError(args[0])

        monkeypatch.setattr("loopwarden.escalation.subprocess.run", broken_run)
        handler = make_handler(Recorder(), enable_notifications=True)

        result = handler.escalate(EscalationLevel.INFO, make_context())

        assert [e.channel for e in result.errors] == [CHANNEL_DESKTOP]
        assert not result.succeeded


class TestWebhookChannel:
    """Tests for the webhook channel."""

    def test_webhook_posts_context(self):
        """Critical escalations are posted to the webhook."""
        recorder = Recorder(status=200, body={})
        handler = make_handler(recorder, webhook_url="https://hooks.example/loopwarden")

        result = handler.escalate(EscalationLevel.CRITICAL, make_context())

        assert result.channels == [CHANNEL_WEBHOOK]
        payload = json.loads(recorder.requests[0].content)
        assert payload["level"] == "critical"
        assert payload["context"]["loopId"] == "loop-42"

    @pytest.mark.parametrize("level", [EscalationLevel.INFO, EscalationLevel.WARNING])
    def test_low_levels_stay_local(self, level):
        """Info and warning never contact the webhook."""
        recorder = Recorder(status=200, body={})
        handler = make_handler(recorder, webhook_url="https://hooks.example/loopwarden")

        result = handler.escalate(level, make_context())

        assert recorder.requests == []
        assert result.channels == []
        assert result.errors == []

    def test_webhook_failure(self):
        """A failing webhook is a channel error."""
        handler = make_handler(Recorder(status=503, body={}), webhook_url="https://hooks.example/x")

        result = handler.escalate(EscalationLevel.EMERGENCY, make_context())

        assert CHANNEL_WEBHOOK in [e.channel for e in result.errors]


# =============================================================================
# Body, Log & Persistence
# =============================================================================

class TestIssueBody:
    """Tests for issue body formatting."""

    def test_body_contents(self):
        """The body names the loop, evidence and intervention."""
        body = make_handler(Recorder()).build_issue_body(make_context())

        assert "## Loop Warden Alert" in body
        assert "**Loop ID:** loop-42" in body
        assert "- **Type:** stuck" in body
        assert '"repeatedError": "TimeoutError"' in body
        assert "1. Change approach or strategy" in body
        assert "- **Level:** pause" in body
        assert "### Actions Required" in body

    def test_body_without_detection(self):
        """Detection and intervention sections are optional."""
        body = make_handler(Recorder()).build_issue_body(
            make_context(detection=None, intervention=None),
        )

        assert "### Detection" not in body
        assert "### Intervention" not in body


class TestLogAndState:
    """Tests for the escalation log."""

    def test_summary(self, token_file):
        """Summary counts levels, channels and failures."""
        handler = make_handler(Recorder(), token_file)
        handler.escalate(EscalationLevel.CRITICAL, make_context())
        handler.escalate(EscalationLevel.INFO, make_context())

        summary = handler.get_summary()

        assert summary["total"] == 2
        assert summary["byLevel"] == {"critical": 1, "info": 1}
        assert summary["byChannel"] == {CHANNEL_ISSUE: 1}
        assert summary["failures"] == {}

    def test_log_is_bounded(self):
        """Old results are evicted past max_log_size."""
        handler = EscalationHandler(EscalationConfig(enable_notifications=False), max_log_size=2)
        for n in range(4):
            handler.escalate(EscalationLevel.INFO, make_context(iteration_number=n))

        assert [r.context.iteration_number for r in handler.get_log()] == [2, 3]

    def test_export_import(self, token_file):
        """Escalation results survive export/import."""
        handler = make_handler(Recorder(), token_file)
        handler.escalate(EscalationLevel.CRITICAL, make_context())

        restored = EscalationHandler(EscalationConfig(enable_notifications=False))
        restored.import_state(handler.export_state())

        result = restored.get_log()[0]
        assert isinstance(result, EscalationResult)
        assert result.issue_number == 42
        assert result.context.detection == make_context().detection
