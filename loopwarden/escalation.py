"""
Escalation Handler
==================

Notifies humans and external systems about serious interventions.

Channels:
- desktop_notification: `notify-send` (only when notifications are enabled)
- issue: Gitea-compatible issue tracker (critical and emergency only)
- webhook: JSON POST to a configured URL (critical and emergency only)

Info and warning escalations never leave the machine.
Channel failures never propagate. Each one is recorded as a ChannelError on
the EscalationResult and logged, so an unavailable channel cannot stall or
crash the supervised loop.

Usage:
    from loopwarden.escalation import EscalationHandler, EscalationContext, EscalationLevel

    handler = EscalationHandler(config.escalation)
    result = handler.escalate(EscalationLevel.CRITICAL, EscalationContext(
        loop_id="loop-1",
        task_description="Fix the auth tests",
        iteration_number=7,
        reason="Loop stuck: same error repeated 6 times",
    ))
    if result.errors:
        ...
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from loopwarden.bounded_log import BoundedLog
from loopwarden.config import EscalationConfig
from loopwarden.models import (
    Detection,
    InterventionLogEntry,
    detection_from_dict,
    intervention_from_dict,
    utc_now,
)

logger = logging.getLogger(__name__)

APP_NAME = "Loop Warden"

CHANNEL_DESKTOP = "desktop_notification"
CHANNEL_ISSUE = "issue"
CHANNEL_WEBHOOK = "webhook"


class EscalationLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def contacts_external(self) -> bool:
        """Issue tracker and webhook are only used at critical and emergency."""
        return self in (EscalationLevel.CRITICAL, EscalationLevel.EMERGENCY)

    @property
    def urgency(self) -> str:
        """notify-send urgency for this level."""
        return "critical" if self.contacts_external else "normal"


@dataclass(frozen=True)
class EscalationContext:
    """What is being escalated, and for which loop."""
    loop_id: str
    task_description: str
    iteration_number: int
    reason: str
    detection: Optional[Detection] = None
    intervention: Optional[InterventionLogEntry] = None

    def to_dict(self) -> dict:
        return {
            "loopId": self.loop_id,
            "taskDescription": self.task_description,
            "iterationNumber": self.iteration_number,
            "reason": self.reason,
            "detection": self.detection.to_dict() if self.detection else None,
            "intervention": self.intervention.to_dict() if self.intervention else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EscalationContext":
        return cls(
            loop_id=data.get("loopId", ""),
            task_description=data.get("taskDescription", ""),
            iteration_number=data.get("iterationNumber", 0),
            reason=data.get("reason", ""),
            detection=detection_from_dict(data["detection"]) if data.get("detection") else None,
            intervention=intervention_from_dict(data["intervention"]) if data.get("intervention") else None,
        )


@dataclass(frozen=True)
class ChannelError:
    """A failed delivery on one channel."""
    channel: str
    error: str

    def to_dict(self) -> dict:
        return {"channel": self.channel, "error": self.error}


@dataclass
class EscalationResult:
    """Outcome of one escalate() call."""
    level: EscalationLevel
    context: EscalationContext
    timestamp: str = field(default_factory=utc_now)
    channels: List[str] = field(default_factory=list)  # channels that succeeded
    errors: List[ChannelError] = field(default_factory=list)
    issue_number: Optional[int] = None
    issue_url: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "level": self.level.value,
            "context": self.context.to_dict(),
            "timestamp": self.timestamp,
            "channels": list(self.channels),
            "errors": [e.to_dict() for e in self.errors],
            "issueNumber": self.issue_number,
            "issueUrl": self.issue_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EscalationResult":
        return cls(
            level=EscalationLevel(data["level"]),
            context=EscalationContext.from_dict(data.get("context") or {}),
            timestamp=data.get("timestamp", ""),
            channels=list(data.get("channels", [])),
            errors=[ChannelError(e.get("channel", ""), e.get("error", "")) for e in data.get("errors", [])],
            issue_number=data.get("issueNumber"),
            issue_url=data.get("issueUrl"),
        )


class EscalationHandler:
    """
    Sends escalations to the configured channels and keeps a bounded log.
    """

    def __init__(
        self,
        config: Optional[EscalationConfig] = None,
        max_log_size: int = 100,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            config: Channel configuration
            max_log_size: Escalation log capacity
            http_client: Client used for issue and webhook calls (one per call if omitted)
        """
        self.config = config or EscalationConfig()
        self.config.validate()
        self.http_client = http_client
        self._log: BoundedLog[EscalationResult] = BoundedLog(max_log_size)

    def escalate(self, level: EscalationLevel, context: EscalationContext) -> EscalationResult:
        """
        Escalate through every applicable channel. Never raises.

        Returns:
            EscalationResult with the channels that succeeded and any errors
        """
        result = EscalationResult(level=level, context=context)
        logger.info("Escalating %s for loop %s: %s", level.value, context.loop_id, context.reason)

        if self.config.enable_notifications:
            if self.send_desktop_notification(level, context):
                result.channels.append(CHANNEL_DESKTOP)
            else:
                result.errors.append(ChannelError(CHANNEL_DESKTOP, "desktop notifier unavailable or failed"))

        if level.contacts_external:
            try:
                issue = self.create_issue(
                    title=f"[{APP_NAME}] {level.value.upper()}: {context.reason}",
                    body=self.build_issue_body(context),
                    labels=["loopwarden", level.value, "automated"],
                )
            except Exception as exc:
                result.errors.append(ChannelError(CHANNEL_ISSUE, str(exc)))
            else:
                result.channels.append(CHANNEL_ISSUE)
                result.issue_number = issue.get("number")
                result.issue_url = issue.get("url")

        if level.contacts_external and self.config.webhook_url:
            try:
                self.send_webhook(level, context)
            except Exception as exc:
                result.errors.append(ChannelError(CHANNEL_WEBHOOK, str(exc)))
            else:
                result.channels.append(CHANNEL_WEBHOOK)

        for error in result.errors:
            logger.warning("Escalation channel %s failed: %s", error.channel, error.error)

        self._log.append(result)
        return result

    # =========================================================================
    # Channels
    # =========================================================================

    def send_desktop_notification(self, level: EscalationLevel, context: EscalationContext) -> bool:
        """
        Best-effort desktop notification.

        Returns:
            True if the notifier ran and exited cleanly; any failure returns False
        """
        title = f"{APP_NAME}: {level.value.upper()}"
        message = f"{context.reason}\n\nLoop: {context.loop_id}\nIteration: {context.iteration_number}"

        try:
            completed = subprocess.run(
                [
                    self.config.notifier_command,
                    "--urgency", level.urgency,
                    "--app-name", APP_NAME,
                    title,
                    message,
                ],
                capture_output=True,
                timeout=self.config.timeout_seconds,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Desktop notification failed: %s", exc)
            return False
        return completed.returncode == 0

    def get_token(self) -> Optional[str]:
        """Read the issue tracker token, or None if missing or unreadable."""
        path = Path(self.config.token_path).expanduser()
        if not path.exists():
            return None
        try:
            token = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("Error reading token file %s: %s", path, exc)
            return None
        return token or None

    def create_issue(self, title: str, body: str, labels: Optional[List[str]] = None) -> dict:
        """
        Open an issue on the configured repository.

        Returns:
            {"number", "url", "id"} of the created issue

        Raises:
            RuntimeError: No repository or token configured
            httpx.HTTPError: The request failed or returned an error status
        """
        if not self.config.repository:
            raise RuntimeError("No issue repository configured")

        token = self.get_token()
        if not token:
            raise RuntimeError(f"Issue tracker token not found at {self.config.token_path}")

        owner, repo = self.config.repository.split("/")
        url = f"{self.config.issue_api_url.rstrip('/')}/repos/{owner}/{repo}/issues"
        response = self._post(
            url,
            json={"title": title, "body": body, "labels": list(labels or [])},
            headers={"Authorization": f"token {token}"},
        )
        response.raise_for_status()

        data = response.json()
        return {"number": data.get("number"), "url": data.get("html_url"), "id": data.get("id")}

    def send_webhook(self, level: EscalationLevel, context: EscalationContext) -> None:
        """POST the escalation as JSON. Raises on transport or HTTP errors."""
        if not self.config.webhook_url:
            return
        payload = {"level": level.value, "context": context.to_dict(), "timestamp": utc_now()}
        response = self._post(self.config.webhook_url, json=payload)
        response.raise_for_status()

    def _post(self, url: str, **kwargs) -> httpx.Response:
        if self.http_client is not None:
            return self.http_client.post(url, timeout=self.config.timeout_seconds, **kwargs)
        with httpx.Client(timeout=self.config.timeout_seconds) as client:
            return client.post(url, **kwargs)

    def build_issue_body(self, context: EscalationContext) -> str:
        """Markdown issue body for an escalation."""
        lines = [
            "## Loop Warden Alert",
            "",
            f"**Loop ID:** {context.loop_id}",
            f"**Task:** {context.task_description}",
            f"**Iteration:** {context.iteration_number}",
            f"**Timestamp:** {utc_now()}",
            "",
            "### Issue",
            "",
            context.reason,
            "",
        ]

        detection = context.detection
        if detection is not None:
            lines += [
                "### Detection",
                "",
                f"- **Type:** {detection.type.value}",
                f"- **Severity:** {detection.severity.value}",
                f"- **Message:** {detection.message}",
                "",
                "**Evidence:**",
                "```json",
                json.dumps(detection.evidence, indent=2, default=str),
                "```",
                "",
            ]
            if detection.recommendations:
                lines.append("**Recommendations:**")
                lines += [f"{idx}. {rec}" for idx, rec in enumerate(detection.recommendations, 1)]
                lines.append("")

        intervention = context.intervention
        if intervention is not None:
            level = intervention.level if isinstance(intervention.level, str) else intervention.level.value
            lines += [
                "### Intervention",
                "",
                f"- **Level:** {level}",
                f"- **Reason:** {intervention.reason}",
                "",
            ]

        lines += [
            "### Actions Required",
            "",
            "- [ ] Review loop state and iteration history",
            "- [ ] Decide whether the loop should continue or abort",
            "- [ ] Resume or abort the loop with `loopwarden resume` / `loopwarden abort`",
            "",
            "---",
            "*Automated escalation from Loop Warden*",
            "",
        ]
        return "\n".join(lines)

    # =========================================================================
    # Log
    # =========================================================================

    def get_log(self, limit: Optional[int] = None) -> List[EscalationResult]:
        return self._log.recent(limit)

    def get_summary(self) -> dict:
        """Counts by level, by successful channel, and failures by channel."""
        by_level: Dict[str, int] = {}
        by_channel: Dict[str, int] = {}
        failures: Dict[str, int] = {}
        for result in self._log:
            by_level[result.level.value] = by_level.get(result.level.value, 0) + 1
            for channel in result.channels:
                by_channel[channel] = by_channel.get(channel, 0) + 1
            for error in result.errors:
                failures[error.channel] = failures.get(error.channel, 0) + 1

        return {
            "total": len(self._log),
            "byLevel": by_level,
            "byChannel": by_channel,
            "failures": failures,
        }

    def clear_log(self) -> None:
        self._log.clear()

    def export_state(self) -> dict:
        return {"escalationLog": [result.to_dict() for result in self._log]}

    def import_state(self, state: dict) -> None:
        if "escalationLog" in state:
            self._log.clear()
            self._log.extend(EscalationResult.from_dict(entry) for entry in state["escalationLog"])
