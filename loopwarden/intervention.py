"""
Intervention System
===================

Turns detections into graduated supervisory responses.

Levels:
- log: record only
- warn: warning text injected into the next prompt
- redirect: warning plus a blunt strategy override
- pause: halt until a human approves resuming
- abort: cancel; requires approval to restart

The level for a detection comes from a fixed (severity, type) table. Pause
state belongs to one InterventionSystem instance, i.e. to one loop.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from loopwarden.bounded_log import BoundedLog
from loopwarden.models import (
    AbortIntervention,
    Detection,
    DetectionType,
    DeviationDetection,
    Intervention,
    InterventionLevel,
    InterventionLogEntry,
    LogIntervention,
    PauseIntervention,
    RedirectIntervention,
    ResumeEntry,
    Severity,
    StuckDetection,
    WarnIntervention,
    intervention_from_dict,
)
from loopwarden.output import print_status_aborted, print_status_paused

logger = logging.getLogger(__name__)

PROMPT_DELIMITER = "=" * 80

# (severity, type) -> level; severities missing a type entry use _SEVERITY_DEFAULTS
_LEVEL_TABLE: Dict[Tuple[Severity, DetectionType], InterventionLevel] = {
    (Severity.CRITICAL, DetectionType.RESOURCE_BURN): InterventionLevel.ABORT,
    (Severity.CRITICAL, DetectionType.REGRESSION): InterventionLevel.ABORT,
    (Severity.HIGH, DetectionType.STUCK): InterventionLevel.REDIRECT,
    (Severity.HIGH, DetectionType.OSCILLATION): InterventionLevel.REDIRECT,
}

_SEVERITY_DEFAULTS: Dict[Severity, InterventionLevel] = {
    Severity.CRITICAL: InterventionLevel.PAUSE,
    Severity.HIGH: InterventionLevel.WARN,
    Severity.MEDIUM: InterventionLevel.WARN,
    Severity.LOW: InterventionLevel.LOG,
}

_TYPE_GUIDANCE: Dict[DetectionType, str] = {
    DetectionType.STUCK: "You are making the same error repeatedly. Stop and try a different approach.",
    DetectionType.OSCILLATION: "You are undoing and redoing changes. Pick one direction and commit to it.",
    DetectionType.DEVIATION: "Your recent work may have drifted from the original objective. Refocus.",
    DetectionType.RESOURCE_BURN: "You are past your iteration budget. Focus on critical remaining work.",
    DetectionType.REGRESSION: "Tests or coverage are regressing. Fix the code, not the tests.",
}

InterventionCallback = Callable[[Intervention], None]


def determine_level(detection: Detection) -> InterventionLevel:
    """Map a detection to its intervention level."""
    key = (detection.severity, detection.type)
    return _LEVEL_TABLE.get(key, _SEVERITY_DEFAULTS.get(detection.severity, InterventionLevel.LOG))


def build_warning(detection: Detection) -> str:
    """Human-readable warning for prompt injection."""
    lines = [f"OVERSEER WARNING: {detection.message}", ""]
    if detection.recommendations:
        lines.append("Recommended actions:")
        lines.extend(f"{idx}. {rec}" for idx, rec in enumerate(detection.recommendations, 1))
        lines.append("")
    lines.append(_TYPE_GUIDANCE[detection.type])
    return "\n".join(lines)


def build_strategy_override(detection: Detection) -> str:
    """Blunt, type-specific directive used by redirect interventions."""
    if isinstance(detection, StuckDetection):
        parts = ["OVERRIDE: Change approach immediately.", "The current method is not working."]
        if detection.repeated_error:
            parts.append(f'You have hit "{detection.repeated_error}" {detection.occurrences} times.')
        parts.append("Try a completely different solution strategy.")
        return " ".join(parts)

    if detection.type is DetectionType.OSCILLATION:
        return (
            "OVERRIDE: Stop alternating between approaches. "
            "Analyze which approach is better and commit to it. "
            "No more back-and-forth changes."
        )

    if isinstance(detection, DeviationDetection):
        parts = ["OVERRIDE: Return to original objective."]
        if detection.original_objective:
            parts.append(f'Original objective: "{detection.original_objective}".')
        parts.append("All work must align with this goal.")
        return " ".join(parts)

    return "OVERRIDE: Reassess current approach and adjust strategy."


def inject_warning(prompt: str, warning: str) -> str:
    """Prepend `warning` to `prompt`, keeping the prompt verbatim after a delimiter."""
    return f"{warning}\n\n{PROMPT_DELIMITER}\n\nORIGINAL TASK:\n{prompt}"


class InterventionSystem:
    """
    Creates interventions and tracks pause/abort state for one loop.
    """

    def __init__(
        self,
        max_log_size: int = 100,
        on_intervention: Optional[InterventionCallback] = None,
        on_pause: Optional[InterventionCallback] = None,
        on_abort: Optional[InterventionCallback] = None,
    ):
        """
        Args:
            max_log_size: Intervention log capacity (oldest entries evicted)
            on_intervention: Called with every intervention
            on_pause: Called when a pause intervention is created
            on_abort: Called when an abort intervention is created
        """
        self.on_intervention = on_intervention
        self.on_pause = on_pause
        self.on_abort = on_abort

        self._log: BoundedLog[InterventionLogEntry] = BoundedLog(max_log_size)
        self.is_paused = False
        self.pause_reason: Optional[str] = None
        self.is_aborted = False

    # Module-level helpers exposed on the instance for callers holding only the system
    determine_level = staticmethod(determine_level)
    build_warning = staticmethod(build_warning)
    build_strategy_override = staticmethod(build_strategy_override)
    inject_warning = staticmethod(inject_warning)

    def intervene(self, detection: Detection) -> Intervention:
        """
        Create and record the intervention for `detection`.

        Pause and abort interventions also update this system's state and
        fire their callbacks.
        """
        level = determine_level(detection)
        reason = detection.message

        if level is InterventionLevel.LOG:
            intervention: Intervention = LogIntervention(reason=reason, detection=detection)
        elif level is InterventionLevel.WARN:
            intervention = WarnIntervention(
                reason=reason, detection=detection, warning=build_warning(detection),
            )
        elif level is InterventionLevel.REDIRECT:
            intervention = RedirectIntervention(
                reason=reason,
                detection=detection,
                warning=build_warning(detection),
                strategy_override=build_strategy_override(detection),
            )
        elif level is InterventionLevel.PAUSE:
            intervention = PauseIntervention(reason=reason, detection=detection, pause_reason=reason)
            self.is_paused = True
            self.pause_reason = reason
            print_status_paused(reason)
        else:
            intervention = AbortIntervention(reason=reason, detection=detection, abort_reason=reason)
            self.is_aborted = True
            print_status_aborted(reason)

        self._log.append(intervention)
        logger.info("Intervention %s for %s detection", level.value, detection.type.value)

        if level is InterventionLevel.PAUSE and self.on_pause:
            self.on_pause(intervention)
        if level is InterventionLevel.ABORT and self.on_abort:
            self.on_abort(intervention)
        if self.on_intervention:
            self.on_intervention(intervention)

        return intervention

    def resume(self, reason: str) -> bool:
        """
        Clear a pause after human approval.

        Returns:
            False if not currently paused (nothing is logged), True otherwise
        """
        if not self.is_paused:
            return False

        self._log.append(ResumeEntry(reason=reason, previous_pause_reason=self.pause_reason))
        logger.info("Resumed after pause (%s): %s", self.pause_reason, reason)
        self.is_paused = False
        self.pause_reason = None
        return True

    def get_pause_status(self) -> dict:
        return {"isPaused": self.is_paused, "reason": self.pause_reason}

    def get_log(self, limit: Optional[int] = None) -> List[InterventionLogEntry]:
        return self._log.recent(limit)

    def get_summary(self) -> dict:
        """Counts by level and by detection type, plus pause state."""
        by_level: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for entry in self._log:
            level = entry.level if isinstance(entry, ResumeEntry) else entry.level.value
            by_level[level] = by_level.get(level, 0) + 1
            if isinstance(entry, Intervention) and entry.detection is not None:
                detection_type = entry.detection.type.value
                by_type[detection_type] = by_type.get(detection_type, 0) + 1

        return {
            "total": len(self._log),
            "byLevel": by_level,
            "byType": by_type,
            "isPaused": self.is_paused,
            "pauseReason": self.pause_reason,
            "isAborted": self.is_aborted,
        }

    def clear_log(self) -> None:
        self._log.clear()

    def reset(self) -> None:
        """Clear the log and all pause/abort state."""
        self._log.clear()
        self.is_paused = False
        self.pause_reason = None
        self.is_aborted = False

    def export_state(self) -> dict:
        return {
            "interventionLog": [entry.to_dict() for entry in self._log],
            "isPaused": self.is_paused,
            "pauseReason": self.pause_reason,
            "isAborted": self.is_aborted,
        }

    def import_state(self, state: dict) -> None:
        """Restore from export_state() output. Missing keys leave current values."""
        if "interventionLog" in state:
            self._log.clear()
            self._log.extend(intervention_from_dict(entry) for entry in state["interventionLog"])
        if isinstance(state.get("isPaused"), bool):
            self.is_paused = state["isPaused"]
        if "pauseReason" in state:
            self.pause_reason = state["pauseReason"]
        if isinstance(state.get("isAborted"), bool):
            self.is_aborted = state["isAborted"]
