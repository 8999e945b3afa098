"""
Overseer
========

Per-iteration supervision for one loop.

After each completed iteration the driver calls `check(record)`, which:
1. Appends the record to the iteration history
2. Runs the behavior detector over the history
3. Creates an intervention for each detection
4. Escalates pause/abort (and critical redirect) interventions
5. Computes the loop's aggregate health status
6. Appends a HealthCheck to the bounded log and persists the overseer log

The persisted log (`<storage>/<loop_id>-overseer-log.json`) is enough to
rebuild the overseer with `Overseer.load()`, including a pending pause.

Usage:
    overseer = Overseer(loop_id, "Fix the flaky auth tests", max_iterations=10)
    health = overseer.check(record)
    if health.status is HealthStatus.PAUSED:
        ...  # wait for `loopwarden resume`
"""

import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from loopwarden.behavior_detector import BehaviorDetector, DetectionContext
from loopwarden.bounded_log import BoundedLog
from loopwarden.config import OverseerConfig
from loopwarden.errors import OverseerLogCorruptedError, OverseerLogNotFoundError
from loopwarden.escalation import (
    EscalationContext,
    EscalationHandler,
    EscalationLevel,
    EscalationResult,
)
from loopwarden.intervention import InterventionSystem
from loopwarden.models import (
    Detection,
    HealthCheck,
    HealthStatus,
    Intervention,
    InterventionLevel,
    InterventionLogEntry,
    IterationRecord,
    Severity,
    utc_now,
)

logger = logging.getLogger(__name__)

LOG_SUFFIX = "-overseer-log.json"


def overseer_log_path(storage_path: Path, loop_id: str) -> Path:
    return Path(storage_path) / f"{loop_id}{LOG_SUFFIX}"


class Overseer:
    """
    Coordinates detection, intervention and escalation for one loop.

    Single writer: callers must serialize check() calls for a loop.
    """

    def __init__(
        self,
        loop_id: str,
        task_description: str,
        storage_path: Optional[Path] = None,
        config: Optional[OverseerConfig] = None,
        max_iterations: Optional[int] = None,
        escalation_handler: Optional[EscalationHandler] = None,
        on_health_check: Optional[Callable[[HealthCheck], None]] = None,
    ):
        """
        Initialize the overseer.

        Args:
            loop_id: Loop identifier (names the log file)
            task_description: The loop's objective, used for deviation detection
            storage_path: Directory for the overseer log (defaults to config.storage_dir)
            config: Supervision configuration
            max_iterations: Iteration budget, used for resource burn detection
            escalation_handler: Handler to use instead of one built from config
            on_health_check: Called with every HealthCheck after it is persisted
        """
        self.config = (config or OverseerConfig()).validate()
        self.loop_id = loop_id
        self.task_description = task_description
        self.storage_path = Path(storage_path or self.config.storage_dir)
        self.max_iterations = max_iterations
        self.auto_escalate = self.config.auto_escalate
        self.on_health_check = on_health_check

        limits = self.config.limits
        self.detector = BehaviorDetector(self.config.thresholds)
        self.intervention_system = InterventionSystem(max_log_size=limits.interventions)
        self.escalation_handler = escalation_handler or EscalationHandler(
            self.config.escalation, max_log_size=limits.escalations,
        )

        thresholds = self.config.thresholds
        history_size = max(
            thresholds.stuck.window,
            thresholds.oscillation.window,
            thresholds.deviation.window,
            thresholds.regression.window,
        )
        # Only the trailing window is kept; total_iterations counts every check
        self.iteration_history: BoundedLog[IterationRecord] = BoundedLog(history_size)
        self.total_iterations = 0
        self._health_checks: BoundedLog[HealthCheck] = BoundedLog(limits.health_checks)
        self.current_status = HealthStatus.HEALTHY

    @property
    def log_path(self) -> Path:
        return overseer_log_path(self.storage_path, self.loop_id)

    # =========================================================================
    # Health Checks
    # =========================================================================

    def check(self, record: IterationRecord) -> HealthCheck:
        """
        Run a health check for a completed iteration.

        Escalation failures are recorded in the escalation log and never
        interrupt the check.
        """
        self.iteration_history.append(record)
        self.total_iterations += 1

        context = DetectionContext(objective=self.task_description, max_iterations=self.max_iterations)
        detections = self.detector.detect(self.iteration_history.recent(), context)

        interventions: List[Intervention] = []
        for detection in detections:
            intervention = self.intervention_system.intervene(detection)
            interventions.append(intervention)
            if self.auto_escalate and self.should_escalate(intervention):
                self.escalate(intervention, record)

        status = self.determine_status(detections, interventions)
        self.current_status = status

        health = HealthCheck(
            iteration_number=record.number,
            status=status,
            detections=tuple(detections),
            interventions=tuple(interventions),
        )
        health = replace(health, metrics=self.compute_metrics(pending=health))

        self._health_checks.append(health)
        logger.info(
            "Health check for %s iteration %d: %s (%d detections)",
            self.loop_id, record.number, status.value, len(detections),
        )

        self.save_log()
        if self.on_health_check:
            self.on_health_check(health)
        return health

    def should_escalate(self, intervention: Intervention) -> bool:
        """Pause and abort always escalate; redirect only for a critical detection."""
        if intervention.level in (InterventionLevel.PAUSE, InterventionLevel.ABORT):
            return True
        if intervention.level is InterventionLevel.REDIRECT:
            return intervention.detection is not None and intervention.detection.severity is Severity.CRITICAL
        return False

    @staticmethod
    def map_escalation_level(intervention: Intervention) -> EscalationLevel:
        if intervention.level is InterventionLevel.ABORT:
            return EscalationLevel.EMERGENCY
        if intervention.level is InterventionLevel.PAUSE:
            return EscalationLevel.CRITICAL
        if intervention.level is InterventionLevel.REDIRECT:
            critical = intervention.detection is not None and intervention.detection.severity is Severity.CRITICAL
            return EscalationLevel.CRITICAL if critical else EscalationLevel.WARNING
        return EscalationLevel.INFO

    def escalate(self, intervention: Intervention, record: IterationRecord) -> EscalationResult:
        level = self.map_escalation_level(intervention)
        context = EscalationContext(
            loop_id=self.loop_id,
            task_description=self.task_description,
            iteration_number=record.number,
            reason=intervention.reason,
            detection=intervention.detection,
            intervention=intervention,
        )
        return self.escalation_handler.escalate(level, context)

    def determine_status(
        self,
        detections: Sequence[Detection],
        interventions: Sequence[Intervention],
    ) -> HealthStatus:
        """Aggregate status, most severe condition first."""
        if self.intervention_system.is_paused:
            return HealthStatus.PAUSED
        if self.intervention_system.is_aborted or any(
            i.level is InterventionLevel.ABORT for i in interventions
        ):
            return HealthStatus.ABORTED
        if any(d.severity is Severity.CRITICAL for d in detections):
            return HealthStatus.CRITICAL
        if detections:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def compute_metrics(self, pending: Optional[HealthCheck] = None) -> dict:
        """
        Counts across the retained health checks.

        `pending` is counted as if already appended, so it evicts the oldest
        entry when the log is full.
        """
        checks: List[HealthCheck] = self._health_checks.recent()
        if pending is not None:
            keep = self._health_checks.max_size - 1
            checks = (checks[-keep:] if keep else []) + [pending]

        detection_counts: Dict[str, int] = {}
        intervention_counts: Dict[str, int] = {}
        for check in checks:
            for detection in check.detections:
                detection_counts[detection.type.value] = detection_counts.get(detection.type.value, 0) + 1
            for intervention in check.interventions:
                level = intervention.level.value
                intervention_counts[level] = intervention_counts.get(level, 0) + 1

        return {
            "totalIterations": self.total_iterations,
            "totalHealthChecks": len(checks),
            "detectionCounts": detection_counts,
            "interventionCounts": intervention_counts,
            "currentStatus": self.current_status.value,
        }

    def get_health(self) -> dict:
        latest = self._health_checks.latest()
        return {
            "loopId": self.loop_id,
            "taskDescription": self.task_description,
            "status": self.current_status.value,
            "totalIterations": self.total_iterations,
            "latestHealthCheck": latest.to_dict() if latest else None,
            "metrics": self.compute_metrics(),
            "isPaused": self.intervention_system.is_paused,
        }

    # =========================================================================
    # Approval
    # =========================================================================

    def resume(self, reason: str) -> bool:
        """
        Approve a paused loop to continue.

        Returns:
            False if the loop was not paused
        """
        if not self.intervention_system.resume(reason):
            return False

        latest = self._health_checks.latest()
        if latest is not None:
            self.current_status = self.determine_status(latest.detections, latest.interventions)
        else:
            self.current_status = self.determine_status((), ())
        self.save_log()
        return True

    # =========================================================================
    # Logs
    # =========================================================================

    def get_log(self) -> List[HealthCheck]:
        return self._health_checks.recent()

    def get_intervention_log(self) -> List[InterventionLogEntry]:
        return self.intervention_system.get_log()

    def get_escalation_log(self) -> List[EscalationResult]:
        return self.escalation_handler.get_log()

    def to_dict(self) -> dict:
        intervention_state = self.intervention_system.export_state()
        return {
            "loopId": self.loop_id,
            "taskDescription": self.task_description,
            "maxIterations": self.max_iterations,
            "currentStatus": self.current_status.value,
            "healthCheckLog": [check.to_dict() for check in self._health_checks],
            "interventionLog": intervention_state["interventionLog"],
            "escalationLog": self.escalation_handler.export_state()["escalationLog"],
            "totalIterations": self.total_iterations,
            "iterationHistory": [record.to_dict() for record in self.iteration_history],
            "pauseState": {
                "isPaused": intervention_state["isPaused"],
                "pauseReason": intervention_state["pauseReason"],
                "isAborted": intervention_state["isAborted"],
            },
            "metrics": self.compute_metrics(),
            "lastUpdated": utc_now(),
        }

    def save_log(self) -> Path:
        """Write the overseer log atomically and return its path."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        path = self.log_path
        temp_path = path.with_name(f"{path.name}.tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        os.replace(temp_path, path)
        return path

    @classmethod
    def load(
        cls,
        loop_id: str,
        storage_path: Optional[Path] = None,
        config: Optional[OverseerConfig] = None,
        escalation_handler: Optional[EscalationHandler] = None,
    ) -> "Overseer":
        """
        Rebuild an overseer from its persisted log.

        Raises:
            OverseerLogNotFoundError: No log exists for `loop_id`
            OverseerLogCorruptedError: The log is unreadable or malformed
        """
        config = config or OverseerConfig()
        storage = Path(storage_path or config.storage_dir)
        path = overseer_log_path(storage, loop_id)
        if not path.exists():
            raise OverseerLogNotFoundError(path)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")

            overseer = cls(
                data.get("loopId", loop_id),
                data.get("taskDescription", ""),
                storage_path=storage,
                config=config,
                max_iterations=data.get("maxIterations"),
                escalation_handler=escalation_handler,
            )
            overseer._restore(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Overseer log %s is corrupted: %s", path, e)
            raise OverseerLogCorruptedError(path, str(e)) from e
        return overseer

    def _restore(self, data: dict) -> None:
        records = [IterationRecord.from_dict(r) for r in data.get("iterationHistory", [])]
        self.iteration_history.clear()
        self.iteration_history.extend(records)
        self.total_iterations = data.get("totalIterations", len(records))
        self._health_checks.clear()
        self._health_checks.extend(HealthCheck.from_dict(c) for c in data.get("healthCheckLog", []))

        intervention_state = {"interventionLog": data.get("interventionLog", [])}
        intervention_state.update(data.get("pauseState") or {})
        self.intervention_system.import_state(intervention_state)
        self.escalation_handler.import_state({"escalationLog": data.get("escalationLog", [])})

        latest = self._health_checks.latest()
        if data.get("currentStatus"):
            self.current_status = HealthStatus(data["currentStatus"])
        elif latest is not None:
            self.current_status = latest.status

    # =========================================================================
    # Reporting
    # =========================================================================

    def generate_report(self, recent: int = 5) -> str:
        """Markdown summary for operators."""
        health = self.get_health()
        metrics = health["metrics"]

        lines = [
            f"# Overseer Report: {self.loop_id}",
            "",
            f"**Task:** {self.task_description}",
            f"**Status:** {health['status']}",
            f"**Iterations:** {health['totalIterations']}",
            f"**Generated:** {utc_now()}",
            "",
            "## Health Summary",
            "",
            "| Metric | Value |",
            "|--------|-------|",
            f"| Total Iterations | {metrics['totalIterations']} |",
            f"| Health Checks | {metrics['totalHealthChecks']} |",
            f"| Current Status | {metrics['currentStatus']} |",
            f"| Is Paused | {'Yes' if health['isPaused'] else 'No'} |",
            "",
        ]
        lines += _count_table("Detections", "Type", metrics["detectionCounts"])
        lines += _count_table("Interventions", "Level", metrics["interventionCounts"])

        escalations = self.escalation_handler.get_summary()
        if escalations["total"]:
            lines += _count_table("Escalations", "Level", escalations["byLevel"])

        checks = self._health_checks.recent(recent)
        if checks:
            lines += ["## Recent Health Checks", ""]
            for check in checks:
                lines += [
                    f"### Iteration {check.iteration_number} ({check.timestamp})",
                    "",
                    f"**Status:** {check.status.value}",
                    "",
                ]
                if check.detections:
                    lines.append("**Detections:**")
                    lines += [f"- [{d.severity.value}] {d.type.value}: {d.message}" for d in check.detections]
                    lines.append("")
                if check.interventions:
                    lines.append("**Interventions:**")
                    lines += [f"- [{i.level.value}] {i.reason}" for i in check.interventions]
                    lines.append("")

        lines += ["---", "*Generated by Loop Warden*", ""]
        return "\n".join(lines)


def _count_table(title: str, column: str, counts: Dict[str, int]) -> List[str]:
    if not counts:
        return []
    rows = [f"## {title}", "", f"| {column} | Count |", "|------|-------|"]
    rows += [f"| {key} | {count} |" for key, count in counts.items()]
    rows.append("")
    return rows
