"""
Supervision Data Model
======================

Records shared between the state manager, behavior detector, intervention
system, escalation handler and overseer.

Persisted documents use camelCase keys so loop state and overseer logs stay
readable by other tools driving the same loop; the Python side uses
snake_case attributes and converts in to_dict()/from_dict().

Detections and interventions are tagged variants: one dataclass per
detection type / intervention level, each carrying only the fields that
make sense for it. `detection_from_dict` and `intervention_from_dict`
dispatch on the tag when reading persisted logs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from loopwarden.config import LoopConfig

STATE_VERSION = "1.0.0"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Enumerations
# =============================================================================

class LoopStatus(Enum):
    """Lifecycle of a supervised loop. COMPLETED and ABORTED are terminal."""
    RUNNING = "running"
    PAUSED = "paused"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopStatus.COMPLETED, LoopStatus.ABORTED)


class DetectionType(Enum):
    STUCK = "stuck"
    OSCILLATION = "oscillation"
    DEVIATION = "deviation"
    RESOURCE_BURN = "resource_burn"
    REGRESSION = "regression"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InterventionLevel(Enum):
    LOG = "log"             # Record only, no action
    WARN = "warn"           # Inject warning in prompt
    REDIRECT = "redirect"   # Force strategy change
    PAUSE = "pause"         # Require human approval
    ABORT = "abort"         # Cancel, requires approval to restart


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    PAUSED = "paused"
    ABORTED = "aborted"


# =============================================================================
# Iterations
# =============================================================================

@dataclass(frozen=True)
class IterationAnalysis:
    """Structured result of analysing one iteration's output."""
    completion_percentage: float = 0.0
    failure_class: Optional[str] = None
    should_continue: bool = False
    tests_passing: Optional[bool] = None
    coverage_percent: Optional[float] = None
    learnings: str = ""
    artifacts_modified: tuple[str, ...] = ()
    blockers: tuple[str, ...] = ()
    next_approach: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "completionPercentage": self.completion_percentage,
            "failureClass": self.failure_class,
            "shouldContinue": self.should_continue,
            "testsPassing": self.tests_passing,
            "coveragePercent": self.coverage_percent,
            "learnings": self.learnings,
            "artifactsModified": list(self.artifacts_modified),
            "blockers": list(self.blockers),
            "nextApproach": self.next_approach,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "IterationAnalysis":
        data = data or {}
        learnings = data.get("learnings") or ""
        if isinstance(learnings, list):
            learnings = "\n".join(learnings)
        return cls(
            completion_percentage=data.get("completionPercentage") or 0.0,
            failure_class=data.get("failureClass") or None,
            should_continue=bool(data.get("shouldContinue", False)),
            tests_passing=data.get("testsPassing"),
            coverage_percent=data.get("coveragePercent"),
            learnings=learnings,
            artifacts_modified=tuple(data.get("artifactsModified") or ()),
            blockers=tuple(data.get("blockers") or ()),
            next_approach=data.get("nextApproach"),
        )


@dataclass(frozen=True)
class IterationRecord:
    """One completed execution of the worker plus its analysis. Immutable."""
    number: int
    analysis: IterationAnalysis = field(default_factory=IterationAnalysis)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_ms: int = 0
    exit_code: Optional[int] = None
    prompt_file: Optional[str] = None
    stdout_file: Optional[str] = None
    stderr_file: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "duration": self.duration_ms,
            "exitCode": self.exit_code,
            "promptFile": self.prompt_file,
            "stdoutFile": self.stdout_file,
            "stderrFile": self.stderr_file,
            "sessionId": self.session_id,
            "analysis": self.analysis.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IterationRecord":
        return cls(
            number=data["number"],
            analysis=IterationAnalysis.from_dict(data.get("analysis")),
            started_at=data.get("startedAt"),
            ended_at=data.get("endedAt"),
            duration_ms=data.get("duration") or 0,
            exit_code=data.get("exitCode"),
            prompt_file=data.get("promptFile"),
            stdout_file=data.get("stdoutFile"),
            stderr_file=data.get("stderrFile"),
            session_id=data.get("sessionId"),
        )


# =============================================================================
# Loop State
# =============================================================================

@dataclass
class LoopState:
    """
    Persisted record for one supervised loop.

    Owned by a single StateManager. `iterations` is append-only and
    `current_iteration` always equals its length once written through
    StateManager.add_iteration().
    """
    loop_id: str
    session_id: str
    objective: str
    completion_criteria: str
    status: LoopStatus = LoopStatus.RUNNING
    current_iteration: int = 0
    max_iterations: int = 10
    iterations: list[IterationRecord] = field(default_factory=list)
    accumulated_learnings: str = ""
    files_modified: list[str] = field(default_factory=list)
    current_pid: Optional[int] = None
    config: LoopConfig = field(default_factory=LoopConfig)
    start_time: str = field(default_factory=utc_now)
    last_update: str = field(default_factory=utc_now)
    version: str = STATE_VERSION

    @property
    def last_iteration(self) -> Optional[IterationRecord]:
        return self.iterations[-1] if self.iterations else None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "loopId": self.loop_id,
            "sessionId": self.session_id,
            "objective": self.objective,
            "completionCriteria": self.completion_criteria,
            "status": self.status.value,
            "currentIteration": self.current_iteration,
            "maxIterations": self.max_iterations,
            "iterations": [it.to_dict() for it in self.iterations],
            "accumulatedLearnings": self.accumulated_learnings,
            "filesModified": list(self.files_modified),
            "currentPid": self.current_pid,
            "config": self.config.to_dict(),
            "startTime": self.start_time,
            "lastUpdate": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LoopState":
        """Create LoopState from dictionary, tolerating missing optional keys."""
        return cls(
            version=data.get("version", STATE_VERSION),
            loop_id=data["loopId"],
            session_id=data.get("sessionId", ""),
            objective=data.get("objective", ""),
            completion_criteria=data.get("completionCriteria", ""),
            status=LoopStatus(data.get("status", LoopStatus.RUNNING.value)),
            current_iteration=data.get("currentIteration", 0),
            max_iterations=data.get("maxIterations", 10),
            iterations=[IterationRecord.from_dict(it) for it in data.get("iterations", [])],
            accumulated_learnings=data.get("accumulatedLearnings", ""),
            files_modified=list(data.get("filesModified", [])),
            current_pid=data.get("currentPid"),
            config=LoopConfig.from_dict(data.get("config", {})),
            start_time=data.get("startTime", ""),
            last_update=data.get("lastUpdate", ""),
        )


# =============================================================================
# Detections
# =============================================================================

@dataclass(frozen=True)
class Detection:
    """An anomaly found in the iteration history. Subclassed per type."""
    severity: Severity
    message: str
    recommendations: tuple[str, ...] = ()

    type: ClassVar[DetectionType]

    @property
    def evidence(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "evidence": self.evidence,
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def _evidence_fields(cls, evidence: dict) -> dict:
        return {}


@dataclass(frozen=True)
class StuckDetection(Detection):
    repeated_error: str = ""
    occurrences: int = 0
    avg_progress_rate: float = 0.0
    recent_blockers: tuple[str, ...] = ()

    type: ClassVar[DetectionType] = DetectionType.STUCK

    @property
    def evidence(self) -> dict:
        return {
            "repeatedError": self.repeated_error,
            "occurrences": self.occurrences,
            "avgProgressRate": self.avg_progress_rate,
            "recentBlockers": list(self.recent_blockers),
        }

    @classmethod
    def _evidence_fields(cls, evidence: dict) -> dict:
        return {
            "repeated_error": evidence.get("repeatedError", ""),
            "occurrences": evidence.get("occurrences", 0),
            "avg_progress_rate": evidence.get("avgProgressRate", 0.0),
            "recent_blockers": tuple(evidence.get("recentBlockers", ())),
        }


@dataclass(frozen=True)
class OscillationDetection(Detection):
    cycles: int = 0
    recent_file_changes: tuple[tuple[str, ...], ...] = ()

    type: ClassVar[DetectionType] = DetectionType.OSCILLATION

    @property
    def evidence(self) -> dict:
        return {
            "undoRedoCycles": self.cycles,
            "recentFileChanges": [list(files) for files in self.recent_file_changes],
        }

    @classmethod
    def _evidence_fields(cls, evidence: dict) -> dict:
        return {
            "cycles": evidence.get("undoRedoCycles", 0),
            "recent_file_changes": tuple(tuple(f) for f in evidence.get("recentFileChanges", ())),
        }


@dataclass(frozen=True)
class DeviationDetection(Detection):
    original_objective: str = ""
    average_similarity: float = 0.0
    # (iteration number, similarity) for each iteration below the threshold
    deviating_iterations: tuple[tuple[int, float], ...] = ()

    type: ClassVar[DetectionType] = DetectionType.DEVIATION

    @property
    def evidence(self) -> dict:
        return {
            "originalObjective": self.original_objective,
            "averageSimilarity": self.average_similarity,
            "deviationExamples": [
                {"iteration": number, "similarity": similarity}
                for number, similarity in self.deviating_iterations
            ],
        }

    @classmethod
    def _evidence_fields(cls, evidence: dict) -> dict:
        return {
            "original_objective": evidence.get("originalObjective", ""),
            "average_similarity": evidence.get("averageSimilarity", 0.0),
            "deviating_iterations": tuple(
                (ex.get("iteration", 0), ex.get("similarity", 0.0))
                for ex in evidence.get("deviationExamples", ())
            ),
        }


@dataclass(frozen=True)
class ResourceBurnDetection(Detection):
    current_iteration: int = 0
    max_iterations: int = 0
    ratio: float = 0.0
    completion_percent: float = 0.0

    type: ClassVar[DetectionType] = DetectionType.RESOURCE_BURN

    @property
    def evidence(self) -> dict:
        return {
            "actualIterations": self.current_iteration,
            "estimatedIterations": self.max_iterations,
            "iterationRatio": self.ratio,
            "completionPercent": self.completion_percent,
        }

    @classmethod
    def _evidence_fields(cls, evidence: dict) -> dict:
        return {
            "current_iteration": evidence.get("actualIterations", 0),
            "max_iterations": evidence.get("estimatedIterations", 0),
            "ratio": evidence.get("iterationRatio", 0.0),
            "completion_percent": evidence.get("completionPercent", 0.0),
        }


@dataclass(frozen=True)
class RegressionEvent:
    """One regression between two consecutive iterations."""
    iteration: int
    kind: str  # "tests" or "coverage"
    message: str
    previous: Optional[float] = None
    current: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "kind": self.kind,
            "message": self.message,
            "from": self.previous,
            "to": self.current,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RegressionEvent":
        return cls(
            iteration=data.get("iteration", 0),
            kind=data.get("kind", "tests"),
            message=data.get("message", ""),
            previous=data.get("from"),
            current=data.get("to"),
        )


@dataclass(frozen=True)
class RegressionDetection(Detection):
    regressions: tuple[RegressionEvent, ...] = ()

    type: ClassVar[DetectionType] = DetectionType.REGRESSION

    @property
    def evidence(self) -> dict:
        return {"regressions": [event.to_dict() for event in self.regressions]}

    @classmethod
    def _evidence_fields(cls, evidence: dict) -> dict:
        return {
            "regressions": tuple(RegressionEvent.from_dict(e) for e in evidence.get("regressions", ())),
        }


_DETECTION_VARIANTS: dict[DetectionType, type[Detection]] = {
    variant.type: variant
    for variant in (
        StuckDetection,
        OscillationDetection,
        DeviationDetection,
        ResourceBurnDetection,
        RegressionDetection,
    )
}


def detection_from_dict(data: dict) -> Detection:
    """Rebuild the right Detection variant from its persisted form."""
    variant = _DETECTION_VARIANTS[DetectionType(data["type"])]
    return variant(
        severity=Severity(data["severity"]),
        message=data.get("message", ""),
        recommendations=tuple(data.get("recommendations", ())),
        **variant._evidence_fields(data.get("evidence") or {}),
    )


# =============================================================================
# Interventions
# =============================================================================

@dataclass(frozen=True)
class Intervention:
    """Supervisory response to one detection. Subclassed per level."""
    reason: str
    detection: Optional[Detection] = None
    timestamp: str = field(default_factory=utc_now)

    level: ClassVar[InterventionLevel]

    @property
    def requires_approval(self) -> bool:
        return False

    def _level_fields(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "level": self.level.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "detection": self.detection.to_dict() if self.detection else None,
            "requiresApproval": self.requires_approval,
        }
        data.update(self._level_fields())
        return data


@dataclass(frozen=True)
class LogIntervention(Intervention):
    action: str = "Logged detection for monitoring"

    level: ClassVar[InterventionLevel] = InterventionLevel.LOG

    def _level_fields(self) -> dict:
        return {"action": self.action}


@dataclass(frozen=True)
class WarnIntervention(Intervention):
    warning: str = ""

    level: ClassVar[InterventionLevel] = InterventionLevel.WARN

    def _level_fields(self) -> dict:
        return {"warning": self.warning}


@dataclass(frozen=True)
class RedirectIntervention(Intervention):
    warning: str = ""
    strategy_override: str = ""

    level: ClassVar[InterventionLevel] = InterventionLevel.REDIRECT

    def _level_fields(self) -> dict:
        return {"warning": self.warning, "strategyOverride": self.strategy_override}


@dataclass(frozen=True)
class PauseIntervention(Intervention):
    pause_reason: str = ""

    level: ClassVar[InterventionLevel] = InterventionLevel.PAUSE

    @property
    def requires_approval(self) -> bool:
        return True

    def _level_fields(self) -> dict:
        return {"pauseReason": self.pause_reason}


@dataclass(frozen=True)
class AbortIntervention(Intervention):
    abort_reason: str = ""

    level: ClassVar[InterventionLevel] = InterventionLevel.ABORT

    @property
    def requires_approval(self) -> bool:
        return True

    def _level_fields(self) -> dict:
        return {"abortReason": self.abort_reason}


@dataclass(frozen=True)
class ResumeEntry:
    """Audit entry written when a human approves a paused loop to continue."""
    reason: str
    previous_pause_reason: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)

    level: ClassVar[str] = "resume"

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "previousPauseReason": self.previous_pause_reason,
        }


InterventionLogEntry = Union[Intervention, ResumeEntry]


def intervention_from_dict(data: dict) -> InterventionLogEntry:
    """Rebuild an intervention log entry from its persisted form."""
    if data.get("level") == ResumeEntry.level:
        return ResumeEntry(
            reason=data.get("reason", ""),
            previous_pause_reason=data.get("previousPauseReason"),
            timestamp=data.get("timestamp", ""),
        )

    level = InterventionLevel(data["level"])
    common = {
        "reason": data.get("reason", ""),
        "detection": detection_from_dict(data["detection"]) if data.get("detection") else None,
        "timestamp": data.get("timestamp", ""),
    }
    if level is InterventionLevel.LOG:
        return LogIntervention(action=data.get("action", LogIntervention.action), **common)
    if level is InterventionLevel.WARN:
        return WarnIntervention(warning=data.get("warning", ""), **common)
    if level is InterventionLevel.REDIRECT:
        return RedirectIntervention(
            warning=data.get("warning", ""),
            strategy_override=data.get("strategyOverride", ""),
            **common,
        )
    if level is InterventionLevel.PAUSE:
        return PauseIntervention(pause_reason=data.get("pauseReason", ""), **common)
    return AbortIntervention(abort_reason=data.get("abortReason", ""), **common)


# =============================================================================
# Health Checks
# =============================================================================

@dataclass(frozen=True)
class HealthCheck:
    """Outcome of one Overseer.check() call."""
    iteration_number: int
    status: HealthStatus
    detections: tuple[Detection, ...] = ()
    interventions: tuple[Intervention, ...] = ()
    metrics: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "iterationNumber": self.iteration_number,
            "timestamp": self.timestamp,
            "detections": [d.to_dict() for d in self.detections],
            "interventions": [i.to_dict() for i in self.interventions],
            "status": self.status.value,
            "metrics": self.metrics,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HealthCheck":
        return cls(
            iteration_number=data.get("iterationNumber", 0),
            status=HealthStatus(data.get("status", HealthStatus.HEALTHY.value)),
            detections=tuple(detection_from_dict(d) for d in data.get("detections", ())),
            interventions=tuple(
                entry for entry in (intervention_from_dict(i) for i in data.get("interventions", ()))
                if isinstance(entry, Intervention)
            ),
            metrics=data.get("metrics", {}),
            timestamp=data.get("timestamp", ""),
        )
