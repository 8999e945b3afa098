"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.

Precedence (lowest to highest):
1. Default values
2. Local config file (loopwarden_config.json in the project directory)
3. Environment variables (LOOPWARDEN_*)

Every configuration is validated as a whole before it is returned, so a
malformed threshold is rejected without partially applying the rest.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from loopwarden.errors import ConfigValidationError

# Default configuration values
CONFIG_FILENAME = "loopwarden_config.json"
DEFAULT_MODEL = "opus"
DEFAULT_STORAGE_DIR = ".loopwarden/overseer"
DEFAULT_ISSUE_API_URL = "https://gitea.com/api/v1"
DEFAULT_TOKEN_PATH = "~/.config/gitea/token"


def _require_positive_int(name: str, value: Any) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigValidationError(name, value, "must be a positive integer")


def _require_number(name: str, value: Any, minimum: float = 0.0, maximum: Optional[float] = None) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigValidationError(name, value, "must be a number")
    if value < minimum:
        raise ConfigValidationError(name, value, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigValidationError(name, value, f"must be <= {maximum}")


# =============================================================================
# Detector Thresholds
# =============================================================================

@dataclass(frozen=True)
class StuckThresholds:
    same_error_count: int = 4
    critical_error_count: int = 6
    window: int = 6
    max_progress_delta: float = 2.0  # mean percentage points per iteration

    def validate(self) -> None:
        _require_positive_int("stuck.same_error_count", self.same_error_count)
        _require_positive_int("stuck.critical_error_count", self.critical_error_count)
        _require_positive_int("stuck.window", self.window)
        _require_number("stuck.max_progress_delta", self.max_progress_delta)
        if self.critical_error_count < self.same_error_count:
            raise ConfigValidationError(
                "stuck.critical_error_count", self.critical_error_count,
                "must be >= stuck.same_error_count",
            )
        if self.window < self.same_error_count:
            raise ConfigValidationError(
                "stuck.window", self.window, "must be >= stuck.same_error_count",
            )


@dataclass(frozen=True)
class OscillationThresholds:
    cycles: int = 3
    window: int = 8
    churn_ratio: float = 0.8

    def validate(self) -> None:
        _require_positive_int("oscillation.cycles", self.cycles)
        _require_positive_int("oscillation.window", self.window)
        _require_number("oscillation.churn_ratio", self.churn_ratio, 0.0, 1.0)
        if self.churn_ratio == 0:
            raise ConfigValidationError("oscillation.churn_ratio", self.churn_ratio, "must be > 0")
        if self.window < self.cycles + 2:
            raise ConfigValidationError(
                "oscillation.window", self.window, "must be >= oscillation.cycles + 2",
            )


@dataclass(frozen=True)
class DeviationThresholds:
    window: int = 3
    min_similarity: float = 0.3
    min_deviating: int = 2
    min_keyword_length: int = 3

    def validate(self) -> None:
        _require_positive_int("deviation.window", self.window)
        _require_number("deviation.min_similarity", self.min_similarity, 0.0, 1.0)
        _require_positive_int("deviation.min_deviating", self.min_deviating)
        _require_positive_int("deviation.min_keyword_length", self.min_keyword_length)
        if self.min_deviating > self.window:
            raise ConfigValidationError(
                "deviation.min_deviating", self.min_deviating, "must be <= deviation.window",
            )


@dataclass(frozen=True)
class ResourceThresholds:
    high_ratio: float = 2.0
    critical_ratio: float = 2.5

    def validate(self) -> None:
        _require_number("resource.high_ratio", self.high_ratio)
        _require_number("resource.critical_ratio", self.critical_ratio)
        if self.high_ratio <= 0:
            raise ConfigValidationError("resource.high_ratio", self.high_ratio, "must be > 0")
        if self.critical_ratio < self.high_ratio:
            raise ConfigValidationError(
                "resource.critical_ratio", self.critical_ratio, "must be >= resource.high_ratio",
            )


@dataclass(frozen=True)
class RegressionThresholds:
    coverage_drop_points: float = 10.0
    window: int = 5

    def validate(self) -> None:
        _require_number("regression.coverage_drop_points", self.coverage_drop_points)
        if self.coverage_drop_points == 0:
            raise ConfigValidationError(
                "regression.coverage_drop_points", self.coverage_drop_points, "must be > 0",
            )
        _require_positive_int("regression.window", self.window)
        if self.window < 2:
            raise ConfigValidationError("regression.window", self.window, "must be >= 2")


_THRESHOLD_SECTIONS = {
    "stuck": StuckThresholds,
    "oscillation": OscillationThresholds,
    "deviation": DeviationThresholds,
    "resource": ResourceThresholds,
    "regression": RegressionThresholds,
}


@dataclass(frozen=True)
class DetectorThresholds:
    """All behavior detector thresholds, grouped by detection type."""
    stuck: StuckThresholds = field(default_factory=StuckThresholds)
    oscillation: OscillationThresholds = field(default_factory=OscillationThresholds)
    deviation: DeviationThresholds = field(default_factory=DeviationThresholds)
    resource: ResourceThresholds = field(default_factory=ResourceThresholds)
    regression: RegressionThresholds = field(default_factory=RegressionThresholds)

    def validate(self) -> None:
        for name in _THRESHOLD_SECTIONS:
            getattr(self, name).validate()

    def merged(self, overrides: dict) -> "DetectorThresholds":
        """
        Return a validated copy with `overrides` applied.

        `overrides` maps a section name to a dict of field values, e.g.
        {"stuck": {"same_error_count": 3}}. Unknown sections or fields are
        rejected; the receiver is never modified.
        """
        sections = {}
        for name, values in overrides.items():
            if name not in _THRESHOLD_SECTIONS:
                raise ConfigValidationError(name, values, "unknown threshold section")
            if not isinstance(values, dict):
                raise ConfigValidationError(name, values, "must be a mapping of field values")
            current = getattr(self, name)
            known = {f.name for f in fields(current)}
            for key in values:
                if key not in known:
                    raise ConfigValidationError(f"{name}.{key}", values[key], "unknown threshold")
            sections[name] = replace(current, **values)

        candidate = replace(self, **sections)
        candidate.validate()
        return candidate

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DetectorThresholds":
        return cls().merged(data)


# =============================================================================
# Log Limits & Escalation
# =============================================================================

@dataclass(frozen=True)
class LogLimits:
    """Maximum entries retained in each bounded log."""
    health_checks: int = 100
    interventions: int = 100
    escalations: int = 100

    def validate(self) -> None:
        _require_positive_int("limits.health_checks", self.health_checks)
        _require_positive_int("limits.interventions", self.interventions)
        _require_positive_int("limits.escalations", self.escalations)


@dataclass(frozen=True)
class EscalationConfig:
    """External notification channels."""
    enable_notifications: bool = True
    issue_api_url: str = DEFAULT_ISSUE_API_URL
    repository: Optional[str] = None  # "owner/repo"
    token_path: str = DEFAULT_TOKEN_PATH
    webhook_url: Optional[str] = None
    timeout_seconds: float = 10.0
    notifier_command: str = "notify-send"

    def validate(self) -> None:
        _require_number("escalation.timeout_seconds", self.timeout_seconds)
        if self.timeout_seconds == 0:
            raise ConfigValidationError("escalation.timeout_seconds", self.timeout_seconds, "must be > 0")
        if self.repository is not None and self.repository.count("/") != 1:
            raise ConfigValidationError("escalation.repository", self.repository, "expected 'owner/repo'")


# =============================================================================
# Top-level Configuration
# =============================================================================

@dataclass(frozen=True)
class OverseerConfig:
    """Loop Warden supervision configuration."""
    thresholds: DetectorThresholds = field(default_factory=DetectorThresholds)
    limits: LogLimits = field(default_factory=LogLimits)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    auto_escalate: bool = True
    storage_dir: str = DEFAULT_STORAGE_DIR

    def validate(self) -> "OverseerConfig":
        self.thresholds.validate()
        self.limits.validate()
        self.escalation.validate()
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "OverseerConfig":
        """Build a validated config from a (possibly partial) dictionary."""
        defaults = cls()
        try:
            config = cls(
                thresholds=defaults.thresholds.merged(data.get("thresholds", {})),
                limits=replace(defaults.limits, **data.get("limits", {})),
                escalation=replace(defaults.escalation, **data.get("escalation", {})),
                auto_escalate=data.get("auto_escalate", defaults.auto_escalate),
                storage_dir=data.get("storage_dir", defaults.storage_dir),
            )
        except TypeError as e:
            raise ConfigValidationError("config", data, str(e)) from e
        return config.validate()

    @classmethod
    def load(cls, project_dir: Optional[Path] = None) -> "OverseerConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (loopwarden_config.json)
        3. Default values
        """
        project_dir = Path(project_dir) if project_dir else Path.cwd()
        data: dict = {}

        config_path = project_dir / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigValidationError(str(config_path), None, f"invalid JSON: {e}") from e

        escalation = dict(data.get("escalation", {}))
        env_notifications = os.environ.get("LOOPWARDEN_NOTIFICATIONS")
        if env_notifications is not None:
            escalation["enable_notifications"] = env_notifications.lower() not in ("0", "false", "no", "off")
        for env_name, key in (
            ("LOOPWARDEN_ISSUE_API_URL", "issue_api_url"),
            ("LOOPWARDEN_REPOSITORY", "repository"),
            ("LOOPWARDEN_TOKEN_PATH", "token_path"),
            ("LOOPWARDEN_WEBHOOK_URL", "webhook_url"),
        ):
            value = os.environ.get(env_name)
            if value:
                escalation[key] = value
        data["escalation"] = escalation

        return cls.from_dict(data)


@dataclass(frozen=True)
class LoopConfig:
    """Immutable per-loop tuning values stored alongside the loop state."""
    model: str = DEFAULT_MODEL
    budget_per_iteration: float = 2.0
    timeout_minutes: int = 60
    working_dir: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "model": self.model,
            "budgetPerIteration": self.budget_per_iteration,
            "timeoutMinutes": self.timeout_minutes,
            "workingDir": self.working_dir,
        }
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LoopConfig":
        data = dict(data or {})
        return cls(
            model=data.pop("model", DEFAULT_MODEL),
            budget_per_iteration=data.pop("budgetPerIteration", 2.0),
            timeout_minutes=data.pop("timeoutMinutes", 60),
            working_dir=data.pop("workingDir", None),
            extra=data,
        )
