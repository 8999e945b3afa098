"""
Error Types
===========

Exceptions surfaced to callers of the supervision subsystem.

- Data-integrity: StateCorruptedError, OverseerLogCorruptedError (never silently defaulted)
- Not-found: StateNotFoundError, OverseerLogNotFoundError
- Validation: ConfigValidationError

Failures of external notification channels are *not* represented here; they
are recorded on the EscalationResult and never raised.
"""

from pathlib import Path
from typing import Optional


class LoopWardenError(Exception):
    """Base class for all Loop Warden errors."""


class StateNotFoundError(LoopWardenError):
    """No loop state has been persisted at the expected location."""

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)
        super().__init__(f"No loop state found at {self.state_path}")


class StateCorruptedError(LoopWardenError):
    """Both the primary state file and its backup are unreadable."""

    def __init__(
        self,
        state_path: Path,
        backup_path: Path,
        primary_error: str,
        backup_error: Optional[str] = None,
    ):
        self.state_path = Path(state_path)
        self.backup_path = Path(backup_path)
        self.primary_error = primary_error
        self.backup_error = backup_error

        if backup_error is None:
            detail = f"primary unreadable ({primary_error}) and no backup exists"
        else:
            detail = f"primary unreadable ({primary_error}), backup unreadable ({backup_error})"
        super().__init__(f"Loop state store fatally corrupted at {self.state_path}: {detail}")


class OverseerLogNotFoundError(LoopWardenError):
    """Overseer.load() was asked for a loop with no persisted log."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        super().__init__(f"Overseer log not found: {self.log_path}")


class OverseerLogCorruptedError(LoopWardenError):
    """An overseer log exists but cannot be parsed or rebuilt."""

    def __init__(self, log_path: Path, detail: str):
        self.log_path = Path(log_path)
        self.detail = detail
        super().__init__(f"Overseer log corrupted at {self.log_path}: {detail}")


class ConfigValidationError(LoopWardenError, ValueError):
    """A threshold or limit was rejected at the configuration boundary."""

    def __init__(self, field_name: str, value: object, reason: str):
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for '{field_name}': {value!r} ({reason})")
