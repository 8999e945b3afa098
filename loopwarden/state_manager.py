"""
Loop State Persistence
======================

Crash-safe persistence of one LoopState per loop identifier.

Layout (default loop):
    <project>/.loopwarden/external/
        session-state.json       current generation
        session-state.json.bak   previous generation
        iterations/ prompts/ outputs/ analysis/

A manager bound to a loop id keeps its files under
`.loopwarden/external/loops/<loop_id>/` instead.

Every save copies the current primary file to the backup before replacing it,
so the backup is always exactly one generation behind. Loading falls back to
the backup when the primary cannot be parsed, and fails loudly with
StateCorruptedError when neither can be read.
"""

import json
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Optional

from loopwarden.config import LoopConfig
from loopwarden.errors import StateCorruptedError, StateNotFoundError
from loopwarden.models import IterationRecord, LoopState, LoopStatus, utc_now
from loopwarden.output import print_error, print_warning

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".loopwarden"
STATE_FILENAME = "session-state.json"
BACKUP_SUFFIX = ".bak"
ARTIFACT_SUBDIRS = ("iterations", "prompts", "outputs", "analysis")

# Errors that mean "this file does not hold a usable state document"
_PARSE_ERRORS = (ValueError, KeyError, TypeError, OSError)


def merge_learnings(accumulated: str, iteration_number: int, learnings: str) -> str:
    """
    Append an iteration's learnings to the accumulated text.

    Lines already present anywhere in the accumulated text are dropped, as are
    blank lines. Returns the accumulated text unchanged if nothing is new.
    """
    seen = {line.strip() for line in accumulated.splitlines() if line.strip()}
    new_lines = []
    for line in learnings.splitlines():
        stripped = line.strip()
        if not stripped or stripped in seen:
            continue
        seen.add(stripped)
        new_lines.append(stripped)

    if not new_lines:
        return accumulated

    section = f"### Iteration {iteration_number}\n" + "\n".join(new_lines)
    return f"{accumulated}\n\n{section}" if accumulated else section


def merge_files(existing: list[str], modified: tuple[str, ...]) -> list[str]:
    """Order-preserving union of file paths."""
    merged = list(dict.fromkeys(existing))
    for path in modified:
        if path not in merged:
            merged.append(path)
    return merged


class StateManager:
    """
    Manages loop state persistence for one loop.

    Single writer: callers serialize saves for a given loop. Reads are safe to
    perform from another process (the recovery engine does this).
    """

    def __init__(self, project_dir: Path, loop_id: Optional[str] = None):
        """
        Initialize the state manager.

        Args:
            project_dir: Project root directory
            loop_id: Bind this manager to a specific loop's directory
        """
        self.project_dir = Path(project_dir)
        self.loop_id = loop_id

        base = self.project_dir / STATE_DIRNAME / "external"
        self.state_dir = base / "loops" / loop_id if loop_id else base
        self.state_path = self.state_dir / STATE_FILENAME
        self.backup_path = self.state_dir / f"{STATE_FILENAME}{BACKUP_SUFFIX}"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(
        self,
        objective: str,
        completion_criteria: str,
        max_iterations: int = 10,
        config: Optional[LoopConfig] = None,
    ) -> LoopState:
        """
        Create the on-disk layout and an initial running state.

        Args:
            objective: What the loop is meant to achieve
            completion_criteria: Verifiable success condition
            max_iterations: Iteration budget
            config: Per-loop tuning values

        Returns:
            The freshly persisted LoopState
        """
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

        state = LoopState(
            loop_id=self.loop_id or str(uuid.uuid4()),
            session_id=str(uuid.uuid4()),
            objective=objective,
            completion_criteria=completion_criteria,
            status=LoopStatus.RUNNING,
            current_iteration=0,
            max_iterations=max_iterations,
            config=config or LoopConfig(working_dir=str(self.project_dir)),
        )

        self.ensure_state_dir()
        self.save(state)
        logger.info("Initialized loop %s at %s", state.loop_id, self.state_dir)
        return state

    def ensure_state_dir(self) -> None:
        """Create the state directory and its artifact subdirectories."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        for subdir in ARTIFACT_SUBDIRS:
            (self.state_dir / subdir).mkdir(exist_ok=True)

    def exists(self) -> bool:
        """Check if a loop state has been persisted."""
        return self.state_path.exists()

    # =========================================================================
    # Load / Save
    # =========================================================================

    def _read(self, path: Path) -> LoopState:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("state document is not a JSON object")
        return LoopState.from_dict(data)

    def _write(self, state: LoopState, rotate_backup: bool = True) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

        if rotate_backup and self.state_path.exists():
            shutil.copy2(self.state_path, self.backup_path)

        temp_path = self.state_path.with_name(f"{STATE_FILENAME}.tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2, default=str)
        os.replace(temp_path, self.state_path)

    def load(self) -> LoopState:
        """
        Load the loop state, falling back to the backup if needed.

        Returns:
            The persisted LoopState

        Raises:
            StateNotFoundError: No state has been saved yet
            StateCorruptedError: Primary unreadable and no usable backup
        """
        if not self.exists():
            raise StateNotFoundError(self.state_path)

        try:
            return self._read(self.state_path)
        except _PARSE_ERRORS as e:
            primary_error = f"{type(e).__name__}: {e}"

        if not self.backup_path.exists():
            print_error(f"Loop state corrupted and no backup available: {primary_error}")
            raise StateCorruptedError(self.state_path, self.backup_path, primary_error)

        try:
            state = self._read(self.backup_path)
        except _PARSE_ERRORS as e:
            backup_error = f"{type(e).__name__}: {e}"
            print_error(f"Loop state and backup both corrupted: {backup_error}")
            raise StateCorruptedError(
                self.state_path, self.backup_path, primary_error, backup_error,
            ) from e

        print_warning(f"Corrupted loop state recovered from backup ({primary_error})")
        # Restore the primary without rotating, so the good backup is kept
        state.last_update = utc_now()
        self._write(state, rotate_backup=False)
        return state

    def save(self, state: LoopState) -> None:
        """
        Persist state, keeping the previous generation as the backup.

        Args:
            state: LoopState to save (its last_update is refreshed)
        """
        state.last_update = utc_now()
        self._write(state)

    def update(self, **changes) -> LoopState:
        """
        Load, apply field changes, and save.

        Raises:
            StateNotFoundError: If no state exists yet
            ValueError: If a change names an unknown field
        """
        state = self.load()

        for key in changes:
            if not hasattr(state, key):
                raise ValueError(f"Unknown loop state field: {key}")

        for key, value in changes.items():
            if key == "status" and not isinstance(value, LoopStatus):
                value = LoopStatus(value)
            setattr(state, key, value)

        self.save(state)
        return state

    def add_iteration(self, record: IterationRecord) -> LoopState:
        """
        Append an iteration record and fold it into the aggregates.

        Merges learnings (line-deduplicated) and modified files (deduplicated),
        and keeps current_iteration equal to the number of recorded iterations.
        """
        state = self.load()

        state.iterations.append(record)
        state.current_iteration = len(state.iterations)

        analysis = record.analysis
        if analysis.learnings:
            state.accumulated_learnings = merge_learnings(
                state.accumulated_learnings, record.number, analysis.learnings,
            )
        if analysis.artifacts_modified:
            state.files_modified = merge_files(state.files_modified, analysis.artifacts_modified)

        self.save(state)
        return state

    def set_current_pid(self, pid: Optional[int]) -> LoopState:
        """Record the worker process currently executing this loop."""
        return self.update(current_pid=pid)

    def set_status(self, status: LoopStatus) -> LoopState:
        return self.update(status=status)

    def clear(self) -> None:
        """
        Mark the loop aborted. Data is kept on disk.

        No-op when no state exists.
        """
        if not self.exists():
            return
        state = self.load()
        state.status = LoopStatus.ABORTED
        self.save(state)

    # =========================================================================
    # Iteration Artifacts
    # =========================================================================

    @staticmethod
    def _prefix(iteration: int) -> str:
        return str(iteration).zfill(3)

    def get_iteration_dir(self, iteration: int) -> Path:
        return self.state_dir / "iterations" / self._prefix(iteration)

    def get_prompt_path(self, iteration: int) -> Path:
        return self.state_dir / "prompts" / f"{self._prefix(iteration)}-prompt.md"

    def get_output_paths(self, iteration: int) -> tuple[Path, Path]:
        """Return (stdout, stderr) capture paths for an iteration."""
        prefix = self._prefix(iteration)
        outputs = self.state_dir / "outputs"
        return outputs / f"{prefix}-stdout.log", outputs / f"{prefix}-stderr.log"

    def get_analysis_path(self, iteration: int) -> Path:
        return self.state_dir / "analysis" / f"{self._prefix(iteration)}-analysis.json"

    def save_analysis(self, iteration: int, analysis: dict) -> Path:
        """Write an iteration's analysis result as JSON."""
        path = self.get_analysis_path(iteration)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(analysis, f, indent=2, default=str)
        return path


def create_state_manager(project_dir: Path, loop_id: Optional[str] = None) -> StateManager:
    """
    Create a StateManager for a project.

    Args:
        project_dir: Project root directory
        loop_id: Optional loop identifier to bind to

    Returns:
        Configured StateManager instance
    """
    return StateManager(project_dir, loop_id=loop_id)
