"""
Crash Recovery
==============

Detects loops that were recorded as running but whose worker process is gone,
and decides how the driver should resume them.

Recovery strategies, in priority order:
1. resume_internal   - a delegate (inner) loop is recorded as active; defer to it
2. continue_external - the last analysis said to keep going; continue from it
3. restart           - start fresh, carrying all accumulated learnings

Crash detection only reads the state file and the process table, so it is
safe to run from a separate process while a supervisor is active.
"""

import json
import logging
import os
import platform
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from loopwarden.models import IterationAnalysis, LoopState, LoopStatus
from loopwarden.output import print_info, print_warning
from loopwarden.state_manager import STATE_DIRNAME, StateManager

logger = logging.getLogger(__name__)

DELEGATE_STATE_FILENAME = "current-loop.json"


# =============================================================================
# Process Liveness
# =============================================================================

class ProcessLiveness(Protocol):
    """Answers whether a process id refers to a live process."""

    def is_alive(self, pid: int) -> bool:
        ...


class OsProcessLiveness:
    """Checks the real process table."""

    def is_alive(self, pid: int) -> bool:
        if platform.system() == "Windows":
            try:
                result = subprocess.run(
                    ["tasklist", "/FI", f"PID eq {pid}"],
                    capture_output=True,
                    text=True,
                    timeout=10,
                )
            except (OSError, subprocess.SubprocessError):
                return False
            return str(pid) in result.stdout

        try:
            # Signal 0 checks existence without delivering anything
            os.kill(pid, 0)
        except PermissionError:
            # Exists, but owned by someone else
            return True
        except (OSError, OverflowError):
            return False
        return True


# =============================================================================
# Results
# =============================================================================

class RecoveryStrategyType(Enum):
    RESUME_INTERNAL = "resume_internal"
    CONTINUE_EXTERNAL = "continue_external"
    RESTART = "restart"


@dataclass(frozen=True)
class RecoveryStrategy:
    """How the driver should resume a crashed loop."""
    type: RecoveryStrategyType
    action: str
    prompt: str

    def to_dict(self) -> dict:
        return {"type": self.type.value, "action": self.action, "prompt": self.prompt}


@dataclass(frozen=True)
class CrashReport:
    """Result of crash detection."""
    crashed: bool
    iteration: Optional[int] = None
    last_checkpoint: Optional[str] = None
    recovery_strategy: Optional[RecoveryStrategy] = None


@dataclass(frozen=True)
class RecoveryContext:
    """Returned by recover(): the state now marked `recovering` and the plan."""
    state: LoopState
    strategy: RecoveryStrategy


# =============================================================================
# Recovery Engine
# =============================================================================

class RecoveryEngine:
    """
    Detects crashed loops and plans their resumption.
    """

    def __init__(
        self,
        project_dir: Path,
        state_manager: Optional[StateManager] = None,
        liveness: Optional[ProcessLiveness] = None,
    ):
        """
        Initialize the recovery engine.

        Args:
            project_dir: Project root directory
            state_manager: State manager for the loop (defaults to the project's default loop)
            liveness: Process liveness check (defaults to the OS process table)
        """
        self.project_dir = Path(project_dir)
        self.state_manager = state_manager or StateManager(self.project_dir)
        self.liveness = liveness or OsProcessLiveness()
        self.delegate_state_path = self.project_dir / STATE_DIRNAME / "internal" / DELEGATE_STATE_FILENAME

    def read_delegate_state(self) -> Optional[dict]:
        """
        Read the delegate loop's state file.

        Returns:
            The parsed document, or None if missing or unreadable
        """
        if not self.delegate_state_path.exists():
            return None

        try:
            with open(self.delegate_state_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug("Ignoring unreadable delegate state %s: %s", self.delegate_state_path, e)
            return None

        return data if isinstance(data, dict) else None

    def is_process_alive(self, pid: Optional[int]) -> bool:
        """Check whether `pid` refers to a live process. False for None or non-positive ids."""
        if pid is None or isinstance(pid, bool) or pid <= 0:
            return False
        return self.liveness.is_alive(pid)

    def detect_crash(self) -> CrashReport:
        """
        Determine whether the persisted loop crashed.

        A loop crashed when its status is `running` and its recorded worker
        process is not alive. Missing state is never a crash.
        """
        if not self.state_manager.exists():
            return CrashReport(crashed=False)

        state = self.state_manager.load()

        if state.status is not LoopStatus.RUNNING:
            return CrashReport(crashed=False)

        if self.is_process_alive(state.current_pid):
            return CrashReport(crashed=False)

        print_warning(
            f"Loop {state.loop_id} is marked running but worker process "
            f"{state.current_pid} is not alive"
        )
        return CrashReport(
            crashed=True,
            iteration=state.current_iteration,
            last_checkpoint=f"iteration-{state.current_iteration}",
            recovery_strategy=self.determine_recovery_strategy(state),
        )

    def determine_recovery_strategy(self, state: LoopState) -> RecoveryStrategy:
        """Choose how to resume `state`, highest-priority option first."""
        delegate = self.read_delegate_state()
        if delegate and delegate.get("active"):
            return RecoveryStrategy(
                type=RecoveryStrategyType.RESUME_INTERNAL,
                action="Resume the active delegate loop",
                prompt=self.build_delegate_resume_prompt(state, delegate),
            )

        last = state.last_iteration
        if last is not None and last.analysis.should_continue:
            return RecoveryStrategy(
                type=RecoveryStrategyType.CONTINUE_EXTERNAL,
                action="Continue with accumulated learnings",
                prompt=self.build_continuation_prompt(state, last.analysis),
            )

        return RecoveryStrategy(
            type=RecoveryStrategyType.RESTART,
            action="Restart with accumulated learnings",
            prompt=self.build_restart_prompt(state),
        )

    # =========================================================================
    # Prompt Builders
    # =========================================================================

    def build_delegate_resume_prompt(self, state: LoopState, delegate: dict) -> str:
        lines = [
            "# Recovery: Resume Delegate Loop",
            "",
            "## Outer Loop Context",
            f"- Loop ID: {state.loop_id}",
            f"- Outer Iteration: {state.current_iteration}",
            f"- Objective: {state.objective}",
            "",
            "## Delegate Loop State",
            f"- Delegate Iteration: {delegate.get('currentIteration', 'unknown')}",
            f"- Task: {delegate.get('task') or state.objective}",
            "- Status: active (was interrupted)",
            "",
            "## Recovery Action",
            "",
            "Check the delegate loop's status, then resume it rather than starting new work.",
            "",
            "## Previous Learnings",
            state.accumulated_learnings or "None recorded",
            "",
        ]
        return "\n".join(lines)

    def build_continuation_prompt(self, state: LoopState, analysis: IterationAnalysis) -> str:
        blockers = "\n".join(f"- {b}" for b in analysis.blockers) or "None identified"
        lines = [
            "# Recovery: Continue Loop",
            "",
            "## Context",
            f"- Loop ID: {state.loop_id}",
            f"- Objective: {state.objective}",
            f"- Completion Criteria: {state.completion_criteria}",
            f"- Progress: {analysis.completion_percentage:g}%",
            "",
            "The session was interrupted. Continue from the last recorded state.",
            "",
            "### Last Analysis",
            analysis.learnings or "No learnings recorded",
            "",
            "### Suggested Approach",
            analysis.next_approach or "Continue with accumulated context",
            "",
            "### Blockers",
            blockers,
            "",
            "## Instructions",
            "",
            "Continue working on the objective. Check version control status for the latest state first.",
            "",
        ]
        return "\n".join(lines)

    def build_restart_prompt(self, state: LoopState) -> str:
        files = "\n".join(f"- {f}" for f in state.files_modified) or "None recorded"
        lines = [
            "# Recovery: Restart with Accumulated Learnings",
            "",
            "## Context",
            f"- Loop ID: {state.loop_id}",
            f"- Objective: {state.objective}",
            f"- Completion Criteria: {state.completion_criteria}",
            f"- Previous Iterations: {state.current_iteration}",
            "",
            "The session crashed and needs a fresh start with context.",
            "",
            "### Accumulated Learnings",
            state.accumulated_learnings or "None recorded",
            "",
            "### Files Modified",
            files,
            "",
            "## Instructions",
            "",
            "Start fresh but apply the learnings above. Verify the modified files before building on them.",
            "",
        ]
        return "\n".join(lines)

    # =========================================================================
    # Recovery Transitions
    # =========================================================================

    def recover(self) -> Optional[RecoveryContext]:
        """
        Detect a crash and, if found, mark the loop as recovering.

        Returns:
            RecoveryContext, or None when no recovery is needed
        """
        report = self.detect_crash()
        if not report.crashed:
            return None

        state = self.state_manager.update(status=LoopStatus.RECOVERING)
        print_info(f"Loop {state.loop_id} marked recovering ({report.recovery_strategy.type.value})")
        return RecoveryContext(state=state, strategy=report.recovery_strategy)

    def mark_recovered(self) -> bool:
        """
        Transition recovering -> running.

        Returns:
            True if the transition happened; False for any other status or no state
        """
        if not self.state_manager.exists():
            return False

        state = self.state_manager.load()
        if state.status is not LoopStatus.RECOVERING:
            return False

        state.status = LoopStatus.RUNNING
        self.state_manager.save(state)
        print_info(f"Loop {state.loop_id} recovered and running")
        return True


def create_recovery_engine(project_dir: Path, loop_id: Optional[str] = None) -> RecoveryEngine:
    """Create a RecoveryEngine for a project (optionally a specific loop)."""
    return RecoveryEngine(project_dir, state_manager=StateManager(project_dir, loop_id=loop_id))
