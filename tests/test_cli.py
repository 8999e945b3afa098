"""
Tests for the Loop Warden CLI
=============================

Tests for loopwarden/cli/overseer_cli.py
"""

import pytest

from loopwarden.cli.overseer_cli import build_parser, main
from loopwarden.config import EscalationConfig, OverseerConfig
from loopwarden.models import HealthStatus, LoopStatus
from loopwarden.overseer import Overseer
from loopwarden.state_manager import StateManager

DEAD_PID = 999_999_999


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep LOOPWARDEN_* variables from leaking into the CLI config."""
    for name in (
        "LOOPWARDEN_NOTIFICATIONS",
        "LOOPWARDEN_ISSUE_API_URL",
        "LOOPWARDEN_REPOSITORY",
        "LOOPWARDEN_TOKEN_PATH",
        "LOOPWARDEN_WEBHOOK_URL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def manager(temp_project):
    """A running loop whose worker pid is gone."""
    mgr = StateManager(temp_project)
    mgr.initialize("Port the CSV exporter to streaming writes", "Exporter tests pass", max_iterations=4)
    mgr.set_current_pid(DEAD_PID)
    return mgr


def run(temp_project, *args):
    return main(["--project-dir", str(temp_project), *args])


# =============================================================================
# Parser Tests
# =============================================================================

class TestParser:
    """Tests for argument parsing."""

    def test_resume_requires_reason(self):
        """resume without --reason is a usage error."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["resume", "loop-1"])

    def test_no_command(self, temp_project):
        """No subcommand prints help and fails."""
        assert run(temp_project) == 1


# =============================================================================
# Status / Abort
# =============================================================================

class TestStatus:
    """Tests for `loopwarden status` and `loopwarden abort`."""

    def test_status_without_state(self, temp_project):
        """No state is reported as a failure."""
        assert run(temp_project, "status") == 1

    def test_status_with_state(self, temp_project, manager, make_record):
        """A loop with iterations is shown."""
        manager.add_iteration(make_record(1, completion_percentage=25, failure_class="ValueError"))
        manager.add_iteration(make_record(2, completion_percentage=40, tests_passing=True))

        assert run(temp_project, "status") == 0
        assert run(temp_project, "status", "--limit", "1") == 0

    def test_abort(self, temp_project, manager):
        """abort marks the loop aborted."""
        assert run(temp_project, "abort") == 0
        assert manager.load().status is LoopStatus.ABORTED

    def test_abort_without_state(self, temp_project):
        """abort without state fails."""
        assert run(temp_project, "abort") == 1


# =============================================================================
# Recovery
# =============================================================================

class TestRecover:
    """Tests for `loopwarden recover` and `loopwarden recovered`."""

    def test_dry_run_leaves_state(self, temp_project, manager):
        """--dry-run reports without changing status."""
        assert run(temp_project, "recover", "--dry-run") == 0
        assert manager.load().status is LoopStatus.RUNNING

    def test_recover_then_recovered(self, temp_project, manager):
        """recover -> recovering, recovered -> running."""
        assert run(temp_project, "recover") == 0
        assert manager.load().status is LoopStatus.RECOVERING

        assert run(temp_project, "recovered") == 0
        assert manager.load().status is LoopStatus.RUNNING

    def test_recovered_when_running(self, temp_project, manager):
        """recovered fails when the loop is not recovering."""
        assert run(temp_project, "recovered") == 1

    def test_recover_without_state(self, temp_project):
        """Nothing to recover is not an error."""
        assert run(temp_project, "recover") == 0


# =============================================================================
# Overseer Commands
# =============================================================================

@pytest.fixture
def paused_overseer(temp_project, manager, make_record):
    """An overseer log for the default loop, paused on a stuck loop."""
    loop_id = manager.load().loop_id
    config = OverseerConfig(escalation=EscalationConfig(enable_notifications=False))
    overseer = Overseer(
        loop_id,
        "Port the CSV exporter to streaming writes",
        storage_path=temp_project / ".loopwarden" / "overseer",
        config=config,
    )
    for n in range(1, 7):
        overseer.check(make_record(
            n, failure_class="UnicodeEncodeError", learnings="CSV exporter streaming writes fail",
        ))
    assert overseer.current_status is HealthStatus.PAUSED
    manager.set_status(LoopStatus.PAUSED)
    return overseer


class TestOverseerCommands:
    """Tests for `loopwarden report` and `loopwarden resume`."""

    def test_report(self, temp_project, paused_overseer):
        """report renders an existing overseer log."""
        assert run(temp_project, "report", paused_overseer.loop_id) == 0

    def test_report_missing_log(self, temp_project):
        """An unknown loop is reported as an error."""
        assert run(temp_project, "report", "missing-loop") == 1

    def test_resume(self, temp_project, manager, paused_overseer):
        """resume clears the pause in the overseer log and the loop state."""
        loop_id = paused_overseer.loop_id

        assert run(temp_project, "resume", loop_id, "--reason", "Encoding fixed by hand") == 0

        restored = Overseer.load(loop_id, temp_project / ".loopwarden" / "overseer")
        assert restored.intervention_system.is_paused is False
        assert manager.load().status is LoopStatus.RUNNING

    def test_resume_twice(self, temp_project, paused_overseer):
        """A second resume finds nothing paused."""
        loop_id = paused_overseer.loop_id
        run(temp_project, "resume", loop_id, "-r", "ok")

        assert run(temp_project, "resume", loop_id, "-r", "again") == 1

    def test_resume_per_loop_state(self, temp_project, make_record):
        """resume LOOP_ID resumes that loop's own state without --loop-id."""
        per_loop = StateManager(temp_project, loop_id="loop-x")
        per_loop.initialize("Speed up the image resizer", "Benchmarks under 200ms")
        per_loop.set_status(LoopStatus.PAUSED)
        overseer = Overseer(
            "loop-x",
            "Speed up the image resizer",
            storage_path=temp_project / ".loopwarden" / "overseer",
            config=OverseerConfig(escalation=EscalationConfig(enable_notifications=False)),
        )
        for n in range(1, 7):
            overseer.check(make_record(n, failure_class="MemoryError", learnings="image resizer runs out of memory"))

        assert run(temp_project, "resume", "loop-x", "-r", "ok") == 0
        assert per_loop.load().status is LoopStatus.RUNNING

    def test_corrupted_log(self, temp_project):
        """A corrupted overseer log is an error, not a traceback."""
        log_dir = temp_project / ".loopwarden" / "overseer"
        log_dir.mkdir(parents=True, exist_ok=True)
        (log_dir / "loop-1-overseer-log.json").write_text("{not json")

        assert run(temp_project, "report", "loop-1") == 1
        assert run(temp_project, "resume", "loop-1", "-r", "ok") == 1
