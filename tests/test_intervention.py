"""
Tests for the Intervention System
=================================

Tests for loopwarden/intervention.py
"""

import pytest

from loopwarden.intervention import (
    PROMPT_DELIMITER,
    InterventionSystem,
    build_strategy_override,
    build_warning,
    determine_level,
    inject_warning,
)
from loopwarden.models import (
    AbortIntervention,
    DeviationDetection,
    InterventionLevel,
    LogIntervention,
    OscillationDetection,
    PauseIntervention,
    RedirectIntervention,
    RegressionDetection,
    ResourceBurnDetection,
    ResumeEntry,
    Severity,
    StuckDetection,
    WarnIntervention,
)


def stuck(severity=Severity.HIGH):
    return StuckDetection(
        severity=severity,
        message="Loop stuck: same error repeated 4 times with minimal progress",
        recommendations=("Change approach or strategy", "Request human intervention"),
        repeated_error="ImportError: no module named jwt",
        occurrences=4,
    )


@pytest.fixture
def system():
    return InterventionSystem()


# =============================================================================
# Level Table
# =============================================================================

class TestDetermineLevel:
    """Tests for the (severity, type) -> level table."""

    @pytest.mark.parametrize("detection, expected", [
        (ResourceBurnDetection(severity=Severity.CRITICAL, message="m"), InterventionLevel.ABORT),
        (RegressionDetection(severity=Severity.CRITICAL, message="m"), InterventionLevel.ABORT),
        (StuckDetection(severity=Severity.CRITICAL, message="m"), InterventionLevel.PAUSE),
        (OscillationDetection(severity=Severity.CRITICAL, message="m"), InterventionLevel.PAUSE),
        (StuckDetection(severity=Severity.HIGH, message="m"), InterventionLevel.REDIRECT),
        (OscillationDetection(severity=Severity.HIGH, message="m"), InterventionLevel.REDIRECT),
        (ResourceBurnDetection(severity=Severity.HIGH, message="m"), InterventionLevel.WARN),
        (RegressionDetection(severity=Severity.HIGH, message="m"), InterventionLevel.WARN),
        (DeviationDetection(severity=Severity.MEDIUM, message="m"), InterventionLevel.WARN),
        (DeviationDetection(severity=Severity.LOW, message="m"), InterventionLevel.LOG),
    ])
    def test_level(self, detection, expected):
        """Each severity/type pair maps to its documented level."""
        assert determine_level(detection) is expected


# =============================================================================
# Message Builders
# =============================================================================

class TestMessages:
    """Tests for warning and override text."""

    def test_warning_lists_recommendations(self):
        """Warnings carry the message, numbered actions and type guidance."""
        text = build_warning(stuck())

        assert text.startswith("OVERSEER WARNING: Loop stuck")
        assert "Recommended actions:" in text
        assert "1. Change approach or strategy" in text
        assert "2. Request human intervention" in text
        assert "same error repeatedly" in text

    def test_warning_without_recommendations(self):
        """The actions block is omitted when there are none."""
        text = build_warning(RegressionDetection(severity=Severity.HIGH, message="Tests broke"))

        assert "Recommended actions:" not in text
        assert "Fix the code, not the tests." in text

    def test_stuck_override_names_error(self):
        """Stuck overrides quote the repeated error and its count."""
        text = build_strategy_override(stuck())

        assert text.startswith("OVERRIDE: Change approach immediately.")
        assert '"ImportError: no module named jwt" 4 times' in text

    def test_oscillation_override(self):
        """Oscillation overrides forbid back-and-forth changes."""
        text = build_strategy_override(OscillationDetection(severity=Severity.HIGH, message="m"))

        assert "No more back-and-forth changes." in text

    def test_deviation_override_quotes_objective(self):
        """Deviation overrides restate the original objective."""
        detection = DeviationDetection(
            severity=Severity.MEDIUM, message="m", original_objective="Ship the billing API",
        )

        assert 'Original objective: "Ship the billing API".' in build_strategy_override(detection)

    def test_generic_override(self):
        """Other types get a generic reassessment directive."""
        text = build_strategy_override(ResourceBurnDetection(severity=Severity.HIGH, message="m"))

        assert text == "OVERRIDE: Reassess current approach and adjust strategy."

    def test_inject_warning_keeps_prompt_verbatim(self):
        """The original prompt follows the delimiter unchanged."""
        prompt = "Implement retries.\n\n  Keep   whitespace.\n"

        result = inject_warning(prompt, "OVERSEER WARNING: x")

        assert result.startswith("OVERSEER WARNING: x\n\n")
        assert PROMPT_DELIMITER in result
        assert result.endswith("ORIGINAL TASK:\n" + prompt)


# =============================================================================
# Intervene
# =============================================================================

class TestIntervene:
    """Tests for creating interventions."""

    def test_log_level(self, system):
        """Low severity only records."""
        result = system.intervene(DeviationDetection(severity=Severity.LOW, message="m"))

        assert isinstance(result, LogIntervention)
        assert result.requires_approval is False
        assert system.is_paused is False

    def test_warn_level(self, system):
        """Medium severity produces a warning."""
        result = system.intervene(DeviationDetection(severity=Severity.MEDIUM, message="Drifting"))

        assert isinstance(result, WarnIntervention)
        assert result.warning.startswith("OVERSEER WARNING: Drifting")

    def test_redirect_level(self, system):
        """High stuck produces a warning and override."""
        result = system.intervene(stuck())

        assert isinstance(result, RedirectIntervention)
        assert result.strategy_override.startswith("OVERRIDE:")
        assert result.warning

    def test_pause_sets_state_and_fires_callbacks(self):
        """Pause updates state and calls on_pause and on_intervention."""
        paused, seen = [], []
        system = InterventionSystem(on_pause=paused.append, on_intervention=seen.append)

        result = system.intervene(stuck(Severity.CRITICAL))

        assert isinstance(result, PauseIntervention)
        assert result.requires_approval is True
        assert system.is_paused is True
        assert system.pause_reason == result.reason
        assert paused == [result]
        assert seen == [result]

    def test_abort_sets_state(self):
        """Abort marks the system aborted and calls on_abort."""
        aborted = []
        system = InterventionSystem(on_abort=aborted.append)

        result = system.intervene(ResourceBurnDetection(severity=Severity.CRITICAL, message="Over budget"))

        assert isinstance(result, AbortIntervention)
        assert result.abort_reason == "Over budget"
        assert system.is_aborted is True
        assert aborted == [result]

    def test_log_is_bounded(self):
        """Only the most recent entries are kept."""
        system = InterventionSystem(max_log_size=3)
        for n in range(5):
            system.intervene(DeviationDetection(severity=Severity.LOW, message=f"m{n}"))

        log = system.get_log()

        assert [entry.reason for entry in log] == ["m2", "m3", "m4"]
        assert [entry.reason for entry in system.get_log(limit=1)] == ["m4"]


# =============================================================================
# Pause / Resume
# =============================================================================

class TestResume:
    """Tests for resuming after a pause."""

    def test_resume_when_not_paused(self, system):
        """Resuming an unpaused loop is refused and logs nothing."""
        assert system.resume("approved") is False
        assert system.get_log() == []

    def test_resume_clears_pause(self, system):
        """Resume clears the pause and records an audit entry."""
        pause = system.intervene(stuck(Severity.CRITICAL))

        assert system.resume("Human fixed the dependency") is True

        entry = system.get_log()[-1]
        assert isinstance(entry, ResumeEntry)
        assert entry.previous_pause_reason == pause.reason
        assert system.get_pause_status() == {"isPaused": False, "reason": None}

    def test_reset(self, system):
        """reset() clears log and state."""
        system.intervene(stuck(Severity.CRITICAL))
        system.intervene(ResourceBurnDetection(severity=Severity.CRITICAL, message="m"))

        system.reset()

        assert system.get_log() == []
        assert system.is_paused is False
        assert system.is_aborted is False


# =============================================================================
# Summary & Persistence
# =============================================================================

class TestSummaryAndState:
    """Tests for summaries and export/import."""

    def test_summary_counts(self, system):
        """Counts are grouped by level and detection type."""
        system.intervene(stuck())
        system.intervene(stuck(Severity.CRITICAL))
        system.resume("ok")

        summary = system.get_summary()

        assert summary["total"] == 3
        assert summary["byLevel"] == {"redirect": 1, "pause": 1, "resume": 1}
        assert summary["byType"] == {"stuck": 2}
        assert summary["isPaused"] is False

    def test_export_import(self, system):
        """A fresh system restored from an export has the same state and log."""
        system.intervene(stuck())
        system.intervene(stuck(Severity.CRITICAL))

        restored = InterventionSystem()
        restored.import_state(system.export_state())

        assert restored.is_paused is True
        assert restored.pause_reason == system.pause_reason
        assert restored.get_log() == system.get_log()

    def test_import_partial_state(self, system):
        """Missing keys leave current values untouched."""
        system.intervene(stuck(Severity.CRITICAL))

        system.import_state({"isAborted": True})

        assert system.is_paused is True
        assert system.is_aborted is True
        assert len(system.get_log()) == 1

    def test_clear_log_keeps_pause(self, system):
        """clear_log() only empties the log."""
        system.intervene(stuck(Severity.CRITICAL))

        system.clear_log()

        assert system.get_log() == []
        assert system.is_paused is True
