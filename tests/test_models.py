"""
Tests for the Supervision Data Model
====================================

Tests for loopwarden/models.py
"""

from loopwarden.models import (
    HealthCheck,
    HealthStatus,
    IterationAnalysis,
    IterationRecord,
    LoopState,
    LoopStatus,
    PauseIntervention,
    RegressionDetection,
    RegressionEvent,
    ResumeEntry,
    Severity,
    StuckDetection,
    WarnIntervention,
    detection_from_dict,
    intervention_from_dict,
)


class TestLoopState:
    """Tests for the persisted loop record."""

    def test_from_dict_tolerates_missing_optional_keys(self):
        """Only loopId is required."""
        state = LoopState.from_dict({"loopId": "loop-1"})

        assert state.loop_id == "loop-1"
        assert state.status is LoopStatus.RUNNING
        assert state.iterations == []
        assert state.current_pid is None

    def test_to_dict_uses_camel_case(self):
        """Persisted keys are camelCase."""
        state = LoopState(
            loop_id="loop-1",
            session_id="s-1",
            objective="Ship it",
            completion_criteria="Tests pass",
            current_pid=1234,
        )
        data = state.to_dict()

        assert data["loopId"] == "loop-1"
        assert data["completionCriteria"] == "Tests pass"
        assert data["currentPid"] == 1234
        assert data["config"]["model"] == "opus"

    def test_terminal_statuses(self):
        """Only completed and aborted are terminal."""
        assert LoopStatus.COMPLETED.is_terminal
        assert LoopStatus.ABORTED.is_terminal
        assert not LoopStatus.PAUSED.is_terminal
        assert not LoopStatus.RECOVERING.is_terminal


class TestIterationRecord:
    """Tests for iteration records."""

    def test_analysis_accepts_list_learnings(self):
        """Learnings given as a list are joined into text."""
        analysis = IterationAnalysis.from_dict({"learnings": ["one", "two"], "completionPercentage": 40})

        assert analysis.learnings == "one\ntwo"
        assert analysis.completion_percentage == 40

    def test_record_round_trip(self):
        """A record survives to_dict/from_dict."""
        record = IterationRecord(
            number=3,
            analysis=IterationAnalysis(failure_class="TypeError", artifacts_modified=("a.py",)),
            exit_code=0,
        )

        assert IterationRecord.from_dict(record.to_dict()) == record


class TestDetections:
    """Tests for detection variants."""

    def test_stuck_evidence(self):
        """Stuck evidence carries the repeated error and count."""
        detection = StuckDetection(
            severity=Severity.HIGH,
            message="stuck",
            repeated_error="ImportError",
            occurrences=4,
        )
        data = detection.to_dict()

        assert data["type"] == "stuck"
        assert data["evidence"]["repeatedError"] == "ImportError"
        assert data["evidence"]["occurrences"] == 4

    def test_detection_from_dict_dispatches_on_type(self):
        """The persisted type selects the variant."""
        original = RegressionDetection(
            severity=Severity.CRITICAL,
            message="regressed",
            regressions=(
                RegressionEvent(iteration=2, kind="tests", message="Tests went from passing to failing"),
                RegressionEvent(iteration=2, kind="coverage", message="drop", previous=85.0, current=70.0),
            ),
        )

        restored = detection_from_dict(original.to_dict())

        assert isinstance(restored, RegressionDetection)
        assert restored == original


class TestInterventions:
    """Tests for intervention variants."""

    def test_requires_approval_only_for_pause_and_abort(self):
        """Warn does not need approval, pause does."""
        assert not WarnIntervention(reason="r", warning="w").requires_approval
        assert PauseIntervention(reason="r", pause_reason="r").requires_approval

    def test_pause_round_trip(self):
        """A pause intervention with its detection survives persistence."""
        detection = StuckDetection(severity=Severity.CRITICAL, message="stuck", occurrences=6)
        pause = PauseIntervention(reason="stuck", detection=detection, pause_reason="stuck")

        restored = intervention_from_dict(pause.to_dict())

        assert restored == pause

    def test_resume_entry_round_trip(self):
        """Resume audit entries are recognised by their level tag."""
        entry = ResumeEntry(reason="approved", previous_pause_reason="stuck")

        restored = intervention_from_dict(entry.to_dict())

        assert isinstance(restored, ResumeEntry)
        assert restored.previous_pause_reason == "stuck"


class TestHealthCheck:
    """Tests for health check records."""

    def test_round_trip(self):
        """Health checks are rebuilt from their persisted form."""
        detection = StuckDetection(severity=Severity.HIGH, message="stuck", occurrences=4)
        check = HealthCheck(
            iteration_number=4,
            status=HealthStatus.WARNING,
            detections=(detection,),
            interventions=(WarnIntervention(reason="stuck", detection=detection, warning="w"),),
            metrics={"totalIterations": 4},
        )

        assert HealthCheck.from_dict(check.to_dict()) == check
