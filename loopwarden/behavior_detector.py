"""
Behavior Detector
=================

Detects pathological patterns in a loop's iteration history.

Detection Types:
- stuck: the same failure class keeps repeating with flat completion
- oscillation: modified-file sets flip back and forth (undo/redo)
- deviation: learnings stop mentioning the objective's keywords
- resource_burn: iteration count far beyond the budget
- regression: tests going passing -> failing, or coverage dropping sharply

The detector is stateless apart from its thresholds. Every detect_* method
returns None when the history is too short to judge.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence

from loopwarden.config import DetectorThresholds
from loopwarden.models import (
    DeviationDetection,
    Detection,
    IterationRecord,
    OscillationDetection,
    RegressionDetection,
    RegressionEvent,
    ResourceBurnDetection,
    Severity,
    StuckDetection,
)

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

STOP_WORDS = frozenset({
    "a", "about", "after", "all", "also", "an", "and", "any", "are", "as", "at",
    "be", "been", "but", "by", "can", "could", "do", "does", "for", "from",
    "has", "have", "how", "if", "in", "into", "is", "it", "its", "make", "more",
    "must", "new", "not", "now", "of", "on", "one", "only", "or", "other",
    "our", "out", "over", "should", "so", "some", "such", "than", "that", "the",
    "their", "them", "then", "there", "these", "they", "this", "those", "to",
    "up", "use", "using", "was", "way", "we", "were", "what", "when", "which",
    "while", "will", "with", "would", "you", "your",
})


@dataclass(frozen=True)
class DetectionContext:
    """Loop-level facts the history itself does not carry."""
    objective: str = ""
    max_iterations: Optional[int] = None


def _tokens(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))


def extract_keywords(text: str, min_length: int = 3) -> set[str]:
    """Lower-cased alphanumeric tokens of at least `min_length`, minus stop words."""
    return {t for t in _tokens(text) if len(t) >= min_length and t not in STOP_WORDS}


def keyword_similarity(keywords: set[str], text: str) -> float:
    """Share of `keywords` that appear as tokens in `text` (1.0 for no keywords)."""
    if not keywords:
        return 1.0
    return len(keywords & _tokens(text)) / len(keywords)


class BehaviorDetector:
    """
    Runs all five detectors over an iteration history.

    Thresholds are validated on construction and on update; a rejected
    update leaves the previous thresholds in place.
    """

    def __init__(self, thresholds: Optional[DetectorThresholds] = None):
        thresholds = thresholds or DetectorThresholds()
        thresholds.validate()
        self.thresholds = thresholds

    def detect(
        self,
        history: Sequence[IterationRecord],
        context: Optional[DetectionContext] = None,
    ) -> List[Detection]:
        """
        Run every detector and collect the non-null results.

        Args:
            history: Iteration records, oldest first
            context: Objective and iteration budget, when known

        Returns:
            List of detections (possibly several at once)
        """
        if not history:
            return []

        context = context or DetectionContext()
        candidates = (
            self.detect_stuck(history),
            self.detect_oscillation(history),
            self.detect_deviation(history, context.objective),
            self.detect_resource_burn(history, context.max_iterations),
            self.detect_regression(history),
        )
        detections = [d for d in candidates if d is not None]

        for detection in detections:
            logger.debug("Detected %s (%s): %s", detection.type.value, detection.severity.value, detection.message)
        return detections

    # =========================================================================
    # Stuck
    # =========================================================================

    def detect_stuck(self, history: Sequence[IterationRecord]) -> Optional[StuckDetection]:
        """Same failure class repeated across the trailing window with flat progress."""
        t = self.thresholds.stuck
        if len(history) < t.same_error_count:
            return None

        recent = list(history)[-t.window:]
        counts = Counter(r.analysis.failure_class for r in recent if r.analysis.failure_class)
        if not counts:
            return None

        repeated_error, occurrences = counts.most_common(1)[0]
        if occurrences < t.same_error_count:
            return None

        deltas = [
            curr.analysis.completion_percentage - prev.analysis.completion_percentage
            for prev, curr in zip(recent, recent[1:])
        ]
        avg_progress = sum(deltas) / len(deltas) if deltas else 0.0
        if abs(avg_progress) > t.max_progress_delta:
            return None

        blockers = [b for r in recent for b in r.analysis.blockers][:5]
        severity = Severity.CRITICAL if occurrences >= t.critical_error_count else Severity.HIGH

        return StuckDetection(
            severity=severity,
            message=f"Loop stuck: same error repeated {occurrences} times with minimal progress",
            recommendations=(
                "Change approach or strategy",
                "Break task into smaller sub-tasks",
                "Request human intervention",
                "Review and address root cause of repeated error",
            ),
            repeated_error=repeated_error,
            occurrences=occurrences,
            avg_progress_rate=round(avg_progress, 3),
            recent_blockers=tuple(blockers),
        )

    # =========================================================================
    # Oscillation
    # =========================================================================

    def detect_oscillation(self, history: Sequence[IterationRecord]) -> Optional[OscillationDetection]:
        """Modified-file sets that return to an earlier state after a detour."""
        t = self.thresholds.oscillation
        if len(history) < t.cycles + 2:
            return None

        recent = list(history)[-t.window:]
        file_sets = [frozenset(r.analysis.artifacts_modified) for r in recent]

        cycles = 0
        for i in range(2, len(file_sets)):
            before, between, current = file_sets[i - 2], file_sets[i - 1], file_sets[i]
            if current and current == before and current != between:
                cycles += 1
                continue
            if before:
                reverted = len([f for f in before if f in current and f not in between])
                if reverted / len(before) >= t.churn_ratio:
                    cycles += 1

        if cycles < t.cycles:
            return None

        return OscillationDetection(
            severity=Severity.HIGH,
            message=f"Oscillation detected: {cycles} undo/redo cycles in recent iterations",
            recommendations=(
                "Commit to one approach instead of alternating",
                "Review feedback quality - may be conflicting",
                "Pause and assess which approach is better",
                "Request human decision on direction",
            ),
            cycles=cycles,
            recent_file_changes=tuple(tuple(r.analysis.artifacts_modified) for r in recent),
        )

    # =========================================================================
    # Deviation
    # =========================================================================

    def detect_deviation(
        self,
        history: Sequence[IterationRecord],
        objective: str = "",
    ) -> Optional[DeviationDetection]:
        """Recent learnings that no longer mention the objective's keywords."""
        t = self.thresholds.deviation
        if len(history) < 2 or not objective:
            return None

        keywords = extract_keywords(objective, t.min_keyword_length)
        if not keywords:
            return None

        deviating = []
        for record in list(history)[-t.window:]:
            similarity = keyword_similarity(keywords, record.analysis.learnings)
            if similarity < t.min_similarity:
                deviating.append((record.number, round(similarity, 3)))

        if len(deviating) < t.min_deviating:
            return None

        average = sum(sim for _, sim in deviating) / len(deviating)
        return DeviationDetection(
            severity=Severity.MEDIUM,
            message="Objective deviation: recent work may have drifted from the original objective",
            recommendations=(
                "Review original objective and criteria",
                "Realign current work with stated goals",
                "Confirm scope with human if uncertain",
                "Document any necessary scope changes",
            ),
            original_objective=objective,
            average_similarity=round(average, 3),
            deviating_iterations=tuple(deviating),
        )

    # =========================================================================
    # Resource Burn
    # =========================================================================

    def detect_resource_burn(
        self,
        history: Sequence[IterationRecord],
        max_iterations: Optional[int] = None,
    ) -> Optional[ResourceBurnDetection]:
        """Iterations used versus the budget."""
        t = self.thresholds.resource
        if not history or not max_iterations or max_iterations <= 0:
            return None

        last = history[-1]
        ratio = last.number / max_iterations
        if ratio > t.critical_ratio:
            severity = Severity.CRITICAL
        elif ratio > t.high_ratio:
            severity = Severity.HIGH
        else:
            return None

        progress = last.analysis.completion_percentage
        first_recommendation = (
            "Consider aborting if little progress made"
            if progress < 50
            else "Increase iteration budget if task is viable"
        )
        return ResourceBurnDetection(
            severity=severity,
            message=(
                f"Resource burn: used {last.number}/{max_iterations} iterations "
                f"({ratio * 100:.0f}% of budget)"
            ),
            recommendations=(
                first_recommendation,
                "Analyze why estimates were incorrect",
                "Break remaining work into smaller tasks",
                "Request human decision on continuation",
            ),
            current_iteration=last.number,
            max_iterations=max_iterations,
            ratio=round(ratio, 3),
            completion_percent=progress,
        )

    # =========================================================================
    # Regression
    # =========================================================================

    def detect_regression(self, history: Sequence[IterationRecord]) -> Optional[RegressionDetection]:
        """Quality regressions between consecutive iterations."""
        t = self.thresholds.regression
        if len(history) < 2:
            return None

        recent = list(history)[-t.window:]
        events: List[RegressionEvent] = []
        worst_comparison = 0

        for prev, curr in zip(recent, recent[1:]):
            found = []
            if prev.analysis.tests_passing is True and curr.analysis.tests_passing is False:
                found.append(RegressionEvent(
                    iteration=curr.number,
                    kind="tests",
                    message="Tests went from passing to failing",
                ))

            before, after = prev.analysis.coverage_percent, curr.analysis.coverage_percent
            if before is not None and after is not None and before - after >= t.coverage_drop_points:
                found.append(RegressionEvent(
                    iteration=curr.number,
                    kind="coverage",
                    message=f"Coverage dropped {before - after:.1f} points",
                    previous=before,
                    current=after,
                ))

            events.extend(found)
            worst_comparison = max(worst_comparison, len(found))

        if not events:
            return None

        return RegressionDetection(
            severity=Severity.CRITICAL if worst_comparison >= 2 else Severity.HIGH,
            message=f"Regression detected: {len(events)} quality regressions in recent iterations",
            recommendations=(
                "Stop making changes that break tests",
                "Fix tests instead of deleting or disabling them",
                "Restore previous working state if needed",
            ),
            regressions=tuple(events),
        )

    # =========================================================================
    # Thresholds
    # =========================================================================

    def update_thresholds(self, overrides: dict) -> DetectorThresholds:
        """
        Apply partial threshold overrides, e.g. {"stuck": {"window": 8}}.

        Raises:
            ConfigValidationError: The merged thresholds are invalid (nothing is applied)
        """
        self.thresholds = self.thresholds.merged(overrides)
        return self.thresholds

    def get_thresholds(self) -> DetectorThresholds:
        return self.thresholds
