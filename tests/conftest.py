"""Shared fixtures for Loop Warden tests."""

import tempfile
from pathlib import Path

import pytest

from loopwarden.models import IterationAnalysis, IterationRecord


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_record():
    """Factory for IterationRecords: make_record(3, failure_class="TypeError")."""
    def _make(number: int, **analysis) -> IterationRecord:
        for key in ("artifacts_modified", "blockers"):
            if key in analysis:
                analysis[key] = tuple(analysis[key])
        return IterationRecord(number=number, analysis=IterationAnalysis(**analysis))
    return _make
