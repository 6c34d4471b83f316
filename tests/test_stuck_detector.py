"""
Unit Tests for the Stuck Detector

Test coverage for:
- Stuck band and staleness threshold boundaries
- Missing / malformed data degrading to "not stuck"
- Raw dict input
- Randomized stuck-band invariant
"""

import random
from datetime import timedelta

import pytest

from antidip.config import EngineSettings
from antidip.stuck_detector import StuckDetector, is_stuck_at_90
from antidip.task_model import days_between, format_timestamp

from tests.conftest import NOW, days_ago, make_task


@pytest.fixture
def detector():
    return StuckDetector(EngineSettings())


# -----------------------------------------------------------------------------
# Test 1: Concrete scenarios
# -----------------------------------------------------------------------------
class TestScenarios:
    """Fixed examples at the edges of the stuck band."""

    def test_95_percent_four_days_is_stuck(self, detector):
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=4), NOW) is True

    def test_100_percent_is_never_stuck(self, detector):
        assert detector.is_stuck_at_90(make_task(progress=100, updated_days_ago=4), NOW) is False

    def test_89_percent_is_below_band(self, detector):
        assert detector.is_stuck_at_90(make_task(progress=89, updated_days_ago=10), NOW) is False

    def test_band_edges(self, detector):
        assert detector.is_stuck_at_90(make_task(progress=90, updated_days_ago=5), NOW) is True
        assert detector.is_stuck_at_90(make_task(progress=99, updated_days_ago=5), NOW) is True

    def test_exactly_threshold_days_is_not_stuck(self, detector):
        """Staleness must exceed the threshold, not equal it."""
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=3), NOW) is False

    def test_partial_day_floors(self, detector):
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=3.9), NOW) is False
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=4.0), NOW) is True


# -----------------------------------------------------------------------------
# Test 2: Degraded input
# -----------------------------------------------------------------------------
class TestDegradedInput:
    """Absence of data must never be treated as stuck."""

    def test_missing_last_update(self, detector):
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=None), NOW) is False

    def test_unparseable_last_update(self, detector):
        task = make_task(progress=95, last_progress_update="not-a-date")
        assert detector.is_stuck_at_90(task, NOW) is False

    def test_dict_input(self, detector):
        task = {"id": 7, "progress": 92, "lastProgressUpdate": days_ago(6)}
        assert detector.is_stuck_at_90(task, NOW) is True

    def test_malformed_dict_never_raises(self, detector):
        assert detector.is_stuck_at_90({"progress": "ninety"}, NOW) is False
        assert detector.is_stuck_at_90({"progress": True, "lastProgressUpdate": days_ago(9)}, NOW) is False
        assert detector.is_stuck_at_90(None, NOW) is False
        assert detector.is_stuck_at_90({"progress": 95, "lastProgressUpdate": 12345}, NOW) is False

    def test_future_update_is_not_stuck(self, detector):
        task = make_task(progress=95, last_progress_update=format_timestamp(NOW + timedelta(days=5)))
        assert detector.is_stuck_at_90(task, NOW) is False


# -----------------------------------------------------------------------------
# Test 3: Configuration
# -----------------------------------------------------------------------------
class TestConfiguredBand:
    """Band and threshold come from settings."""

    def test_custom_threshold(self):
        detector = StuckDetector(EngineSettings(stuck_threshold_days=7))
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=5), NOW) is False
        assert detector.is_stuck_at_90(make_task(progress=95, updated_days_ago=8), NOW) is True

    def test_custom_band(self):
        detector = StuckDetector(EngineSettings(stuck_progress_min=80, stuck_progress_max=95))
        assert detector.is_stuck_at_90(make_task(progress=85, updated_days_ago=5), NOW) is True
        assert detector.is_stuck_at_90(make_task(progress=97, updated_days_ago=5), NOW) is False

    def test_find_stuck(self, detector):
        tasks = [
            make_task(1, progress=95, updated_days_ago=4),
            make_task(2, progress=50, updated_days_ago=40),
            make_task(3, progress=91, updated_days_ago=10),
        ]
        assert [t.id for t in detector.find_stuck(tasks, NOW)] == [1, 3]

    def test_module_level_helper(self):
        assert is_stuck_at_90(make_task(progress=95, updated_days_ago=4), NOW) is True


# -----------------------------------------------------------------------------
# Test 4: Invariant
# -----------------------------------------------------------------------------
class TestStuckInvariant:
    """Stuck implies the band and more than three days of staleness."""

    def test_randomized_pairs(self, detector):
        rng = random.Random(90)
        for _ in range(500):
            progress = rng.randint(0, 100)
            age = rng.uniform(-2, 30)
            task = make_task(progress=progress, updated_days_ago=age)
            if detector.is_stuck_at_90(task, NOW):
                assert 90 <= task.progress <= 99
                assert days_between(task.last_progress_update, NOW) > 3
