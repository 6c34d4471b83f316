"""
Stuck Detector - 90% Barrier Detection

Pure classification of a task snapshot: is it sitting in the near-complete
band without a progress update for longer than the threshold?

CRITICAL CONSTRAINTS:
- SIDE-EFFECT FREE: returns a boolean, callers decide what to do with it
- NEVER THROWS: malformed input degrades to "not stuck"
- MISSING DATA IS NOT STUCK: no last_progress_update means False
- progress == 100 can never be stuck
"""

import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional

from .config import EngineSettings
from .task_model import Task, days_between, utc_now

logger = logging.getLogger("stuck_detector")


class StuckDetector:
    """Stateless detector parameterised by the stuck band and threshold."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        settings = settings or EngineSettings()
        self.progress_min = settings.stuck_progress_min
        self.progress_max = settings.stuck_progress_max
        self.threshold_days = settings.stuck_threshold_days

    def in_stuck_band(self, progress: Any) -> bool:
        if isinstance(progress, bool) or not isinstance(progress, (int, float)):
            return False
        return self.progress_min <= progress <= self.progress_max

    def days_since_update(self, task: Any, now: Optional[datetime] = None) -> Optional[int]:
        """Whole days since the last progress change, None when unknown."""
        stamp = _field(task, "last_progress_update", "lastProgressUpdate")
        return days_between(stamp, now or utc_now())

    def is_stuck_at_90(self, task: Any, now: Optional[datetime] = None) -> bool:
        """
        True iff progress is in the stuck band AND the last progress update
        is more than threshold_days old.

        Accepts a Task or a raw task dict so callers holding stored JSON do
        not need to build models first.
        """
        try:
            progress = _field(task, "progress", "progress")
            if not self.in_stuck_band(progress):
                return False
            days = self.days_since_update(task, now)
            if days is None:
                return False
            return days > self.threshold_days
        except Exception as e:
            logger.warning(f"Stuck detection failed for task {_field(task, 'id', 'id')!r}: {e}")
            return False

    def find_stuck(self, tasks: Iterable[Any], now: Optional[datetime] = None) -> List[Any]:
        now = now or utc_now()
        return [t for t in tasks if self.is_stuck_at_90(t, now)]


def _field(task: Any, attr: str, key: str) -> Any:
    if isinstance(task, Task):
        return getattr(task, attr)
    if isinstance(task, dict):
        return task.get(key, task.get(attr))
    return getattr(task, attr, None)


_default_detector: Optional[StuckDetector] = None


def get_stuck_detector() -> StuckDetector:
    """Get the default-settings detector instance."""
    global _default_detector
    if _default_detector is None:
        _default_detector = StuckDetector()
    return _default_detector


def is_stuck_at_90(task: Any, now: Optional[datetime] = None) -> bool:
    """Module-level convenience using default settings."""
    return get_stuck_detector().is_stuck_at_90(task, now)
