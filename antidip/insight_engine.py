"""
Progression Insight Engine - Anti-Dip Analysis

Derives per-task insight (stuck flag, days in current state, velocity and a
recommended next action) plus goal-level health and finishing priorities.

CRITICAL CONSTRAINTS:
- DETERMINISTIC: same task + same now = same insight
- RULE-BASED ONLY: recommended actions come from a fixed decision order
- ASYNC TIPS ARE OPTIONAL: the async variant asks the text generator for a
  motivation tip and falls back to a fixed tip chosen by the same order
- NO MUTATION: insights are derived, tasks are never changed here

Decision order (first match wins):
1. stuck                                   -> break-down-remaining
2. days since update > 7 AND progress < 50 -> set-deadline
3. days since update > 14 AND progress > 0 -> get-accountability
4. otherwise                               -> None
"""

import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import EngineSettings
from .stuck_detector import StuckDetector
from .task_model import (
    GoalType,
    Pillar,
    Task,
    TaskPriority,
    TaskType,
    days_between,
    parse_timestamp,
    utc_now,
)
from .text_generation import TextGenerator, build_motivation_tip_prompt, generate_bounded

logger = logging.getLogger("insight_engine")


class RecommendedAction(str, Enum):
    BREAK_DOWN_REMAINING = "break-down-remaining"
    SET_DEADLINE = "set-deadline"
    GET_ACCOUNTABILITY = "get-accountability"


SET_DEADLINE_AFTER_DAYS = 7
SET_DEADLINE_BELOW_PROGRESS = 50
ACCOUNTABILITY_AFTER_DAYS = 14

MOTIVATION_TIP_MAX_LEN = 100
MOTIVATION_TIP_MIN_LEN = 6

FALLBACK_TIPS = {
    RecommendedAction.BREAK_DOWN_REMAINING.value: "Split the remaining 10% into 3 micro-steps. Do the first one right now.",
    RecommendedAction.SET_DEADLINE.value: "Set a concrete deadline today. Write it down where you will see it.",
    RecommendedAction.GET_ACCOUNTABILITY.value: "Tell one person what you will finish this week and when.",
    "momentum": "Great work! Take one small step to keep the momentum going.",
    "start": "Start with 5 minutes. Breaking the inertia is what matters.",
}

# Health score tuning
HEALTH_SCORE_STUCK_PENALTY = 10
HEALTH_SCORE_FAST_COMPLETION_BONUS = 20
FAST_COMPLETION_DAYS = 7


@dataclass(frozen=True)
class TaskInsight:
    task_id: Any
    is_stuck: bool
    days_in_current_state: int
    recommended_action: Optional[str]
    completion_velocity: float
    motivation_tip: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "isStuck": self.is_stuck,
            "daysInCurrentState": self.days_in_current_state,
            "recommendedAction": self.recommended_action,
            "completionVelocity": self.completion_velocity,
            "motivationTip": self.motivation_tip,
        }


@dataclass(frozen=True)
class PillarInsight:
    pillar_id: Any
    completion_rate: float
    stuck_tasks_count: int
    average_completion_days: float
    health_score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WeeklyProgressReport:
    total_tasks: int
    completed_this_week: int
    stuck_tasks: int
    top_performer_id: Any
    needs_attention_ids: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FinishSession:
    """Minimal record of one Finish Mode attempt on a task."""
    task_id: Any
    status: str  # in_progress | completed | aborted
    end_time: Optional[str] = None


@dataclass(frozen=True)
class FinishRecommendation:
    task_id: Any
    task_name: str
    task_progress: int
    pillar_id: Any
    pillar_name: str
    score: float
    reasons: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["reasons"] = list(self.reasons)
        return result


class ProgressionInsightEngine:
    """
    Per-task and per-goal progression analysis.

    The text generator is optional; without it analyze_async returns the
    deterministic fallback tip.
    """

    def __init__(
        self,
        detector: Optional[StuckDetector] = None,
        text_generator: Optional[TextGenerator] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self._settings = settings or EngineSettings()
        self._detector = detector or StuckDetector(self._settings)
        self._text_generator = text_generator

    # -------------------------------------------------------------------------
    # Task-level
    # -------------------------------------------------------------------------

    def days_in_current_state(self, task: Task, now: Optional[datetime] = None) -> int:
        days = days_between(task.last_progress_update, now or utc_now())
        if days is None:
            return 0
        return max(0, days)

    def days_since_creation(self, task: Task, now: Optional[datetime] = None) -> int:
        days = days_between(task.created_at, now or utc_now())
        if days is None:
            return 0
        return max(0, days)

    def completion_velocity(self, task: Task, now: Optional[datetime] = None) -> float:
        """Progress points per day since creation, rounded to 2 decimals."""
        if not task.created_at or task.progress == 0:
            return 0.0
        days = self.days_since_creation(task, now)
        if days == 0:
            return 0.0
        return round(task.progress / days, 2)

    def recommend_action(self, task: Task, is_stuck: bool, days_since_update: int) -> Optional[str]:
        if is_stuck:
            return RecommendedAction.BREAK_DOWN_REMAINING.value
        if days_since_update > SET_DEADLINE_AFTER_DAYS and task.progress < SET_DEADLINE_BELOW_PROGRESS:
            return RecommendedAction.SET_DEADLINE.value
        if days_since_update > ACCOUNTABILITY_AFTER_DAYS and task.progress > 0:
            return RecommendedAction.GET_ACCOUNTABILITY.value
        return None

    def analyze(self, task: Task, now: Optional[datetime] = None) -> TaskInsight:
        """Synchronous analysis; motivation_tip is left empty."""
        now = now or utc_now()
        days = self.days_in_current_state(task, now)
        is_stuck = self._detector.is_stuck_at_90(task, now)
        return TaskInsight(
            task_id=task.id,
            is_stuck=is_stuck,
            days_in_current_state=days,
            recommended_action=self.recommend_action(task, is_stuck, days),
            completion_velocity=self.completion_velocity(task, now),
        )

    def fallback_tip(self, task: Task, is_stuck: bool, days_since_update: int) -> str:
        action = self.recommend_action(task, is_stuck, days_since_update)
        if action is not None:
            return FALLBACK_TIPS[action]
        if task.progress >= SET_DEADLINE_BELOW_PROGRESS:
            return FALLBACK_TIPS["momentum"]
        return FALLBACK_TIPS["start"]

    async def analyze_async(
        self,
        task: Task,
        now: Optional[datetime] = None,
        timeout_ms: Optional[int] = None,
    ) -> TaskInsight:
        """Analysis plus a motivation tip from the text generator (or fallback)."""
        insight = self.analyze(task, now)
        tip = await generate_bounded(
            self._text_generator,
            build_motivation_tip_prompt(task.name, task.progress),
            max_len=MOTIVATION_TIP_MAX_LEN,
            temperature=0.7,
            max_tokens=60,
            timeout_ms=timeout_ms or self._settings.ai_timeout_ms,
        )
        if not tip or len(tip) < MOTIVATION_TIP_MIN_LEN:
            tip = self.fallback_tip(task, insight.is_stuck, insight.days_in_current_state)
        return TaskInsight(
            task_id=insight.task_id,
            is_stuck=insight.is_stuck,
            days_in_current_state=insight.days_in_current_state,
            recommended_action=insight.recommended_action,
            completion_velocity=insight.completion_velocity,
            motivation_tip=tip,
        )

    def stuck_tasks(self, pillars: List[Pillar], now: Optional[datetime] = None) -> List[Task]:
        now = now or utc_now()
        return [t for p in pillars for t in p.tasks if self.analyze(t, now).is_stuck]

    # -------------------------------------------------------------------------
    # Goal-level
    # -------------------------------------------------------------------------

    def analyze_pillar(self, pillar: Pillar) -> PillarInsight:
        tasks = pillar.tasks
        total = len(tasks)
        completed = sum(1 for t in tasks if t.progress == 100)
        near_done = sum(1 for t in tasks if self._detector.in_stuck_band(t.progress))
        completion_rate = completed / total * 100 if total else 0.0

        durations = []
        for t in tasks:
            created = parse_timestamp(t.created_at)
            finished = parse_timestamp(t.completed_at)
            if created and finished:
                durations.append((finished - created).total_seconds() / 86400)
        average_days = sum(durations) / len(durations) if durations else 0.0

        bonus = HEALTH_SCORE_FAST_COMPLETION_BONUS if average_days < FAST_COMPLETION_DAYS else 0
        health = max(0.0, min(100.0, completion_rate - near_done * HEALTH_SCORE_STUCK_PENALTY + bonus))

        return PillarInsight(
            pillar_id=pillar.id,
            completion_rate=completion_rate,
            stuck_tasks_count=near_done,
            average_completion_days=average_days,
            health_score=health,
        )

    def weekly_progress_report(
        self,
        pillars: List[Pillar],
        now: Optional[datetime] = None,
    ) -> WeeklyProgressReport:
        now = now or utc_now()
        week_ago = parse_timestamp(now) - timedelta(days=7)

        total_tasks = 0
        completed_this_week = 0
        stuck = 0
        top_id = None
        best_rate = 0.0
        needs_attention = []

        for pillar in pillars:
            total_tasks += len(pillar.tasks)
            completed_this_week += sum(
                1 for t in pillar.tasks
                if parse_timestamp(t.completed_at) and parse_timestamp(t.completed_at) > week_ago
            )
            pillar_stuck = sum(1 for t in pillar.tasks if self._detector.in_stuck_band(t.progress))
            stuck += pillar_stuck

            rate = (
                sum(1 for t in pillar.tasks if t.progress == 100) / len(pillar.tasks) * 100
                if pillar.tasks else 0.0
            )
            if rate > best_rate:
                best_rate = rate
                top_id = pillar.id
            if pillar_stuck > 0 or rate < 30:
                needs_attention.append(pillar.id)

        return WeeklyProgressReport(
            total_tasks=total_tasks,
            completed_this_week=completed_this_week,
            stuck_tasks=stuck,
            top_performer_id=top_id,
            needs_attention_ids=needs_attention,
        )

    # -------------------------------------------------------------------------
    # Finishing priorities
    # -------------------------------------------------------------------------

    def score_task(
        self,
        task: Task,
        pillar: Pillar,
        sessions: List[FinishSession],
        now: datetime,
    ) -> Tuple[Optional[float], List[str]]:
        """Finishing score for one task; None excludes it from recommendations."""
        if task.progress >= 100 or task.is_done:
            return None, []

        reasons: List[str] = []
        stamp = task.last_progress_update or task.created_at
        days_since_update = max(0, days_between(stamp, now) or 0)
        age_days = max(0, days_between(task.created_at, now) or 0)
        stuck = task.stuck_at_ninety or (
            self._detector.in_stuck_band(task.progress)
            and days_since_update > self._detector.threshold_days
        )

        score = 0.0
        if stuck:
            score += 120
            reasons.append(f"stuck@90 ({task.progress}%, {days_since_update}d without progress)")
        if pillar.type == GoalType.MAIN.value:
            score += 70
            reasons.append("main goal")
        if days_since_update >= 7:
            score += min(35, days_since_update * 2)
            reasons.append(f"delayed ({days_since_update}d without update)")
        if age_days >= 14:
            score += 10
            reasons.append(f"old task ({age_days}d)")

        ended = [
            s for s in sessions
            if s.task_id == task.id and s.status != "in_progress" and s.end_time
        ]
        if len(ended) >= 2:
            score += 15 + len(ended) * 4
            reasons.append(f"finish attempts: {len(ended)} (last: {ended[-1].end_time[:10]})")

        if task.type == TaskType.CLOSE.value:
            score += 12
            reasons.append("type: close")
        if task.priority == TaskPriority.CRITICAL.value:
            score += 25
            reasons.append("priority: critical")
        elif task.priority == TaskPriority.HIGH.value:
            score += 15
            reasons.append("priority: high")

        if 80 <= task.progress < 100:
            score += 10
        if task.progress < 40:
            score -= 25

        if score <= 0:
            return None, []
        return score, reasons[:4]

    def todays_finish_recommendations(
        self,
        pillars: List[Pillar],
        sessions: Optional[List[FinishSession]] = None,
        limit: int = 5,
        now: Optional[datetime] = None,
    ) -> List[FinishRecommendation]:
        """Highest-scoring unfinished tasks across active goals (1..8 results)."""
        now = now or utc_now()
        sessions = sessions or []
        limit = max(1, min(8, int(limit)))

        recs: List[FinishRecommendation] = []
        for pillar in pillars:
            if pillar.status == "done":
                continue
            for task in pillar.tasks:
                score, reasons = self.score_task(task, pillar, sessions, now)
                if score is None:
                    continue
                recs.append(FinishRecommendation(
                    task_id=task.id,
                    task_name=task.name,
                    task_progress=task.progress,
                    pillar_id=pillar.id,
                    pillar_name=pillar.name,
                    score=score,
                    reasons=tuple(reasons),
                ))

        recs.sort(key=lambda r: r.score, reverse=True)
        return recs[:limit]


def format_time_ago(value: Any, now: Optional[datetime] = None) -> str:
    days = days_between(value, now or utc_now())
    if days is None:
        return "unknown"
    if days <= 0:
        return "today"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{days // 7} weeks ago"
    return f"{days // 30} months ago"


# Global instance
_insight_engine: Optional[ProgressionInsightEngine] = None


def get_insight_engine() -> ProgressionInsightEngine:
    """Get or create the default-settings insight engine."""
    global _insight_engine
    if _insight_engine is None:
        _insight_engine = ProgressionInsightEngine()
    return _insight_engine


def get_todays_finish_recommendations(
    pillars: List[Pillar],
    sessions: Optional[List[FinishSession]] = None,
    limit: int = 5,
    now: Optional[datetime] = None,
) -> List[FinishRecommendation]:
    return get_insight_engine().todays_finish_recommendations(pillars, sessions, limit, now)


logger.info("Progression Insight Engine module loaded")
