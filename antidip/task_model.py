"""
Task & Goal Model

Data structures for tasks, goals (pillars), sprint and user state, plus the
progress transitions that keep status and stuck flags consistent.

INVARIANTS:
- 0 <= progress <= 100
- status == done iff progress == 100 (abandoned overrides below 100)
- stuck_at_ninety is forced False the moment progress reaches 100
- last_progress_update moves ONLY when progress changes value
- completed_at is set once, the first time progress reaches 100

Serialized field names follow the host application's stored JSON
(camelCase for tasks, snake_case for pillar metrics) so the same dicts can
be fed to rule conditions without translation.
"""

import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import STUCK_PROGRESS_MAX, STUCK_PROGRESS_MIN


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskType(str, Enum):
    BUILD = "build"
    CLOSE = "close"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(str, Enum):
    ACTIVE = "active"
    STUCK = "stuck"
    DONE = "done"
    ABANDONED = "abandoned"


class GoalType(str, Enum):
    MAIN = "main"
    SECONDARY = "secondary"
    LAB = "lab"


# -----------------------------------------------------------------------------
# Timestamp helpers
# -----------------------------------------------------------------------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO timestamp (or datetime) into an aware UTC datetime.

    Naive values are interpreted as local time. Returns None for missing or
    unparseable input; callers treat None as "no data", never as stale.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    try:
        return dt.astimezone(timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and Z suffix."""
    dt = value.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def to_millis(value: datetime) -> int:
    return int(value.astimezone(timezone.utc).timestamp() * 1000)


def from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def days_between(start: Any, end: datetime) -> Optional[int]:
    """Whole days (floor) from start to end; None when start is unparseable."""
    start_dt = parse_timestamp(start)
    end_dt = parse_timestamp(end)
    if start_dt is None or end_dt is None:
        return None
    seconds = (end_dt - start_dt).total_seconds()
    return int(seconds // 86400)


def generate_task_id() -> int:
    return int(time.time() * 1000) + random.randint(0, 999_999)


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Task:
    """
    Immutable task snapshot.

    Transitions produce new Task objects (see apply_progress_update and
    refresh_stuck_state); nothing mutates a task in place.
    """
    id: Any
    name: str
    type: str = TaskType.BUILD.value
    priority: str = TaskPriority.MEDIUM.value
    progress: int = 0
    status: str = TaskStatus.ACTIVE.value
    stuck_at_ninety: bool = False
    last_progress_update: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    definition_of_done: str = ""
    due_date: Optional[str] = None

    def __post_init__(self):
        """Validate task on creation."""
        if isinstance(self.progress, bool) or not isinstance(self.progress, int):
            raise ValueError(f"Progress must be an integer, got {self.progress!r}")
        if not 0 <= self.progress <= 100:
            raise ValueError(f"Progress must be 0-100, got {self.progress}")
        if self.type not in [t.value for t in TaskType]:
            raise ValueError(f"Invalid task type: {self.type}")
        if self.priority not in [p.value for p in TaskPriority]:
            raise ValueError(f"Invalid priority: {self.priority}")
        if self.status not in [s.value for s in TaskStatus]:
            raise ValueError(f"Invalid status: {self.status}")
        if (self.status == TaskStatus.DONE.value) != (self.progress == 100):
            raise ValueError(f"Status done and progress 100 go together, got {self.status} at {self.progress}")
        if self.status == TaskStatus.STUCK.value and not _in_stuck_band(self.progress):
            raise ValueError(
                f"Status stuck requires progress {STUCK_PROGRESS_MIN}-{STUCK_PROGRESS_MAX}, got {self.progress}"
            )

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE.value

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.DONE.value, TaskStatus.ABANDONED.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "priority": self.priority,
            "progress": self.progress,
            "status": self.status,
            "stuckAtNinety": self.stuck_at_ninety,
            "lastProgressUpdate": self.last_progress_update,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "definitionOfDone": self.definition_of_done,
            "dueDate": self.due_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """
        Create a task from stored JSON.

        Progress is clamped and rounded; unknown enum values fall back to
        defaults, and the stored status is reconciled with progress the same
        way a progress update would derive it.
        """
        if "id" not in data:
            raise ValueError("Task is missing 'id'")
        raw_progress = data.get("progress", 0)
        try:
            progress = int(round(float(raw_progress)))
        except (TypeError, ValueError):
            raise ValueError(f"Task {data.get('id')} has non-numeric progress: {raw_progress!r}")
        progress = max(0, min(100, progress))

        task_type = data.get("type")
        if task_type not in [t.value for t in TaskType]:
            task_type = TaskType.BUILD.value
        priority = data.get("priority")
        if priority not in [p.value for p in TaskPriority]:
            priority = TaskPriority.MEDIUM.value
        stored_status = data.get("status")
        if stored_status not in [s.value for s in TaskStatus]:
            stored_status = TaskStatus.ACTIVE.value
        status = _derive_status(stored_status, progress, stored_status == TaskStatus.STUCK.value)

        return cls(
            id=data["id"],
            name=str(data.get("name", "")),
            type=task_type,
            priority=priority,
            progress=progress,
            status=status,
            stuck_at_ninety=bool(data.get("stuckAtNinety", False)) and progress < 100,
            last_progress_update=data.get("lastProgressUpdate"),
            created_at=data.get("createdAt"),
            completed_at=data.get("completedAt"),
            definition_of_done=data.get("definitionOfDone") or "",
            due_date=data.get("dueDate"),
        )


# -----------------------------------------------------------------------------
# Pillar / Sprint / User
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Pillar:
    """Goal container of tasks."""
    id: Any
    name: str
    completion: int = 0
    type: str = GoalType.SECONDARY.value
    days_stuck: Optional[int] = None
    ninety_percent_alert: bool = False
    last_activity_date: Optional[str] = None
    status: str = "in_progress"
    tasks: Tuple[Task, ...] = ()

    def __post_init__(self):
        if not 0 <= self.completion <= 100:
            raise ValueError(f"Completion must be 0-100, got {self.completion}")
        if self.type not in [t.value for t in GoalType]:
            raise ValueError(f"Invalid goal type: {self.type}")
        if not isinstance(self.tasks, tuple):
            raise ValueError("tasks must be a tuple for immutability")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "completion": self.completion,
            "type": self.type,
            "days_stuck": self.days_stuck,
            "ninety_percent_alert": self.ninety_percent_alert,
            "last_activity_date": self.last_activity_date,
            "status": self.status,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], tasks: Tuple[Task, ...] = ()) -> "Pillar":
        goal_type = data.get("type")
        if goal_type not in [t.value for t in GoalType]:
            goal_type = GoalType.SECONDARY.value
        try:
            completion = max(0, min(100, int(round(float(data.get("completion", 0) or 0)))))
        except (TypeError, ValueError):
            completion = 0
        days_stuck = data.get("days_stuck")
        return cls(
            id=data.get("id"),
            name=str(data.get("name", "")),
            completion=completion,
            type=goal_type,
            days_stuck=int(days_stuck) if isinstance(days_stuck, (int, float)) else None,
            ninety_percent_alert=bool(data.get("ninety_percent_alert", False)),
            last_activity_date=data.get("last_activity_date"),
            status=str(data.get("status", "in_progress")),
            tasks=tasks,
        )


@dataclass(frozen=True)
class SprintDay:
    day: str
    checked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"day": self.day, "checked": self.checked}


@dataclass(frozen=True)
class Sprint:
    week: int = 0
    year: int = 0
    goal: str = ""
    progress: Tuple[SprintDay, ...] = ()
    done_tasks: Tuple[str, ...] = ()
    blocked_tasks: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": self.week,
            "year": self.year,
            "goal": self.goal,
            "progress": [d.to_dict() for d in self.progress],
            "done_tasks": list(self.done_tasks),
            "blocked_tasks": list(self.blocked_tasks),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Sprint":
        data = data or {}
        days = tuple(
            SprintDay(day=str(d.get("day", "")), checked=bool(d.get("checked", False)))
            for d in data.get("progress") or []
            if isinstance(d, dict)
        )
        return cls(
            week=int(data.get("week", 0) or 0),
            year=int(data.get("year", 0) or 0),
            goal=str(data.get("goal", "")),
            progress=days,
            done_tasks=tuple(str(t) for t in data.get("done_tasks") or []),
            blocked_tasks=tuple(str(t) for t in data.get("blocked_tasks") or []),
        )


@dataclass(frozen=True)
class UserProfile:
    id: str = ""
    name: str = ""
    last_checkin: Optional[str] = None
    streak: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "last_checkin": self.last_checkin,
            "streak": self.streak,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserProfile":
        data = data or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            last_checkin=data.get("last_checkin"),
            streak=int(data.get("streak", 0) or 0),
        )


@dataclass(frozen=True)
class AppSnapshot:
    """
    Consistent read-only view of goals, sprint and user taken at tick start.

    Rule conditions see the plain-dict form produced by condition_context().
    """
    pillars: Tuple[Pillar, ...] = ()
    sprint: Sprint = field(default_factory=Sprint)
    user: UserProfile = field(default_factory=UserProfile)

    @property
    def tasks(self) -> List[Task]:
        return [t for p in self.pillars for t in p.tasks]

    def condition_context(self) -> Dict[str, Any]:
        return {
            "pillars": [p.to_dict() for p in self.pillars],
            "sprint": self.sprint.to_dict(),
            "user": self.user.to_dict(),
        }


# -----------------------------------------------------------------------------
# Transitions
# -----------------------------------------------------------------------------
def create_task(
    name: str,
    task_type: TaskType = TaskType.BUILD,
    priority: TaskPriority = TaskPriority.MEDIUM,
    now: Optional[datetime] = None,
    task_id: Any = None,
) -> Task:
    stamp = format_timestamp(now or utc_now())
    return Task(
        id=task_id if task_id is not None else generate_task_id(),
        name=name,
        type=TaskType(task_type).value,
        priority=TaskPriority(priority).value,
        progress=0,
        status=TaskStatus.ACTIVE.value,
        stuck_at_ninety=False,
        last_progress_update=stamp,
        created_at=stamp,
    )


def apply_progress_update(
    task: Task,
    new_progress: int,
    now: Optional[datetime] = None,
    detector=None,
) -> Task:
    """
    Apply a progress change and recompute derived fields.

    A write with an unchanged value leaves last_progress_update untouched,
    so repeated saves do not reset the staleness clock.
    """
    from .stuck_detector import StuckDetector

    now = now or utc_now()
    progress = max(0, min(100, int(new_progress)))
    changed = progress != task.progress
    last_update = format_timestamp(now) if changed else task.last_progress_update

    if progress == 100:
        stuck = False
    else:
        stuck = (detector or StuckDetector()).is_stuck_at_90(
            {"id": task.id, "progress": progress, "lastProgressUpdate": last_update}, now
        )

    return replace(
        task,
        progress=progress,
        last_progress_update=last_update,
        stuck_at_ninety=stuck,
        status=_derive_status(task.status, progress, stuck),
        completed_at=task.completed_at or (format_timestamp(now) if progress == 100 else None),
    )


def refresh_stuck_state(task: Task, now: Optional[datetime] = None, detector=None) -> Task:
    """Recompute status/stuck_at_ninety only; progress is never touched."""
    from .stuck_detector import StuckDetector

    detector = detector or StuckDetector()
    stuck = False if task.progress == 100 else detector.is_stuck_at_90(task, now)
    status = _derive_status(task.status, task.progress, stuck)
    if stuck == task.stuck_at_ninety and status == task.status:
        return task
    return replace(task, stuck_at_ninety=stuck, status=status)


def _in_stuck_band(progress: int) -> bool:
    return STUCK_PROGRESS_MIN <= progress <= STUCK_PROGRESS_MAX


def _derive_status(previous: str, progress: int, stuck: bool) -> str:
    if progress == 100:
        return TaskStatus.DONE.value
    if previous == TaskStatus.ABANDONED.value:
        return TaskStatus.ABANDONED.value
    if stuck and _in_stuck_band(progress):
        return TaskStatus.STUCK.value
    return TaskStatus.ACTIVE.value


def refresh_pillar(pillar: Pillar, now: Optional[datetime] = None, detector=None) -> Pillar:
    """Recompute completion (done ratio), days_stuck and the goal-level alert."""
    from .stuck_detector import StuckDetector

    detector = detector or StuckDetector()
    now = now or utc_now()
    tasks = tuple(refresh_stuck_state(t, now, detector) for t in pillar.tasks)
    if tasks:
        done = sum(1 for t in tasks if t.progress == 100)
        completion = round(done / len(tasks) * 100)
    else:
        completion = pillar.completion

    days = days_between(pillar.last_activity_date, now)
    days_stuck = max(0, days) if days is not None else pillar.days_stuck
    alert = (
        detector.in_stuck_band(completion)
        and days_stuck is not None
        and days_stuck > detector.threshold_days
    )
    return replace(
        pillar,
        tasks=tasks,
        completion=completion,
        days_stuck=days_stuck,
        ninety_percent_alert=alert,
    )


def sort_tasks_by_priority(tasks: List[Task]) -> List[Task]:
    return sorted(tasks, key=lambda t: TaskPriority(t.priority).rank)


def is_task_overdue(task: Task, now: Optional[datetime] = None) -> bool:
    due = parse_timestamp(task.due_date)
    if due is None:
        return False
    return due < (now or utc_now()) and not task.is_done


def get_tasks_needing_attention(tasks: List[Task], now: Optional[datetime] = None) -> List[Task]:
    return [
        t for t in tasks
        if t.status == TaskStatus.STUCK.value
        or t.stuck_at_ninety
        or 80 <= t.progress < 100
        or (t.priority == TaskPriority.CRITICAL.value and not t.is_terminal)
        or is_task_overdue(t, now)
    ]


def get_completion_stats(tasks: List[Task]) -> Dict[str, int]:
    total = len(tasks)
    return {
        "total": total,
        "completed": sum(1 for t in tasks if t.status == TaskStatus.DONE.value),
        "in_progress": sum(1 for t in tasks if t.status == TaskStatus.ACTIVE.value),
        "stuck": sum(1 for t in tasks if t.status == TaskStatus.STUCK.value or t.stuck_at_ninety),
        "average_progress": round(sum(t.progress for t in tasks) / total) if total else 0,
    }
