"""
Stuck Task Scheduler - Recurring Anti-Dip Sweeps

Runs as a background asyncio task owned by an explicit scheduler object:
- every tick: the custom-rule sweep (when a rule source is configured)
- once a day at the audit slot (default 10:00 local): the stuck-task sweep

CRITICAL CONSTRAINTS:
- ONE LOGICAL INSTANCE: start() is a no-op while another owner holds a fresh
  running marker; a marker whose heartbeat is stale may be taken over
- PERSISTED NEXT FIRE: the next audit time is stored; an overdue slot found
  at start runs immediately as a catch-up sweep
- DELAY CAP: a computed delay never exceeds 24 hours
- NO IMMEDIATE RETRY: a failed task load yields an empty sweep; the retry is
  the next scheduled slot
- AUDIT RECORD ALWAYS WRITTEN, notification or not
- HIDDEN HOST STOPS THE LOOP after an audit; the next start() resumes
- NOTHING ESCAPES A TICK: all failures are logged
- MINUTE ALIGNED: a sleep ends no later than just after the next
  wall-clock minute, so tick drift cannot skip a minute
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .config import AUDIT_SAMPLE_SIZE, MAX_SCHEDULE_DELAY_HOURS, EngineSettings, parse_time_of_day
from .cooldown_ledger import CooldownLedger, StuckNotificationGate
from .notification_engine import NotificationDispatcher, NotificationHistoryStore
from .notification_model import NotificationType
from .persistence import AppDataTaskLoader, KeyValueStore, TaskLoader, read_json, write_json
from .rule_engine import RuleEvaluator
from .rule_model import CustomRule, RuleEvaluationResult
from .stuck_detector import StuckDetector
from .task_model import (
    AppSnapshot,
    Task,
    format_timestamp,
    from_millis,
    parse_timestamp,
    to_millis,
    utc_now,
)
from .text_generation import (
    TextGenerator,
    build_stuck_notification_prompt,
    generate_bounded,
    parse_title_body,
)

logger = logging.getLogger("scheduler")

SCHEDULER_MARKER_KEY = "stuckTasksScheduler"
LAST_AUDIT_KEY = "lastStuckTasksAudit"
NEXT_AUDIT_KEY = "stuckTasksNextAudit"

# Ticks land just after the minute starts
TICK_BOUNDARY_MARGIN_SECONDS = 0.05

STUCK_NOTIFICATION_TAG = "stuck-tasks-audit"
STUCK_NOTIFICATION_ACTIONS = [
    {"action": "finish-mode", "title": "Finish Mode"},
    {"action": "dismiss", "title": "Later"},
]
STUCK_NOTIFICATION_AI_MAX_LEN = 400


class RuleSource(Protocol):
    async def load_rules(self) -> List[CustomRule]:
        ...

    async def load_snapshot(self) -> AppSnapshot:
        ...


def compute_next_fire(now: datetime, audit_time: str = "10:00") -> datetime:
    """
    Next occurrence of the daily audit slot in local time.

    A slot that has already passed today moves to tomorrow. The delay is
    capped at MAX_SCHEDULE_DELAY_HOURS.
    """
    slot = parse_time_of_day(audit_time)
    if slot is None:
        raise ValueError(f"Invalid audit time '{audit_time}', expected HH:MM")
    local = now.astimezone()
    target = local.replace(hour=slot[0], minute=slot[1], second=0, microsecond=0)
    if target <= local:
        target = target + timedelta(days=1)
    cap = timedelta(hours=MAX_SCHEDULE_DELAY_HOURS)
    if target - local > cap:
        target = local + cap
    return parse_timestamp(target)


@dataclass
class AuditResult:
    timestamp: str
    total_tasks: int = 0
    stuck_tasks: List[Task] = field(default_factory=list)
    notification_sent: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def stuck_task_ids(self) -> List[Any]:
        return [t.id for t in self.stuck_tasks]

    def to_record(self) -> Dict[str, Any]:
        """Debug audit record persisted after every sweep."""
        return {
            "timestamp": self.timestamp,
            "totalTasks": self.total_tasks,
            "stuckTasksCount": len(self.stuck_tasks),
            "stuckTaskIds": self.stuck_task_ids[:AUDIT_SAMPLE_SIZE],
            "notificationSent": self.notification_sent,
            "error": self.error,
        }


class StuckTaskScheduler:
    """
    Recurring sweep scheduler.

    Usage:
        scheduler = StuckTaskScheduler(store, loader, dispatcher)
        await scheduler.start()
        ...
        await scheduler.teardown()
    """

    def __init__(
        self,
        store: KeyValueStore,
        task_loader: TaskLoader,
        dispatcher: NotificationDispatcher,
        *,
        rule_evaluator: Optional[RuleEvaluator] = None,
        rule_source: Optional[RuleSource] = None,
        on_rule_results: Optional[Callable[[List[CustomRule], List[RuleEvaluationResult]], Any]] = None,
        text_generator: Optional[TextGenerator] = None,
        detector: Optional[StuckDetector] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        is_visible: Callable[[], bool] = lambda: True,
        owner_id: Optional[str] = None,
    ):
        self._store = store
        self._loader = task_loader
        self._dispatcher = dispatcher
        self._rule_evaluator = rule_evaluator
        self._rule_source = rule_source
        self._on_rule_results = on_rule_results
        self._text_generator = text_generator
        self._settings = settings or EngineSettings()
        self._detector = detector or StuckDetector(self._settings)
        self._gate = StuckNotificationGate(store, self._settings)
        self._clock = clock
        self._is_visible = is_visible
        self.owner_id = owner_id or uuid.uuid4().hex[:12]

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._next_fire: Optional[datetime] = None
        self._last_audit: Optional[AuditResult] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def next_fire(self) -> Optional[datetime]:
        return self._next_fire

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the background loop.

        Returns False (no-op) when already running here or when another
        owner holds a fresh running marker.
        """
        if self._running:
            return False

        now = self._clock()
        holder = self._active_marker_owner(now)
        if holder is not None and holder != self.owner_id:
            logger.info(f"Scheduler already running in instance {holder}, start skipped")
            return False

        self._write_marker(now)
        self._next_fire = self._restore_next_fire(now)
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Stuck task scheduler started ({self.owner_id}), next audit at "
            f"{format_timestamp(self._next_fire)}"
        )
        return True

    async def stop(self) -> None:
        """Cancel the loop and release the running marker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._release_marker()
        logger.info("Stuck task scheduler stopped")

    async def teardown(self) -> None:
        """Host shutdown: stop the loop and drop pending follow-ups."""
        await self.stop()
        self._dispatcher.cancel_pending()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_tick()
                if not self._running:
                    break
                await asyncio.sleep(self.tick_delay())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
                await asyncio.sleep(self._settings.tick_interval_seconds)

    def tick_delay(self, now: Optional[datetime] = None) -> float:
        """Seconds until the next tick, capped at just past the next minute."""
        now = now or self._clock()
        to_boundary = 60 - now.second - now.microsecond / 1_000_000
        return min(self._settings.tick_interval_seconds, to_boundary + TICK_BOUNDARY_MARGIN_SECONDS)

    async def run_tick(self, now: Optional[datetime] = None) -> Optional[AuditResult]:
        """
        One scheduler tick: heartbeat, rule sweep, and the stuck audit when
        the slot is due. Returns the audit result when an audit ran.
        """
        now = now or self._clock()
        self._write_marker(now)

        if self._rule_evaluator is not None and self._rule_source is not None:
            await self._run_rule_sweep(now)

        if self._next_fire is None:
            self._next_fire = self._restore_next_fire(now)
        if now < self._next_fire:
            return None

        result = await self.run_audit_now(now)
        self._next_fire = compute_next_fire(now, self._settings.audit_time)
        self._persist_next_fire(self._next_fire)

        if not self._host_visible():
            logger.info("Host hidden after audit, scheduler stopping until next start")
            self._running = False
            self._release_marker()
        return result

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def _run_rule_sweep(self, now: datetime) -> None:
        try:
            rules = await self._rule_source.load_rules()
            snapshot = await self._rule_source.load_snapshot()
        except Exception as e:
            logger.error(f"Rule sweep skipped, could not load rules or snapshot: {e}")
            return
        try:
            results = await self._rule_evaluator.evaluate(rules, snapshot, now)
            if self._on_rule_results is not None:
                self._on_rule_results(rules, results)
        except Exception as e:
            logger.error(f"Rule sweep failed: {e}")

    async def run_audit_now(self, now: Optional[datetime] = None) -> AuditResult:
        """Run one stuck-task sweep immediately, outside the timer."""
        now = now or self._clock()
        result = AuditResult(timestamp=format_timestamp(now))

        try:
            tasks = await self._loader.load_tasks()
        except Exception as e:
            logger.error(f"Stuck audit could not load tasks: {e}")
            tasks = []
            result.error = f"load failed: {e}"

        try:
            result.total_tasks = len(tasks)
            result.stuck_tasks = self._detector.find_stuck(tasks, now)
            if result.stuck_tasks:
                result.notification_sent = await self._notify_stuck(result.stuck_tasks, now)
        except Exception as e:
            logger.error(f"Stuck audit failed: {e}")
            result.error = result.error or str(e)

        try:
            write_json(self._store, LAST_AUDIT_KEY, result.to_record())
        except Exception as e:
            logger.error(f"Failed to write audit record: {e}")

        self._last_audit = result
        logger.info(
            f"Stuck audit complete: {len(result.stuck_tasks)}/{result.total_tasks} stuck, "
            f"notified={result.notification_sent}"
        )
        return result

    async def _notify_stuck(self, stuck: Sequence[Task], now: datetime) -> bool:
        ids = [t.id for t in stuck]
        if not self._gate.is_allowed(ids, now):
            return False
        self._gate.record(ids, now)

        content = await self.compose_stuck_notification(stuck)
        entry = await self._dispatcher.send(
            NotificationType.STUCK,
            content["body"],
            title=content["title"],
            tag=STUCK_NOTIFICATION_TAG,
            actions=STUCK_NOTIFICATION_ACTIONS,
            data={
                "stuckTaskIds": ids[:AUDIT_SAMPLE_SIZE],
                "count": len(ids),
            },
            now=now,
        )
        return entry is not None

    async def compose_stuck_notification(self, stuck: Sequence[Task]) -> Dict[str, str]:
        """Title/body from the text generator, or the fixed fallback."""
        generated = await generate_bounded(
            self._text_generator,
            build_stuck_notification_prompt([t.name for t in stuck]),
            max_len=STUCK_NOTIFICATION_AI_MAX_LEN,
            temperature=0.9,
            max_tokens=100,
            timeout_ms=self._settings.ai_timeout_ms,
        )
        parsed = parse_title_body(generated)
        if parsed:
            return parsed
        if generated:
            logger.warning("Stuck notification text was not valid JSON, using fallback")
        return fallback_stuck_notification(stuck, self._settings.stuck_threshold_days)

    async def debug_force_audit(self) -> Dict[str, Any]:
        """Force one sweep and return {success, stuckTasksCount, stuckTasks}."""
        now = self._clock()
        result = await self.run_audit_now(now)
        return {
            "success": result.success,
            "stuckTasksCount": len(result.stuck_tasks),
            "stuckTasks": [
                {
                    "id": t.id,
                    "name": t.name,
                    "progress": t.progress,
                    "daysSinceUpdate": self._detector.days_since_update(t, now),
                }
                for t in result.stuck_tasks
            ],
        }

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        last_audit = self._last_audit.to_record() if self._last_audit else None
        if last_audit is None:
            try:
                last_audit = read_json(self._store, LAST_AUDIT_KEY)
            except Exception as e:
                logger.warning(f"Could not read last audit record: {e}")
        return {
            "running": self._running,
            "ownerId": self.owner_id,
            "nextAuditAt": format_timestamp(self._next_fire) if self._next_fire else None,
            "lastAudit": last_audit,
        }

    # -------------------------------------------------------------------------
    # Marker and next-fire persistence
    # -------------------------------------------------------------------------

    def _read_marker(self) -> Optional[Dict[str, Any]]:
        try:
            marker = read_json(self._store, SCHEDULER_MARKER_KEY)
        except Exception as e:
            logger.warning(f"Running marker unreadable, ignoring it: {e}")
            return None
        return marker if isinstance(marker, dict) else None

    def _active_marker_owner(self, now: datetime) -> Optional[str]:
        """Owner of a fresh running marker, None when absent or stale."""
        marker = self._read_marker()
        if not marker or marker.get("status") != "running":
            return None
        heartbeat = marker.get("heartbeatAt")
        if isinstance(heartbeat, bool) or not isinstance(heartbeat, (int, float)):
            logger.info("Running marker has no heartbeat, treating as stale")
            return None
        age_seconds = (to_millis(now) - heartbeat) / 1000
        if age_seconds > self._settings.marker_stale_after_seconds:
            logger.info(f"Running marker stale ({age_seconds:.0f}s), taking over")
            return None
        return str(marker.get("ownerId"))

    def _write_marker(self, now: datetime) -> None:
        try:
            write_json(self._store, SCHEDULER_MARKER_KEY, {
                "status": "running",
                "ownerId": self.owner_id,
                "heartbeatAt": to_millis(now),
            })
        except Exception as e:
            logger.error(f"Failed to write running marker: {e}")

    def _release_marker(self) -> None:
        marker = self._read_marker()
        if marker and marker.get("ownerId") not in (None, self.owner_id):
            return
        try:
            self._store.remove(SCHEDULER_MARKER_KEY)
        except Exception as e:
            logger.error(f"Failed to clear running marker: {e}")

    def _restore_next_fire(self, now: datetime) -> datetime:
        """Persisted next fire when usable (overdue means catch up now)."""
        stored: Optional[datetime] = None
        try:
            raw = read_json(self._store, NEXT_AUDIT_KEY)
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                stored = from_millis(int(raw))
        except Exception as e:
            logger.warning(f"Persisted next audit unreadable: {e}")

        cap = timedelta(hours=MAX_SCHEDULE_DELAY_HOURS)
        if stored is not None and stored <= now:
            logger.info(f"Audit overdue since {format_timestamp(stored)}, running catch-up")
            return now
        if stored is not None and stored - now <= cap:
            return stored

        next_fire = compute_next_fire(now, self._settings.audit_time)
        self._persist_next_fire(next_fire)
        return next_fire

    def _persist_next_fire(self, next_fire: datetime) -> None:
        try:
            write_json(self._store, NEXT_AUDIT_KEY, to_millis(next_fire))
        except Exception as e:
            logger.error(f"Failed to persist next audit time: {e}")

    def _host_visible(self) -> bool:
        try:
            return bool(self._is_visible())
        except Exception as e:
            logger.warning(f"Visibility check failed, assuming visible: {e}")
            return True


def fallback_stuck_notification(stuck: Sequence[Task], threshold_days: int = 3) -> Dict[str, str]:
    count = len(stuck)
    title = f"{count} task{'s' if count != 1 else ''} at the finish line"
    names = ", ".join(t.name for t in stuck[:3])
    if count > 3:
        names += f" and {count - 3} more"
    body = f"{names}: 90%+ done, no progress for over {threshold_days} days. Finish one today."
    return {"title": title[:50], "body": body[:120]}


def build_scheduler(
    store: KeyValueStore,
    *,
    settings: Optional[EngineSettings] = None,
    voice: Any = None,
    visual: Any = None,
    text_generator: Optional[TextGenerator] = None,
    clock: Callable[[], datetime] = utc_now,
    is_visible: Callable[[], bool] = lambda: True,
) -> StuckTaskScheduler:
    """Wire the full engine over one key-value store holding the app data."""
    settings = settings or EngineSettings()
    loader = AppDataTaskLoader(store)
    ledger = CooldownLedger(store)
    dispatcher = NotificationDispatcher(
        NotificationHistoryStore(store, limit=settings.history_limit),
        ledger,
        voice=voice,
        visual=visual,
        text_generator=text_generator,
        settings=settings,
        clock=clock,
    )
    evaluator = RuleEvaluator(dispatcher, ledger, text_generator=text_generator, settings=settings, clock=clock)
    return StuckTaskScheduler(
        store,
        loader,
        dispatcher,
        rule_evaluator=evaluator,
        rule_source=loader,
        text_generator=text_generator,
        settings=settings,
        clock=clock,
        is_visible=is_visible,
    )
