"""
Cooldown Ledger - Anti-Spam Windows

Persisted map of namespaced key -> last-fired timestamp (milliseconds).

Two tiers are used by the engine:
- short per-action windows (duplicate message suppression, task toggles)
- long per-rule / per-category windows (rule re-fire, stuck-task repeats)

CRITICAL CONSTRAINTS:
- NAMESPACED KEYS: rule:<id>, notif:<type>:<hash>, task:<id>
- RECORD BEFORE SIDE EFFECT: callers record immediately after a successful
  is_allowed() check, before dispatching (try_acquire does both)
- FAIL CLOSED: a store that cannot be read never authorizes a dispatch;
  a corrupt value is logged and overwritten by the next record()
"""

import json
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .config import EngineSettings
from .errors import PersistenceError
from .notification_model import NotificationType, message_hash
from .persistence import KeyValueStore, read_json, write_json
from .task_model import to_millis, utc_now

logger = logging.getLogger("cooldown_ledger")

LEDGER_KEY = "cooldownLedger"
LAST_STUCK_NOTIFICATION_KEY = "lastStuckNotification"

# Entries older than this are dropped on write
LEDGER_RETENTION_MS = 48 * 60 * 60 * 1000

_TIMESTAMP_PATTERN = re.compile(r'"timestamp"\s*:\s*(\d+)')


# -----------------------------------------------------------------------------
# Key helpers
# -----------------------------------------------------------------------------
def rule_key(rule_id: Any) -> str:
    return f"rule:{rule_id}"


def notification_key(notification_type: NotificationType, message: str) -> str:
    return f"notif:{NotificationType(notification_type).value}:{message_hash(message)}"


def task_key(task_id: Any) -> str:
    return f"task:{task_id}"


class CooldownDecision(str, Enum):
    """Outcome of a ledger check."""
    ALLOWED = "allowed"
    COOLDOWN = "cooldown"
    UNAVAILABLE = "unavailable"


class CooldownLedger:
    """Key -> last-fired timestamp, persisted as one JSON object."""

    def __init__(self, store: KeyValueStore, key: str = LEDGER_KEY):
        self._store = store
        self._key = key

    def _read(self) -> Dict[str, int]:
        # Store failures propagate; an undecodable value reads as empty
        # so the next record() overwrites it.
        try:
            data = read_json(self._store, self._key, default={})
        except PersistenceError as e:
            if e.details.get("operation") != "decode":
                raise
            logger.error(f"Cooldown ledger corrupt, treating as empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Cooldown ledger is not an object, treating as empty: {type(data).__name__}")
            return {}
        return {k: v for k, v in data.items() if isinstance(v, (int, float)) and not isinstance(v, bool)}

    def last_fired(self, key: str) -> Optional[int]:
        try:
            value = self._read().get(key)
        except Exception as e:
            logger.error(f"Cooldown ledger read failed: {e}")
            return None
        return int(value) if value is not None else None

    def check(self, key: str, window_ms: int, now: Optional[datetime] = None) -> CooldownDecision:
        now_ms = to_millis(now or utc_now())
        try:
            last = self._read().get(key)
        except Exception as e:
            logger.error(f"Cooldown ledger unreadable, blocking {key}: {e}")
            return CooldownDecision.UNAVAILABLE
        if last is None or now_ms - last >= window_ms:
            return CooldownDecision.ALLOWED
        return CooldownDecision.COOLDOWN

    def is_allowed(self, key: str, window_ms: int, now: Optional[datetime] = None) -> bool:
        """True when key has not fired within window_ms of now."""
        return self.check(key, window_ms, now) == CooldownDecision.ALLOWED

    def record(self, key: str, now: Optional[datetime] = None) -> bool:
        now_ms = to_millis(now or utc_now())
        try:
            ledger = self._read()
        except Exception as e:
            logger.warning(f"Cooldown ledger unreadable, starting fresh: {e}")
            ledger = {}

        ledger = {k: v for k, v in ledger.items() if now_ms - v < LEDGER_RETENTION_MS}
        ledger[key] = now_ms
        try:
            write_json(self._store, self._key, ledger)
            return True
        except Exception as e:
            logger.error(f"Cooldown ledger write failed for {key}: {e}")
            return False

    def acquire(self, key: str, window_ms: int, now: Optional[datetime] = None) -> CooldownDecision:
        """check() then record() when allowed."""
        now = now or utc_now()
        decision = self.check(key, window_ms, now)
        if decision == CooldownDecision.ALLOWED:
            self.record(key, now)
        return decision

    def try_acquire(self, key: str, window_ms: int, now: Optional[datetime] = None) -> bool:
        """is_allowed() then record() in one step; False when suppressed."""
        return self.acquire(key, window_ms, now) == CooldownDecision.ALLOWED

    def clear(self, key: str) -> None:
        try:
            ledger = self._read()
            if key in ledger:
                del ledger[key]
                write_json(self._store, self._key, ledger)
        except Exception as e:
            logger.error(f"Cooldown ledger clear failed for {key}: {e}")


class StuckNotificationGate:
    """
    Long-window gate for stuck-task notifications.

    A stuck-id set that overlaps the previously notified set without adding
    any new id is a repeat and waits stuck_repeat_hours. A set containing a
    newly stuck id (disjoint or partial overlap) is eligible immediately.
    When the previous record cannot be decoded the more conservative
    fallback window applies.
    """

    def __init__(self, store: KeyValueStore, settings: Optional[EngineSettings] = None):
        self._store = store
        self._settings = settings or EngineSettings()

    def is_allowed(self, stuck_ids: Iterable[Any], now: Optional[datetime] = None) -> bool:
        now_ms = to_millis(now or utc_now())
        current = {str(i) for i in stuck_ids}
        if not current:
            return False

        try:
            raw = self._store.get(LAST_STUCK_NOTIFICATION_KEY)
        except Exception as e:
            logger.error(f"Stuck notification record unreadable, suppressing this tick: {e}")
            return False
        if raw is None:
            return True

        try:
            record = json.loads(raw)
            timestamp = int(record["timestamp"])
            previous = {str(i) for i in record["stuckTaskIds"]}
        except (ValueError, TypeError, KeyError) as e:
            return self._fallback(raw, now_ms, e)

        if current - previous:
            return True
        elapsed = now_ms - timestamp
        if elapsed < self._settings.stuck_repeat_ms:
            logger.info(
                f"Stuck notification suppressed: same tasks notified "
                f"{elapsed // 60000} min ago"
            )
            return False
        return True

    def _fallback(self, raw: str, now_ms: int, error: Exception) -> bool:
        match = _TIMESTAMP_PATTERN.search(raw)
        if not match:
            logger.warning(f"Stuck notification record corrupt and undated, allowing: {error}")
            return True
        elapsed = now_ms - int(match.group(1))
        allowed = elapsed >= self._settings.stuck_repeat_fallback_ms
        logger.warning(
            f"Stuck notification record corrupt ({error}), "
            f"fallback window {'passed' if allowed else 'active'}"
        )
        return allowed

    def record(self, stuck_ids: Iterable[Any], now: Optional[datetime] = None) -> bool:
        ids = list(stuck_ids)
        try:
            write_json(self._store, LAST_STUCK_NOTIFICATION_KEY, {
                "timestamp": to_millis(now or utc_now()),
                "stuckTaskIds": ids,
                "count": len(ids),
            })
            return True
        except Exception as e:
            logger.error(f"Failed to record stuck notification: {e}")
            return False
