"""
Notification Engine - Dispatch, History, Channels

Single entry point for every notification the engine emits:
1. Suppresses identical notifications within a short window
2. Appends the entry to the capped notification history
3. Fans out to the voice and visual channels independently
4. Follows stuck notifications with one encouragement message

IMPORTANT:
- A failing channel never blocks history or the other channel
- The encouragement follow-up goes through the same dedup and can never
  schedule another follow-up
- Nothing here raises into the caller; failures are logged
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

import httpx

from .config import EngineSettings
from .cooldown_ledger import CooldownDecision, CooldownLedger, notification_key
from .notification_model import (
    DEFAULT_TITLES,
    NotificationEntry,
    NotificationType,
    VisualPayload,
    VoicePriority,
    voice_priority_for,
)
from .persistence import KeyValueStore, read_json, write_json
from .text_generation import TextGenerator, build_encouragement_prompt, generate_bounded
from .task_model import utc_now

logger = logging.getLogger("notification_engine")

HISTORY_KEY = "notificationHistory"
ENCOURAGEMENT_MAX_LEN = 150
FALLBACK_ENCOURAGEMENT = "You are one push away. Close one of them now and feel the difference."


class VoiceChannel(Protocol):
    def speak(self, text: str, priority: VoicePriority) -> Any:
        ...


class VisualChannel(Protocol):
    def show(self, payload: VisualPayload) -> Any:
        ...


async def _call_channel(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------
class InAppVisualChannel:
    """Keeps shown payloads in memory for the UI to render as toasts."""

    def __init__(self, limit: int = 20):
        self._limit = limit
        self.shown: List[VisualPayload] = []

    def show(self, payload: VisualPayload) -> None:
        self.shown.insert(0, payload)
        del self.shown[self._limit:]


class WebhookVisualChannel:
    """Posts visual payloads as JSON to a webhook (e.g. a push gateway)."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self._client = client
        self._timeout = timeout

    async def show(self, payload: VisualPayload) -> bool:
        if self._client is not None:
            response = await self._client.post(self.url, json=payload.to_dict(), timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, json=payload.to_dict())
        if response.status_code >= 400:
            logger.warning(f"Webhook channel returned HTTP {response.status_code}")
            return False
        return True


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------
class NotificationHistoryStore:
    """Newest-first history capped at `limit` entries."""

    def __init__(self, store: KeyValueStore, limit: int = 50, key: str = HISTORY_KEY):
        self._store = store
        self._limit = limit
        self._key = key

    def entries(self) -> List[NotificationEntry]:
        try:
            raw = read_json(self._store, self._key, default=[])
        except Exception as e:
            logger.error(f"Notification history unreadable: {e}")
            return []
        entries = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(NotificationEntry.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Dropping malformed history entry: {e}")
        return entries

    def append(self, entry: NotificationEntry) -> None:
        entries = [entry] + self.entries()
        write_json(self._store, self._key, [e.to_dict() for e in entries[: self._limit]])

    def clear(self) -> None:
        self._store.remove(self._key)


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------
class NotificationDispatcher:
    """
    Fire-and-forget notification dispatch.

    Collaborators are injected; voice and visual channels are optional.
    """

    def __init__(
        self,
        history: NotificationHistoryStore,
        ledger: CooldownLedger,
        voice: Optional[VoiceChannel] = None,
        visual: Optional[VisualChannel] = None,
        text_generator: Optional[TextGenerator] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._history = history
        self._ledger = ledger
        self._voice = voice
        self._visual = visual
        self._text_generator = text_generator
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._follow_ups: Set[asyncio.Task] = set()

    @property
    def history(self) -> NotificationHistoryStore:
        return self._history

    async def send(
        self,
        notification_type: NotificationType,
        message: str,
        source_id: Optional[str] = None,
        *,
        title: Optional[str] = None,
        tag: Optional[str] = None,
        actions: Optional[List[Dict[str, str]]] = None,
        data: Optional[Dict[str, Any]] = None,
        priority: Optional[VoicePriority] = None,
        speak: bool = True,
        show: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[NotificationEntry]:
        """
        Dispatch one notification.

        Returns the history entry, or None when suppressed as a duplicate
        or when the cooldown ledger cannot be read.
        """
        notification_type = NotificationType(notification_type)
        now = now or self._clock()

        key = notification_key(notification_type, message)
        decision = self._ledger.acquire(key, self._settings.duplicate_window_ms, now)
        if decision == CooldownDecision.UNAVAILABLE:
            logger.error(f"Cooldown ledger unavailable, {notification_type.value} notification dropped: {message[:60]!r}")
            return None
        if decision != CooldownDecision.ALLOWED:
            logger.warning(f"Duplicate {notification_type.value} notification suppressed: {message[:60]!r}")
            return None

        entry = NotificationEntry.create(notification_type, message, rule_id=source_id, now=now)
        try:
            self._history.append(entry)
        except Exception as e:
            logger.error(f"Failed to append notification history: {e}")

        if speak and self._voice is not None and self._settings.voice_enabled:
            voice_priority = priority or voice_priority_for(notification_type)
            try:
                await _call_channel(self._voice.speak(message, voice_priority))
            except Exception as e:
                logger.error(f"Voice channel failed: {e}")

        if show and self._visual is not None:
            payload = VisualPayload(
                title=title or DEFAULT_TITLES[notification_type],
                body=message,
                tag=tag,
                actions=list(actions or []),
                data=dict(data or {}),
            )
            try:
                await _call_channel(self._visual.show(payload))
            except Exception as e:
                logger.error(f"Visual channel failed: {e}")

        if notification_type == NotificationType.STUCK:
            self._schedule_encouragement(message, now)

        logger.info(f"Notification sent: {notification_type.value} ({entry.id})")
        return entry

    def _schedule_encouragement(self, stuck_message: str, origin: datetime) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._encourage(stuck_message, origin))
        except RuntimeError:
            logger.debug("No running loop; encouragement skipped")
            return
        self._follow_ups.add(task)
        task.add_done_callback(self._follow_ups.discard)

    async def _encourage(self, stuck_message: str, origin: datetime) -> None:
        delay = self._settings.encouragement_delay_seconds
        try:
            await asyncio.sleep(delay)
            text = await generate_bounded(
                self._text_generator,
                build_encouragement_prompt(stuck_message),
                max_len=ENCOURAGEMENT_MAX_LEN,
                temperature=0.8,
                max_tokens=60,
                timeout_ms=self._settings.ai_timeout_ms,
            )
            # AI-type notifications never schedule a follow-up of their own
            await self.send(
                NotificationType.AI,
                text or FALLBACK_ENCOURAGEMENT,
                now=origin + timedelta(seconds=delay),
            )
        except asyncio.CancelledError:
            logger.debug("Encouragement follow-up cancelled")
        except Exception as e:
            logger.error(f"Encouragement follow-up failed: {e}")

    @property
    def pending_follow_ups(self) -> int:
        return len(self._follow_ups)

    async def drain(self) -> None:
        """Wait for scheduled follow-ups to finish."""
        while True:
            pending = [t for t in self._follow_ups if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._follow_ups):
            task.cancel()


logger.info("Notification Engine module loaded")
