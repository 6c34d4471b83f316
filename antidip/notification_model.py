"""
Notification Model

Notification kinds, voice priorities and the history entry appended for
every dispatched notification.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .task_model import format_timestamp, parse_timestamp, utc_now


class NotificationType(str, Enum):
    """
    Kinds of notifications the engine emits.

    Each kind maps to a voice priority (see voice_priority_for).
    """
    AI = "ai"
    STUCK = "stuck"
    DEADLINE = "deadline"
    CHECKIN = "checkin"
    CUSTOM = "custom"


class VoicePriority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"


def voice_priority_for(notification_type: NotificationType) -> VoicePriority:
    if NotificationType(notification_type) in (NotificationType.STUCK, NotificationType.DEADLINE):
        return VoicePriority.URGENT
    return VoicePriority.NORMAL


def message_hash(message: str) -> str:
    """Short stable digest used to key duplicate suppression."""
    return hashlib.sha1((message or "").encode("utf-8")).hexdigest()[:12]


@dataclass(frozen=True)
class NotificationEntry:
    """One row of the notification history."""
    id: str
    timestamp: str
    type: str
    message: str
    rule_id: Optional[str] = None

    def __post_init__(self):
        if self.type not in [t.value for t in NotificationType]:
            raise ValueError(f"Invalid notification type: {self.type}")

    @classmethod
    def create(
        cls,
        notification_type: NotificationType,
        message: str,
        rule_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "NotificationEntry":
        return cls(
            id=f"notif-{uuid.uuid4().hex[:12]}",
            timestamp=format_timestamp(now or utc_now()),
            type=NotificationType(notification_type).value,
            message=message,
            rule_id=rule_id,
        )

    @property
    def created_at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "message": self.message,
        }
        if self.rule_id is not None:
            result["ruleId"] = self.rule_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEntry":
        return cls(
            id=str(data["id"]),
            timestamp=str(data["timestamp"]),
            type=str(data["type"]),
            message=str(data.get("message", "")),
            rule_id=data.get("ruleId"),
        )


@dataclass
class VisualPayload:
    """What the visual channel receives."""
    title: str
    body: str
    tag: Optional[str] = None
    actions: List[Dict[str, str]] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "actions": list(self.actions),
            "data": dict(self.data),
        }


DEFAULT_TITLES = {
    NotificationType.AI: "Coach",
    NotificationType.STUCK: "Stuck at 90%",
    NotificationType.DEADLINE: "Deadline",
    NotificationType.CHECKIN: "Check-in",
    NotificationType.CUSTOM: "Reminder",
}
