"""
Rule Model - User-Defined Automation Rules

Data structures for custom rules and the per-rule outcome of a sweep.

CRITICAL CONSTRAINTS:
- IMMUTABLE: rules are frozen; deactivation returns a new rule
- OBSERVABLE FAILURE: an invalid or failing condition yields a result with
  status INVALID or ERROR so the host can deactivate the rule
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class RuleTrigger(str, Enum):
    TIME = "time"
    DATA = "data"
    MANUAL = "manual"


class RuleAction(str, Enum):
    VOICE = "voice"
    AI_VOICE = "ai_voice"
    NOTIFICATION = "notification"
    BLOCK_ACTION = "block_action"


class RuleEvaluationStatus(str, Enum):
    """Outcome of evaluating one rule in one sweep."""
    FIRED = "fired"
    NOT_MATCHED = "not_matched"
    COOLDOWN = "cooldown"
    INACTIVE = "inactive"
    MANUAL_SKIPPED = "manual_skipped"
    INVALID = "invalid"
    ERROR = "error"

    @classmethod
    def failures(cls) -> List["RuleEvaluationStatus"]:
        return [cls.INVALID, cls.ERROR]


@dataclass(frozen=True)
class CustomRule:
    id: str
    name: str
    trigger: str
    condition: str
    action: str
    message: str = ""
    active: bool = True
    last_triggered: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Rule id is required")
        if self.trigger not in [t.value for t in RuleTrigger]:
            raise ValueError(f"Invalid rule trigger: {self.trigger}")
        if self.action not in [a.value for a in RuleAction]:
            raise ValueError(f"Invalid rule action: {self.action}")
        if not isinstance(self.condition, str):
            raise ValueError("Rule condition must be a string")

    def deactivated(self) -> "CustomRule":
        return replace(self, active=False)

    def with_last_triggered(self, timestamp: str) -> "CustomRule":
        return replace(self, last_triggered=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "condition": self.condition,
            "action": self.action,
            "message": self.message,
            "active": self.active,
            "lastTriggered": self.last_triggered,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomRule":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            trigger=str(data.get("trigger", "")),
            condition=data.get("condition") if isinstance(data.get("condition"), str) else "",
            action=str(data.get("action", "")),
            message=str(data.get("message", "")),
            active=bool(data.get("active", True)),
            last_triggered=data.get("lastTriggered"),
        )


@dataclass(frozen=True)
class RuleEvaluationResult:
    rule_id: str
    rule_name: str
    status: RuleEvaluationStatus
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self.status == RuleEvaluationStatus.FIRED

    @property
    def failed(self) -> bool:
        return self.status in RuleEvaluationStatus.failures()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "status": self.status.value,
            "error": self.error,
            "message": self.message,
        }


# -----------------------------------------------------------------------------
# Default rules shipped with a fresh profile
# -----------------------------------------------------------------------------
DEFAULT_CUSTOM_RULES = (
    CustomRule(
        id="rule_morning_motivation",
        name="Morning check-in",
        trigger=RuleTrigger.TIME.value,
        condition="07:00",
        action=RuleAction.VOICE.value,
        message="Good morning. Which task are you closing today?",
        active=True,
    ),
    CustomRule(
        id="rule_stuck_project_blocker",
        name="Block new projects while one is stuck at 90%",
        trigger=RuleTrigger.DATA.value,
        condition="pillars.some(p => p.completion >= 90 && (p.days_stuck || 0) > 3)",
        action=RuleAction.BLOCK_ACTION.value,
        message="A goal is stuck at 90%. Finish it before starting anything new.",
        active=True,
    ),
    CustomRule(
        id="rule_ai_stuck_motivation",
        name="AI nudge for long-stalled goals",
        trigger=RuleTrigger.DATA.value,
        condition="pillars.some(p => p.completion >= 90 && (p.days_stuck || 0) > 5)",
        action=RuleAction.AI_VOICE.value,
        message="Motivate the user to close the goal that has been stuck near the finish for days.",
        active=True,
    ),
    CustomRule(
        id="rule_sprint_deadline_warning",
        name="Sprint deadline warning",
        trigger=RuleTrigger.DATA.value,
        condition=(
            "sprint.progress.filter(d => !d.checked).length <= 2 && "
            "sprint.progress.filter(d => d.checked).length < 5"
        ),
        action=RuleAction.VOICE.value,
        message="The sprint ends soon and less than five days are checked. Time to push.",
        active=True,
    ),
    CustomRule(
        id="rule_evening_reflection",
        name="Evening reflection",
        trigger=RuleTrigger.TIME.value,
        condition="20:00",
        action=RuleAction.NOTIFICATION.value,
        message="What did you finish today?",
        active=False,
    ),
)
