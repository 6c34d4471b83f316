"""
Anti-Dip Engine

Anti-stagnation core for a personal productivity app: detects tasks stuck
near completion, derives progression insight, evaluates user-defined rules
and dispatches rate-limited notifications on a recurring schedule.

Components:
- Stuck Detector: 90% barrier detection (pure, never throws)
- Progression Insight Engine: per-task insight, goal health, finish priorities
- Condition Parser: restricted-grammar interpreter for rule conditions
- Rule Engine: time / data / manual rules with per-rule cooldown
- Cooldown Ledger: persisted anti-spam windows (short and long tiers)
- Notification Engine: dedup, capped history, voice + visual fan-out
- Scheduler: daily stuck-task audit plus per-tick rule sweep (asyncio)
- Text Generation: optional Ollama-backed copy with deterministic fallbacks

The engine is a library: collaborators (key-value store, task loader,
voice/visual channels, text generator) are injected, never global.
"""

from .config import EngineSettings, load_settings
from .cooldown_ledger import CooldownDecision, CooldownLedger, StuckNotificationGate
from .errors import (
    AntiDipError,
    ConditionEvaluationError,
    ConditionValidationError,
    PersistenceError,
)
from .insight_engine import ProgressionInsightEngine, TaskInsight, format_time_ago
from .notification_engine import NotificationDispatcher, NotificationHistoryStore
from .notification_model import NotificationEntry, NotificationType, VoicePriority
from .persistence import AppDataTaskLoader, InMemoryKeyValueStore, JsonFileKeyValueStore
from .rule_engine import RuleEvaluator, apply_results
from .rule_model import DEFAULT_CUSTOM_RULES, CustomRule, RuleEvaluationResult
from .scheduler import StuckTaskScheduler, build_scheduler, compute_next_fire
from .stuck_detector import StuckDetector, is_stuck_at_90
from .task_model import Pillar, Task, apply_progress_update
from .text_generation import OllamaTextGenerator

__version__ = "1.0.0"

__all__ = [
    "AntiDipError",
    "AppDataTaskLoader",
    "ConditionEvaluationError",
    "ConditionValidationError",
    "CooldownDecision",
    "CooldownLedger",
    "CustomRule",
    "DEFAULT_CUSTOM_RULES",
    "EngineSettings",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "NotificationDispatcher",
    "NotificationEntry",
    "NotificationHistoryStore",
    "NotificationType",
    "OllamaTextGenerator",
    "PersistenceError",
    "Pillar",
    "ProgressionInsightEngine",
    "RuleEvaluationResult",
    "RuleEvaluator",
    "StuckDetector",
    "StuckNotificationGate",
    "StuckTaskScheduler",
    "Task",
    "TaskInsight",
    "VoicePriority",
    "apply_progress_update",
    "apply_results",
    "build_scheduler",
    "compute_next_fire",
    "format_time_ago",
    "is_stuck_at_90",
    "load_settings",
]
