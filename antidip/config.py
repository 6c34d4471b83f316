"""
Engine Configuration

Central configuration for the anti-stagnation engine.

Values come from three layers (later wins):
1. Built-in defaults (module constants below)
2. Environment variables (ANTIDIP_*, OLLAMA_*)
3. Optional YAML settings file (ANTIDIP_CONFIG_FILE)

Components never read these constants at call time. They receive an
EngineSettings instance through their constructor.
"""

import logging
import os
import re
from dataclasses import dataclass, asdict, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("antidip_config")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# -----------------------------------------------------------------------------
# Stuck Detection
# -----------------------------------------------------------------------------
STUCK_THRESHOLD_DAYS = int(os.getenv("ANTIDIP_STUCK_THRESHOLD_DAYS", "3"))
STUCK_PROGRESS_MIN = int(os.getenv("ANTIDIP_STUCK_PROGRESS_MIN", "90"))
STUCK_PROGRESS_MAX = int(os.getenv("ANTIDIP_STUCK_PROGRESS_MAX", "99"))

# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------
AUDIT_TIME = os.getenv("ANTIDIP_AUDIT_TIME", "10:00")
TICK_INTERVAL_SECONDS = float(os.getenv("ANTIDIP_TICK_INTERVAL_SECONDS", "60"))
MAX_SCHEDULE_DELAY_HOURS = 24
MARKER_STALE_AFTER_SECONDS = float(os.getenv("ANTIDIP_MARKER_STALE_AFTER_SECONDS", "300"))
AUDIT_SAMPLE_SIZE = 20

# -----------------------------------------------------------------------------
# Cooldowns (milliseconds unless noted)
# -----------------------------------------------------------------------------
RULE_COOLDOWN_MS = int(os.getenv("ANTIDIP_RULE_COOLDOWN_MS", "60000"))
DUPLICATE_WINDOW_MS = int(os.getenv("ANTIDIP_DUPLICATE_WINDOW_MS", "30000"))
STUCK_REPEAT_HOURS = float(os.getenv("ANTIDIP_STUCK_REPEAT_HOURS", "6"))
STUCK_REPEAT_FALLBACK_HOURS = float(os.getenv("ANTIDIP_STUCK_REPEAT_FALLBACK_HOURS", "12"))

# -----------------------------------------------------------------------------
# Notifications
# -----------------------------------------------------------------------------
HISTORY_LIMIT = int(os.getenv("ANTIDIP_HISTORY_LIMIT", "50"))
ENCOURAGEMENT_DELAY_SECONDS = float(os.getenv("ANTIDIP_ENCOURAGEMENT_DELAY_SECONDS", "1.0"))
VOICE_ENABLED = _env_bool("ANTIDIP_VOICE_ENABLED", True)

# -----------------------------------------------------------------------------
# Text Generation (Ollama)
# -----------------------------------------------------------------------------
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama2")
AI_TIMEOUT_MS = int(os.getenv("ANTIDIP_AI_TIMEOUT_MS", "12000"))

# Rule conditions
MAX_CONDITION_LENGTH = 500

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(value: str) -> Optional[tuple]:
    """Parse an "HH:MM" string into (hour, minute), None if malformed."""
    if not isinstance(value, str):
        return None
    match = _TIME_OF_DAY.match(value.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


@dataclass(frozen=True)
class EngineSettings:
    """Resolved settings handed to every engine component."""
    stuck_threshold_days: int = STUCK_THRESHOLD_DAYS
    stuck_progress_min: int = STUCK_PROGRESS_MIN
    stuck_progress_max: int = STUCK_PROGRESS_MAX
    audit_time: str = AUDIT_TIME
    tick_interval_seconds: float = TICK_INTERVAL_SECONDS
    marker_stale_after_seconds: float = MARKER_STALE_AFTER_SECONDS
    rule_cooldown_ms: int = RULE_COOLDOWN_MS
    duplicate_window_ms: int = DUPLICATE_WINDOW_MS
    stuck_repeat_hours: float = STUCK_REPEAT_HOURS
    stuck_repeat_fallback_hours: float = STUCK_REPEAT_FALLBACK_HOURS
    history_limit: int = HISTORY_LIMIT
    encouragement_delay_seconds: float = ENCOURAGEMENT_DELAY_SECONDS
    voice_enabled: bool = VOICE_ENABLED
    ollama_base_url: str = OLLAMA_BASE_URL
    ollama_model: str = OLLAMA_MODEL
    ai_timeout_ms: int = AI_TIMEOUT_MS

    def __post_init__(self):
        """Validate settings on creation."""
        if not 0 <= self.stuck_progress_min <= self.stuck_progress_max <= 99:
            raise ValueError(
                f"Stuck band must satisfy 0 <= min <= max <= 99, "
                f"got {self.stuck_progress_min}..{self.stuck_progress_max}"
            )
        if self.stuck_threshold_days < 0:
            raise ValueError(f"stuck_threshold_days cannot be negative: {self.stuck_threshold_days}")
        if parse_time_of_day(self.audit_time) is None:
            raise ValueError(f"audit_time must be HH:MM, got {self.audit_time!r}")
        if self.tick_interval_seconds <= 0:
            raise ValueError(f"tick_interval_seconds must be positive: {self.tick_interval_seconds}")
        if self.history_limit < 1:
            raise ValueError(f"history_limit must be at least 1: {self.history_limit}")
        if self.stuck_repeat_fallback_hours < self.stuck_repeat_hours:
            raise ValueError("stuck_repeat_fallback_hours must not be shorter than stuck_repeat_hours")

    @property
    def stuck_repeat_ms(self) -> int:
        return int(self.stuck_repeat_hours * 3600 * 1000)

    @property
    def stuck_repeat_fallback_ms(self) -> int:
        return int(self.stuck_repeat_fallback_hours * 3600 * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_overrides(self, overrides: Dict[str, Any]) -> "EngineSettings":
        """Return a copy with known keys replaced; unknown keys are logged and ignored."""
        known = {f.name: f.type for f in fields(self)}
        accepted: Dict[str, Any] = {}
        for key, value in (overrides or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            accepted[key] = _coerce(key, value, type(getattr(self, key)))
        return replace(self, **accepted)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Settings built from the module constants (environment-derived)."""
        return cls()

    @classmethod
    def from_yaml(cls, path: Path, base: Optional["EngineSettings"] = None) -> "EngineSettings":
        """Load overrides from a YAML mapping on top of base (or env defaults)."""
        base = base or cls.from_env()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
        # Allow either a flat mapping or one nested under "antidip"
        if isinstance(data.get("antidip"), dict):
            data = data["antidip"]
        logger.info(f"Loaded engine settings from {path}")
        return base.with_overrides(data)


def _coerce(key: str, value: Any, target: type) -> Any:
    if isinstance(value, target):
        return value
    try:
        if target is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        return target(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {key}: {value!r}") from e


def load_settings() -> EngineSettings:
    """Resolve settings from env, then ANTIDIP_CONFIG_FILE when set."""
    config_file = os.getenv("ANTIDIP_CONFIG_FILE")
    if config_file:
        return EngineSettings.from_yaml(Path(config_file))
    return EngineSettings.from_env()
