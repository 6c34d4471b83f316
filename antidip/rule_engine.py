"""
Rule Engine - Custom Rule Evaluation

Evaluates the user's custom rules against one snapshot per sweep and
dispatches a notification for every rule that fires.

CRITICAL CONSTRAINTS:
- CONSISTENT SNAPSHOT: every rule in a sweep sees the context taken at
  sweep start; firing rule i never changes what rule i+1 sees
- LIST ORDER: rules are evaluated in the order given
- RECORD BEFORE DISPATCH: rule:<id> is written to the cooldown ledger
  before the notification is sent
- NEVER THROWS: condition failures are logged with the rule name and
  reported as INVALID / ERROR results so the host can deactivate the rule
- MANUAL RULES never fire from a sweep
- NO SKIPPED MINUTES: a time rule matches any local minute started since
  the previous sweep (up to TIME_RULE_CATCHUP), still gated by rule:<id>
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from .condition_parser import compile_condition
from .config import EngineSettings, parse_time_of_day
from .cooldown_ledger import CooldownLedger, rule_key
from .errors import ConditionEvaluationError, ConditionValidationError
from .notification_engine import NotificationDispatcher
from .notification_model import NotificationType, VoicePriority
from .rule_model import (
    CustomRule,
    RuleAction,
    RuleEvaluationResult,
    RuleEvaluationStatus,
    RuleTrigger,
)
from .task_model import AppSnapshot, format_timestamp, utc_now
from .text_generation import TextGenerator, build_rule_message_prompt, generate_bounded

logger = logging.getLogger("rule_engine")

AI_RULE_MESSAGE_MAX_LEN = 200

# Longest gap between sweeps that time rules still catch up on
TIME_RULE_CATCHUP = timedelta(minutes=5)


class RuleEvaluator:
    """
    Sweep-based rule evaluator.

    Usage:
        evaluator = RuleEvaluator(dispatcher, ledger)
        results = await evaluator.evaluate(rules, snapshot, now)
        rules = apply_results(rules, results, now)
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        ledger: CooldownLedger,
        text_generator: Optional[TextGenerator] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._text_generator = text_generator
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._failed: Set[str] = set()
        self._last_sweep: Optional[datetime] = None

    @property
    def failed_rule_ids(self) -> Set[str]:
        """Ids of rules whose condition was invalid or failed in the last sweep."""
        return set(self._failed)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    @staticmethod
    def matches_time(condition: str, now: datetime, since: Optional[datetime] = None) -> bool:
        """
        True when the HH:MM slot is the local minute of now, or any local
        minute started after since (bounded by TIME_RULE_CATCHUP).
        """
        slot = parse_time_of_day(condition)
        if slot is None:
            raise ConditionValidationError(f"Invalid time of day '{condition}', expected HH:MM", condition)

        end = now.replace(second=0, microsecond=0)
        start = end
        if since is not None and timedelta(0) < now - since <= TIME_RULE_CATCHUP:
            start = min(end, since.replace(second=0, microsecond=0) + timedelta(minutes=1))

        minute = start
        while minute <= end:
            local = minute.astimezone()
            if (local.hour, local.minute) == slot:
                return True
            minute += timedelta(minutes=1)
        return False

    def matches(
        self,
        rule: CustomRule,
        context: Dict[str, Any],
        now: datetime,
        since: Optional[datetime] = None,
    ) -> bool:
        """
        Condition check only, no side effects.

        Raises:
            ConditionValidationError: invalid condition
            ConditionEvaluationError: condition failed at runtime
        """
        if rule.trigger == RuleTrigger.TIME.value:
            return self.matches_time(rule.condition.strip(), now, since)
        if rule.trigger == RuleTrigger.DATA.value:
            return compile_condition(rule.condition).evaluate(context)
        return False

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    async def evaluate(
        self,
        rules: Sequence[CustomRule],
        snapshot: Union[AppSnapshot, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[RuleEvaluationResult]:
        now = now or self._clock()
        context = snapshot.condition_context() if isinstance(snapshot, AppSnapshot) else dict(snapshot)

        since, self._last_sweep = self._last_sweep, now

        results = []
        for rule in rules:
            results.append(await self._evaluate_rule(rule, context, now, since))

        self._failed = {r.rule_id for r in results if r.failed}
        fired = sum(1 for r in results if r.fired)
        if fired or self._failed:
            logger.info(f"Rule sweep: {fired} fired, {len(self._failed)} failed, {len(results)} evaluated")
        return results

    async def _evaluate_rule(
        self,
        rule: CustomRule,
        context: Dict[str, Any],
        now: datetime,
        since: Optional[datetime] = None,
    ) -> RuleEvaluationResult:
        if not rule.active:
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.INACTIVE)
        if rule.trigger == RuleTrigger.MANUAL.value:
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.MANUAL_SKIPPED)

        try:
            matched = self.matches(rule, context, now, since)
        except ConditionValidationError as e:
            logger.error(f"Rule '{rule.name}' has an invalid condition: {e.message}")
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.INVALID, error=e.message)
        except ConditionEvaluationError as e:
            logger.error(f"Rule '{rule.name}' condition failed: {e.message}")
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.ERROR, error=e.message)
        except Exception as e:
            logger.error(f"Rule '{rule.name}' evaluation crashed: {e}")
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.ERROR, error=str(e))

        if not matched:
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.NOT_MATCHED)

        key = rule_key(rule.id)
        if not self._ledger.is_allowed(key, self._settings.rule_cooldown_ms, now):
            logger.debug(f"Rule '{rule.name}' in cooldown")
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.COOLDOWN)
        self._ledger.record(key, now)

        message = await self._dispatch(rule, context, now)
        logger.info(f"Rule fired: {rule.name}")
        return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.FIRED, message=message)

    async def trigger_manual(
        self,
        rule: CustomRule,
        snapshot: Union[AppSnapshot, Dict[str, Any], None] = None,
        now: Optional[datetime] = None,
    ) -> RuleEvaluationResult:
        """
        Fire a rule on explicit request.

        The condition and cooldown gate are skipped; the cooldown is still
        recorded so an immediate sweep does not fire the rule again.
        """
        now = now or self._clock()
        if not rule.active:
            return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.INACTIVE)
        if isinstance(snapshot, AppSnapshot):
            context = snapshot.condition_context()
        else:
            context = dict(snapshot or {})

        self._ledger.record(rule_key(rule.id), now)
        message = await self._dispatch(rule, context, now)
        logger.info(f"Rule triggered manually: {rule.name}")
        return RuleEvaluationResult(rule.id, rule.name, RuleEvaluationStatus.FIRED, message=message)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _stuck_pillar_name(self, context: Dict[str, Any]) -> Optional[str]:
        for pillar in context.get("pillars") or []:
            if not isinstance(pillar, dict):
                continue
            completion = pillar.get("completion") or 0
            days = pillar.get("days_stuck") or 0
            if completion >= self._settings.stuck_progress_min and days > self._settings.stuck_threshold_days:
                return pillar.get("name")
        return None

    async def _dispatch(self, rule: CustomRule, context: Dict[str, Any], now: datetime) -> str:
        message = rule.message or rule.name
        try:
            if rule.action == RuleAction.VOICE.value:
                await self._dispatcher.send(NotificationType.CUSTOM, message, rule.id, title=rule.name, show=False, now=now)
            elif rule.action == RuleAction.AI_VOICE.value:
                generated = await generate_bounded(
                    self._text_generator,
                    build_rule_message_prompt(message, {"stuck_pillar": self._stuck_pillar_name(context)}),
                    max_len=AI_RULE_MESSAGE_MAX_LEN,
                    temperature=0.8,
                    max_tokens=80,
                    timeout_ms=self._settings.ai_timeout_ms,
                )
                if generated is None:
                    logger.warning(f"Rule '{rule.name}': AI text unavailable, using rule message")
                message = generated or message
                await self._dispatcher.send(NotificationType.AI, message, rule.id, title=rule.name, show=False, now=now)
            elif rule.action == RuleAction.NOTIFICATION.value:
                await self._dispatcher.send(NotificationType.CUSTOM, message, rule.id, title=rule.name, speak=False, now=now)
            else:
                await self._dispatcher.send(
                    NotificationType.CUSTOM,
                    message,
                    rule.id,
                    title=rule.name,
                    tag=f"rule-{rule.id}",
                    data={"ruleId": rule.id, "blocking": True},
                    priority=VoicePriority.CRITICAL,
                    now=now,
                )
        except Exception as e:
            logger.error(f"Rule '{rule.name}' dispatch failed: {e}")
        return message


def apply_results(
    rules: Sequence[CustomRule],
    results: Sequence[RuleEvaluationResult],
    now: Optional[datetime] = None,
) -> List[CustomRule]:
    """Stamp last_triggered on fired rules and deactivate failed ones."""
    stamp = format_timestamp(now or utc_now())
    by_id = {r.rule_id: r for r in results}
    updated = []
    for rule in rules:
        result = by_id.get(rule.id)
        if result is None:
            updated.append(rule)
        elif result.fired:
            updated.append(rule.with_last_triggered(stamp))
        elif result.failed:
            logger.warning(f"Deactivating rule '{rule.name}': {result.error}")
            updated.append(rule.deactivated())
        else:
            updated.append(rule)
    return updated


logger.info("Rule Engine module loaded")
