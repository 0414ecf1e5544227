"""HortiFlow Rules Engine — evaluates enabled rules and dispatches their actions.

One tick:
1. Load enabled rules (a storage failure skips the tick)
2. Build typed rules; a rule that fails validation is skipped with an error log
3. Merge persisted trigger state into the cooldown tracker
4. Order by priority (stable across ticks)
5. For each rule, sequentially: evaluate → cooldown check → dispatch → record
6. Publish RULE_TRIGGERED for every rule that fired

Ticks, manual triggers and shutdown all serialize on one asyncio lock.
"""

import asyncio
import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Callable

from hortiflow.core.config import Settings
from hortiflow.core.conditions import ConditionNode, parse_conditions
from hortiflow.core.cooldown import CooldownTracker
from hortiflow.core.dispatcher import ActionDispatcher, DispatchContext
from hortiflow.core.errors import RuleNotFoundError, RuleValidationError
from hortiflow.core.evaluator import ConditionEvaluator
from hortiflow.core.events import EngineEvent, EventChannel
from hortiflow.core.memory import Memory
from hortiflow.core.notification import NotificationService
from hortiflow.core.providers import RuleRepository
from hortiflow.core.recorder import ExecutionRecord, ExecutionRecorder
from hortiflow.core.rules import AutomationRule, RuleOrder, build_rule
from hortiflow.core.webhook import WebhookClient

logger = logging.getLogger("hortiflow.engine")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RulesEngine:
    """Automation rules engine.

    Collaborators are injected so the engine can run against any storage and
    transport; ``from_settings`` wires the default SQLAlchemy/httpx stack.
    """

    def __init__(
        self,
        repository: RuleRepository,
        evaluator: ConditionEvaluator,
        dispatcher: ActionDispatcher,
        recorder: ExecutionRecorder | None = None,
        events: EventChannel | None = None,
        cooldowns: CooldownTracker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.recorder = recorder or ExecutionRecorder(repository)
        self.events = events or EventChannel()
        self.cooldowns = cooldowns or CooldownTracker()
        self.clock = clock
        self.order = RuleOrder()
        self.lock = asyncio.Lock()
        self.active_rules = 0
        self.last_tick_at: datetime | None = None
        self.last_error: str | None = None
        self.stats = {
            "ticks": 0,
            "skipped_ticks": 0,
            "rules_evaluated": 0,
            "rules_triggered": 0,
            "suppressed": 0,
            "failed_executions": 0,
            "invalid_rules": 0,
        }

    @classmethod
    def from_settings(cls, settings: Settings, session_factory) -> "RulesEngine":
        memory = Memory(session_factory)
        dispatcher = ActionDispatcher(
            devices=memory,
            notifier=NotificationService(settings, timeout=settings.webhook_timeout_seconds),
            webhooks=WebhookClient(timeout=settings.webhook_timeout_seconds),
            queue=memory,
            timeout=settings.action_timeout_seconds,
        )
        engine = cls(
            repository=memory,
            evaluator=ConditionEvaluator(memory, memory, tz=settings.timezone),
            dispatcher=dispatcher,
            events=EventChannel(maxsize=settings.event_queue_size),
        )
        logger.info("HortiFlow rules engine initialized")
        return engine

    # =========================================================================
    # Ticks
    # =========================================================================

    async def run_tick(self) -> dict | None:
        """Run one evaluation pass over all enabled rules.

        Returns a tick summary, or None when another tick was still running.
        """
        if self.lock.locked():
            self.stats["skipped_ticks"] += 1
            logger.warning("Previous tick still running — skipping this tick")
            return None

        async with self.lock:
            return await self._tick()

    async def _tick(self) -> dict:
        now = self.clock()
        started = time.perf_counter()
        self.stats["ticks"] += 1
        self.last_tick_at = now
        summary = {"started_at": now.isoformat(), "evaluated": 0, "triggered": 0, "suppressed": 0, "failed": 0}

        try:
            records = self.repository.list_enabled_rules()
        except Exception as e:
            self.last_error = f"Failed to load rules: {e}"
            logger.error(f"Tick skipped — could not load rules: {e}", exc_info=True)
            summary["error"] = self.last_error
            return summary

        rules = []
        for record in records:
            try:
                rules.append(build_rule(record))
            except RuleValidationError as e:
                self.stats["invalid_rules"] += 1
                logger.error(f"Skipping invalid rule: {e}")

        self.active_rules = len(rules)
        if not rules:
            logger.debug("No enabled rules — nothing to evaluate")

        self.cooldowns.refresh(rules)
        for rule in self.order.sort(rules):
            outcome = await self._process_rule(rule, now)
            summary["evaluated"] += 1
            if outcome["status"] in ("triggered", "failed", "suppressed"):
                summary[outcome["status"]] += 1

        self.last_error = None
        summary["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            f"Tick complete: {summary['evaluated']} evaluated, {summary['triggered']} triggered, "
            f"{summary['suppressed']} suppressed, {summary['failed']} failed"
        )
        return summary

    async def _process_rule(self, rule: AutomationRule, now: datetime, bypass_cooldown: bool = False,
                            force: bool = False) -> dict:
        """Evaluate one rule and, when it fires, dispatch and record it.

        Any unexpected fault is contained here and recorded as a failed execution.
        """
        self.stats["rules_evaluated"] += 1
        started = time.perf_counter()
        evaluation = snapshot = None

        try:
            evaluation, snapshot = self.evaluator.evaluate(rule.conditions, now)
            if not evaluation.result and not force:
                return {"rule_id": rule.id, "status": "not_matched", "evaluation": evaluation.to_dict()}

            if not bypass_cooldown and not self.cooldowns.is_eligible(rule.id, now):
                self.stats["suppressed"] += 1
                logger.info(
                    f"Rule {rule.id} ({rule.name}) matched but is cooling down "
                    f"({self.cooldowns.remaining(rule.id, now)} left)"
                )
                execution = ExecutionRecord(
                    rule_id=rule.id,
                    triggered_at=now,
                    success=True,
                    suppressed=True,
                    execution_time_ms=self._elapsed_ms(started),
                    trigger_data=snapshot.to_dict(),
                    evaluation_result=evaluation.to_dict(),
                )
                self.recorder.record(execution)
                return {"rule_id": rule.id, "status": "suppressed", "execution": execution.to_dict()}

            dispatch = await self.dispatcher.dispatch(rule.actions, DispatchContext(rule, now, snapshot))

            if dispatch.success:
                last_triggered, count = self.cooldowns.mark_triggered(rule.id, now)
                self.recorder.record_trigger(rule.id, last_triggered, count)
                self.stats["rules_triggered"] += 1
                logger.info(f"Rule {rule.id} ({rule.name}) triggered — {len(dispatch.outcomes)} action(s)")
            else:
                self.stats["failed_executions"] += 1

            execution = ExecutionRecord(
                rule_id=rule.id,
                triggered_at=now,
                success=dispatch.success,
                execution_time_ms=self._elapsed_ms(started),
                trigger_data=snapshot.to_dict(),
                evaluation_result=evaluation.to_dict(),
                actions_executed=dispatch.outcomes,
                error="; ".join(f"#{o['action_index']} {o['type']}: {o['error']}" for o in dispatch.failed) or None,
            )
            self.recorder.record(execution)
            self.events.publish(EngineEvent.RULE_TRIGGERED, {
                "rule_id": rule.id,
                "rule_name": rule.name,
                "triggered_at": now.isoformat(),
                "success": dispatch.success,
                "actions_executed": dispatch.outcomes,
            })
            return {
                "rule_id": rule.id,
                "status": "triggered" if dispatch.success else "failed",
                "execution": execution.to_dict(),
            }

        except Exception as e:
            self.stats["failed_executions"] += 1
            logger.error(f"Rule {rule.id} ({rule.name}) failed: {e}", exc_info=True)
            execution = ExecutionRecord(
                rule_id=rule.id,
                triggered_at=now,
                success=False,
                execution_time_ms=self._elapsed_ms(started),
                trigger_data=snapshot.to_dict() if snapshot else None,
                evaluation_result=evaluation.to_dict() if evaluation else None,
                error=str(e) or type(e).__name__,
                stack_trace=traceback.format_exc(),
            )
            self.recorder.record(execution)
            return {"rule_id": rule.id, "status": "failed", "execution": execution.to_dict()}

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    # =========================================================================
    # Manual operations
    # =========================================================================

    async def trigger_rule(self, rule_id: int, force: bool = False) -> dict:
        """Evaluate one rule now, outside the schedule and ignoring its cooldown.

        The rule runs whether or not it is enabled. With ``force`` the actions
        are dispatched even when the conditions are not met.
        """
        record = self.repository.get_rule(rule_id)
        if record is None:
            raise RuleNotFoundError(rule_id)
        rule = build_rule(record)

        async with self.lock:
            self.cooldowns.sync(rule)
            logger.info(f"Manual trigger for rule {rule.id} ({rule.name}), force={force}")
            return await self._process_rule(rule, self.clock(), bypass_cooldown=True, force=force)

    def test_conditions(self, conditions: ConditionNode | dict | list | str) -> dict:
        """Dry run: evaluate a condition tree against live state. Nothing is dispatched or recorded."""
        if not isinstance(conditions, (dict, list, str)):
            node = conditions
        else:
            node = parse_conditions(conditions)
        evaluation, snapshot = self.evaluator.evaluate(node, self.clock())
        return {**evaluation.to_dict(), "state": snapshot.to_dict()}

    def status(self) -> dict:
        return {
            "active_rules": self.active_rules,
            "last_tick_at": self.last_tick_at,
            "last_error": self.last_error,
            "tick_in_progress": self.lock.locked(),
            **self.stats,
            "recorder_failures": self.recorder.failures,
        }
