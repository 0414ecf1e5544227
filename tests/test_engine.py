"""Tests for the rules engine tick."""

import asyncio
import time
from datetime import timezone
from unittest.mock import MagicMock

import pytest

from hortiflow.core.dispatcher import ActionDispatcher
from hortiflow.core.engine import RulesEngine
from hortiflow.core.errors import RuleNotFoundError
from hortiflow.core.evaluator import ConditionEvaluator
from hortiflow.core.events import EngineEvent
from hortiflow.models.rule import Rule


def set_temperature(memory, clock, value):
    memory.add_sensor_reading("temhum1", "temperature", value, recorded_at=clock.now)


def utc(value):
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class SluggishDevices:
    """Device store whose TURN_ON commands block for a while."""

    def __init__(self, memory, delay: float):
        self.memory = memory
        self.delay = delay

    def get_device_status(self, device_id):
        return self.memory.get_device_status(device_id)

    def apply_device_action(self, device_id, action, value=None):
        if action == "TURN_ON":
            time.sleep(self.delay)
        return self.memory.apply_device_action(device_id, action, value)


class TestTick:
    """Tests for a single evaluation pass."""

    @pytest.mark.asyncio
    async def test_no_rules(self, engine):
        summary = await engine.run_tick()
        assert summary["evaluated"] == 0
        assert engine.status()["ticks"] == 1

    @pytest.mark.asyncio
    async def test_rule_triggers(self, engine, memory, make_rule, hot_reading, notifier, clock):
        rule = make_rule()

        summary = await engine.run_tick()

        assert summary["triggered"] == 1
        executions = memory.get_rule_executions(rule.id)
        assert len(executions) == 1
        assert executions[0].success is True
        assert executions[0].suppressed is False
        assert executions[0].actions_executed[0]["type"] == "notification"
        assert executions[0].evaluation_result["result"] is True
        assert executions[0].trigger_data["sensors"]["temhum1.temperature"]["value"] == 35.0

        stored = memory.get_rule(rule.id)
        assert stored.trigger_count == 1
        assert utc(stored.last_triggered) == clock.now
        assert notifier.send_notification.call_args.args[0] == "Too hot: 35.0"

    @pytest.mark.asyncio
    async def test_false_conditions_record_nothing(self, engine, memory, make_rule, clock):
        rule = make_rule()
        set_temperature(memory, clock, 20.0)

        summary = await engine.run_tick()

        assert summary["triggered"] == 0
        assert memory.get_rule_executions(rule.id) == []
        assert memory.get_rule(rule.id).trigger_count == 0

    @pytest.mark.asyncio
    async def test_disabled_rule_never_executes(self, engine, memory, make_rule, hot_reading):
        rule = make_rule(enabled=False)

        await engine.run_tick()

        assert memory.get_rule_executions(rule.id) == []
        assert engine.status()["active_rules"] == 0

    @pytest.mark.asyncio
    async def test_stale_reading_does_not_fire(self, engine, memory, make_rule, hot_reading, clock):
        rule = make_rule()
        clock.advance(minutes=11)

        await engine.run_tick()

        assert memory.get_rule_executions(rule.id) == []

    @pytest.mark.asyncio
    async def test_events_published(self, engine, events, make_rule, hot_reading):
        queue = events.subscribe()
        rule = make_rule()

        await engine.run_tick()

        event = queue.get_nowait()
        assert event.type is EngineEvent.RULE_TRIGGERED
        assert event.payload["rule_id"] == rule.id
        assert event.payload["success"] is True


class TestCooldown:
    """Cooldown suppression between triggers."""

    @pytest.mark.asyncio
    async def test_suppressed_within_cooldown(self, engine, memory, make_rule, hot_reading, clock):
        rule = make_rule(cooldown_minutes=15)
        await engine.run_tick()
        first_trigger = clock.now

        clock.advance(minutes=5)
        set_temperature(memory, clock, 36.0)
        summary = await engine.run_tick()

        assert summary["suppressed"] == 1
        executions = memory.get_rule_executions(rule.id)
        assert len(executions) == 2
        latest = executions[0]
        assert latest.suppressed is True
        assert latest.success is True
        assert latest.actions_executed == []

        stored = memory.get_rule(rule.id)
        assert utc(stored.last_triggered) == first_trigger
        assert stored.trigger_count == 1

    @pytest.mark.asyncio
    async def test_triggers_again_after_cooldown(self, engine, memory, make_rule, hot_reading, clock):
        rule = make_rule(cooldown_minutes=15)
        await engine.run_tick()

        clock.advance(minutes=15)
        set_temperature(memory, clock, 36.0)
        summary = await engine.run_tick()

        assert summary["triggered"] == 1
        stored = memory.get_rule(rule.id)
        assert stored.trigger_count == 2
        assert utc(stored.last_triggered) == clock.now

    @pytest.mark.asyncio
    async def test_failed_dispatch_does_not_start_cooldown(self, engine, memory, make_rule, hot_reading,
                                                           webhooks):
        webhooks.call_webhook.side_effect = RuntimeError("503 Service Unavailable")
        rule = make_rule(actions=[{"type": "webhook", "url": "https://hooks.example.com/heat"}])

        summary = await engine.run_tick()

        assert summary["failed"] == 1
        execution = memory.get_rule_executions(rule.id)[0]
        assert execution.success is False
        assert "503" in execution.error_message
        stored = memory.get_rule(rule.id)
        assert stored.last_triggered is None
        assert stored.trigger_count == 0


class TestOrdering:
    @pytest.mark.asyncio
    async def test_lower_priority_number_runs_first(self, engine, memory, make_rule, hot_reading):
        memory.create_device({"id": "fan1", "name": "Fan"})
        make_rule(name="second", priority=2,
                  actions=[{"type": "device_control", "device_id": "fan1", "action": "TURN_OFF"}])
        make_rule(name="first", priority=1,
                  actions=[{"type": "device_control", "device_id": "fan1", "action": "TURN_ON"}])

        await engine.run_tick()

        # Priority 2 runs last, so its write wins
        assert memory.get_device("fan1").status == "off"

    @pytest.mark.asyncio
    async def test_timed_out_device_write_cannot_overtake_later_rule(
        self, memory, notifier, webhooks, events, clock, make_rule, hot_reading
    ):
        """A command abandoned on timeout still lands before the next rule's command."""
        dispatcher = ActionDispatcher(SluggishDevices(memory, delay=0.3), notifier, webhooks, memory,
                                      timeout=0.1)
        engine = RulesEngine(repository=memory, evaluator=ConditionEvaluator(memory, memory),
                             dispatcher=dispatcher, events=events, clock=clock)
        memory.create_device({"id": "fan1", "name": "Fan"})
        first = make_rule(name="first", priority=1,
                          actions=[{"type": "device_control", "device_id": "fan1", "action": "TURN_ON"}])
        second = make_rule(name="second", priority=2,
                           actions=[{"type": "device_control", "device_id": "fan1", "action": "TURN_OFF"}])

        await engine.run_tick()

        assert memory.get_rule_executions(first.id)[0].success is False
        assert memory.get_rule_executions(second.id)[0].success is True
        assert memory.get_device("fan1").status == "off"

        await asyncio.sleep(0.4)
        assert memory.get_device("fan1").status == "off"


class TestOverlap:
    @pytest.mark.asyncio
    async def test_concurrent_ticks_do_not_double_count(self, engine, memory, make_rule, hot_reading,
                                                        webhooks):
        async def slow(*args, **kwargs):
            await asyncio.sleep(0.05)
            return {"status_code": 200}

        webhooks.call_webhook.side_effect = slow
        rule = make_rule(cooldown_minutes=0,
                         actions=[{"type": "webhook", "url": "https://hooks.example.com/heat"}])

        first, second = await asyncio.gather(engine.run_tick(), engine.run_tick())

        assert first is not None
        assert second is None
        assert engine.status()["skipped_ticks"] == 1
        assert memory.get_rule(rule.id).trigger_count == 1
        assert len(memory.get_rule_executions(rule.id)) == 1


class TestFaults:
    """Faults are contained per rule or per tick."""

    @pytest.mark.asyncio
    async def test_rule_fault_recorded_and_tick_continues(self, engine, memory, make_rule, hot_reading,
                                                          monkeypatch):
        broken = make_rule(name="broken", priority=1)
        healthy = make_rule(name="healthy", priority=2)
        real_dispatch = engine.dispatcher.dispatch

        async def dispatch(actions, context):
            if context.rule.id == broken.id:
                raise KeyError("boom")
            return await real_dispatch(actions, context)

        monkeypatch.setattr(engine.dispatcher, "dispatch", dispatch)

        summary = await engine.run_tick()

        assert summary["failed"] == 1
        assert summary["triggered"] == 1
        failure = memory.get_rule_executions(broken.id)[0]
        assert failure.success is False
        assert "KeyError" in failure.stack_trace
        assert memory.get_rule_executions(healthy.id)[0].success is True

    @pytest.mark.asyncio
    async def test_rule_load_failure_skips_tick(self, engine, memory, monkeypatch):
        monkeypatch.setattr(memory, "list_enabled_rules", MagicMock(side_effect=ConnectionError("db down")))

        summary = await engine.run_tick()

        assert "db down" in summary["error"]
        assert "db down" in engine.status()["last_error"]

        monkeypatch.undo()
        await engine.run_tick()
        assert engine.status()["last_error"] is None

    @pytest.mark.asyncio
    async def test_recorder_failure_does_not_stop_tick(self, engine, memory, make_rule, hot_reading,
                                                       monkeypatch):
        make_rule(name="a", priority=1)
        make_rule(name="b", priority=2)
        monkeypatch.setattr(memory, "record_execution", MagicMock(side_effect=RuntimeError("disk full")))

        summary = await engine.run_tick()

        assert summary["triggered"] == 2
        assert engine.status()["recorder_failures"] == 2

    @pytest.mark.asyncio
    async def test_invalid_stored_rule_skipped(self, engine, memory, make_rule, hot_reading):
        with memory.session_factory() as session:
            session.add(Rule(name="corrupt", conditions={"type": "weather"}, actions=[]))
            session.commit()
        good = make_rule()

        summary = await engine.run_tick()

        assert summary["evaluated"] == 1
        assert engine.status()["invalid_rules"] == 1
        assert memory.get_rule_executions(good.id)[0].success is True


class TestManualOperations:
    @pytest.mark.asyncio
    async def test_trigger_bypasses_cooldown(self, engine, memory, make_rule, hot_reading):
        rule = make_rule(cooldown_minutes=60)
        await engine.run_tick()

        result = await engine.trigger_rule(rule.id)

        assert result["status"] == "triggered"
        assert memory.get_rule(rule.id).trigger_count == 2

    @pytest.mark.asyncio
    async def test_trigger_disabled_rule(self, engine, memory, make_rule, hot_reading):
        rule = make_rule(enabled=False)
        result = await engine.trigger_rule(rule.id)
        assert result["status"] == "triggered"

    @pytest.mark.asyncio
    async def test_trigger_unmatched_conditions(self, engine, memory, make_rule, clock):
        rule = make_rule()
        set_temperature(memory, clock, 10.0)

        result = await engine.trigger_rule(rule.id)
        assert result["status"] == "not_matched"
        assert memory.get_rule_executions(rule.id) == []

        forced = await engine.trigger_rule(rule.id, force=True)
        assert forced["status"] == "triggered"

    @pytest.mark.asyncio
    async def test_trigger_unknown_rule(self, engine):
        with pytest.raises(RuleNotFoundError):
            await engine.trigger_rule(999)

    def test_dry_run_records_nothing(self, engine, memory, make_rule, hot_reading, notifier):
        rule = make_rule()

        result = engine.test_conditions({"type": "sensor", "sensor_id": "temhum1", "field": "temperature",
                                         "operator": ">", "value": 30})

        assert result["result"] is True
        assert result["state"]["sensors"]["temhum1.temperature"]["value"] == 35.0
        assert memory.get_rule_executions(rule.id) == []
        notifier.send_notification.assert_not_called()
