"""Tests for the action dispatcher and notification templates."""

import asyncio

import httpx
import pytest

from conftest import NOW
from hortiflow.core.actions import parse_actions
from hortiflow.core.dispatcher import DEVICE_REVERT_QUEUE, ActionDispatcher, DispatchContext
from hortiflow.core.evaluator import StateSnapshot
from hortiflow.core.notification import render_template
from hortiflow.core.providers import SensorValue
from hortiflow.core.rules import AutomationRule


@pytest.fixture
def rule():
    return AutomationRule(id=7, name="Vent on heat", conditions=[], actions=[])


@pytest.fixture
def context(rule):
    snapshot = StateSnapshot(
        taken_at=NOW,
        local_time=NOW,
        sensors={("temhum1", "temperature"): SensorValue(35.5, NOW)},
    )
    return DispatchContext(rule=rule, now=NOW, snapshot=snapshot)


@pytest.fixture
def fan(memory):
    return memory.create_device({"id": "fan1", "name": "Extractor fan"})


class TestRenderTemplate:
    def test_fills_placeholders(self):
        assert render_template("Temp {{ temp }} in {{zone}}", {"temp": 31, "zone": "A"}) == "Temp 31 in A"

    def test_unknown_placeholder_left_intact(self):
        assert render_template("Hello {{missing}}", {}) == "Hello {{missing}}"

    def test_dotted_names(self):
        assert render_template("{{temhum1.temperature}}°C", {"temhum1.temperature": 35.5}) == "35.5°C"


class TestDispatch:
    """Tests for per-action outcomes."""

    @pytest.mark.asyncio
    async def test_empty_action_list_succeeds(self, dispatcher, context):
        result = await dispatcher.dispatch([], context)
        assert result.success is True
        assert result.outcomes == []

    @pytest.mark.asyncio
    async def test_notification_rendered_with_rule_and_sensor_values(self, dispatcher, notifier, context):
        actions = parse_actions([{
            "type": "notification",
            "template": "{{rule_name}}: {{temhum1.temperature}}°C in {{zone}}",
            "variables": {"zone": "north"},
            "channels": ["log", "telegram"],
            "priority": "high",
        }])

        result = await dispatcher.dispatch(actions, context)

        assert result.success is True
        message = notifier.send_notification.call_args.args[0]
        assert message == "Vent on heat: 35.5°C in north"
        assert notifier.send_notification.call_args.kwargs["channels"] == ["log", "telegram"]
        assert notifier.send_notification.call_args.kwargs["priority"] == "high"

    @pytest.mark.asyncio
    async def test_undelivered_notification_fails(self, dispatcher, notifier, context):
        notifier.send_notification.side_effect = None
        notifier.send_notification.return_value = {"log": True, "telegram": False}
        actions = parse_actions([{"type": "notification", "template": "x", "channels": ["log", "telegram"]}])

        result = await dispatcher.dispatch(actions, context)

        assert result.success is False
        assert "telegram" in result.outcomes[0]["error"]

    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, dispatcher, webhooks, context, fan):
        webhooks.call_webhook.side_effect = httpx.ConnectError("connection refused")
        actions = parse_actions([
            {"type": "device_control", "device_id": "fan1", "action": "TURN_ON"},
            {"type": "webhook", "url": "https://hooks.example.com/alert"},
            {"type": "notification", "template": "fan on"},
        ])

        result = await dispatcher.dispatch(actions, context)

        assert len(result.outcomes) == 3
        assert [o["success"] for o in result.outcomes] == [True, False, True]
        assert [o["action_index"] for o in result.outcomes] == [0, 1, 2]
        assert result.success is False
        assert "connection refused" in result.outcomes[1]["error"]
        assert all("execution_time_ms" in o for o in result.outcomes)

    @pytest.mark.asyncio
    async def test_timeout(self, memory, notifier, webhooks, context):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        webhooks.call_webhook.side_effect = slow
        dispatcher = ActionDispatcher(memory, notifier, webhooks, memory, timeout=0.05)
        actions = parse_actions([
            {"type": "webhook", "url": "https://hooks.example.com/slow"},
            {"type": "notification", "template": "still sent"},
        ])

        result = await dispatcher.dispatch(actions, context)

        assert result.outcomes[0]["success"] is False
        assert "timed out" in result.outcomes[0]["error"]
        assert result.outcomes[1]["success"] is True

    @pytest.mark.asyncio
    async def test_unknown_device_fails(self, dispatcher, context):
        actions = parse_actions([{"type": "device_control", "device_id": "ghost", "action": "TURN_ON"}])
        result = await dispatcher.dispatch(actions, context)
        assert result.success is False
        assert "ghost" in result.outcomes[0]["error"]


class TestDeviceAndQueueActions:
    @pytest.mark.asyncio
    async def test_device_state_changes(self, dispatcher, memory, context, fan):
        actions = parse_actions([
            {"type": "device_control", "device_id": "fan1", "action": "TURN_ON"},
            {"type": "device_control", "device_id": "fan1", "action": "SET_VALUE", "value": 80},
        ])

        result = await dispatcher.dispatch(actions, context)

        assert result.success is True
        device = memory.get_device("fan1")
        assert device.status == "on"
        assert float(device.value) == 80

    @pytest.mark.asyncio
    async def test_timed_control_enqueues_revert(self, dispatcher, memory, context, fan):
        actions = parse_actions([
            {"type": "device_control", "device_id": "fan1", "action": "TURN_ON", "duration_minutes": 10},
        ])

        result = await dispatcher.dispatch(actions, context)

        assert result.success is True
        jobs = memory.get_queued_actions(DEVICE_REVERT_QUEUE)
        assert len(jobs) == 1
        assert jobs[0].payload["action"] == "TURN_OFF"
        assert jobs[0].payload["due_at"] == "2026-03-10T12:10:00+00:00"
        assert result.outcomes[0]["result"]["revert_job_id"] == jobs[0].id

    @pytest.mark.asyncio
    async def test_queue_action_acknowledged(self, dispatcher, memory, context):
        actions = parse_actions([
            {"type": "queue", "queue_name": "irrigation", "priority": "high", "payload": {"zone": 2}},
        ])

        result = await dispatcher.dispatch(actions, context)

        assert result.success is True
        jobs = memory.get_queued_actions("irrigation")
        assert jobs[0].payload == {"zone": 2, "rule_id": 7}
        assert jobs[0].priority == "high"
        assert result.outcomes[0]["result"]["job_id"] == jobs[0].id
