"""Shared fixtures: in-memory database, fake transports, fixed clock."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from hortiflow.core.dispatcher import ActionDispatcher
from hortiflow.core.engine import RulesEngine
from hortiflow.core.evaluator import ConditionEvaluator
from hortiflow.core.events import EventChannel
from hortiflow.core.memory import Memory
from hortiflow.core.rules import validate_definition
from hortiflow.models import Base
from hortiflow.models.base import create_session_factory

# Tuesday, 12:00 UTC
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0):
        self.now += timedelta(minutes=minutes, seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory():
    db_engine, SessionFactory = create_session_factory("sqlite:///:memory:")
    Base.metadata.create_all(bind=db_engine)
    yield Memory(SessionFactory)
    db_engine.dispose()


@pytest.fixture
def notifier():
    """Notifier that delivers on every requested channel."""
    mock = AsyncMock()

    async def send(message, title=None, channels=None, priority="normal", metadata=None):
        return {channel: True for channel in channels or ["log"]}

    mock.send_notification.side_effect = send
    return mock


@pytest.fixture
def webhooks():
    mock = AsyncMock()
    mock.call_webhook.return_value = {"status_code": 200, "body": {"ok": True}}
    return mock


@pytest.fixture
def dispatcher(memory, notifier, webhooks):
    return ActionDispatcher(memory, notifier, webhooks, memory, timeout=1.0)


@pytest.fixture
def events():
    return EventChannel(maxsize=10)


@pytest.fixture
def engine(memory, dispatcher, events, clock):
    return RulesEngine(
        repository=memory,
        evaluator=ConditionEvaluator(memory, memory),
        dispatcher=dispatcher,
        events=events,
        clock=clock,
    )


@pytest.fixture
def make_rule(memory):
    """Create and persist a rule from keyword overrides."""

    def _make(**overrides):
        data = {
            "name": "Cool the greenhouse",
            "priority": 5,
            "cooldown_minutes": 15,
            "conditions": {
                "type": "sensor",
                "sensor_id": "temhum1",
                "field": "temperature",
                "operator": "GT",
                "value": 30,
            },
            "actions": [{"type": "notification", "template": "Too hot: {{temhum1.temperature}}"}],
        }
        data.update(overrides)
        return memory.create_rule(validate_definition(data))

    return _make


@pytest.fixture
def hot_reading(memory, clock):
    """A fresh 35°C reading on temhum1."""
    return memory.add_sensor_reading("temhum1", "temperature", 35.0, recorded_at=clock.now)
