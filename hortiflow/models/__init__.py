"""Models package — imports all models so metadata.create_all sees them."""

from hortiflow.models.base import Base, create_session_factory
from hortiflow.models.rule import Rule, RuleExecution
from hortiflow.models.sensor import SensorReading
from hortiflow.models.device import Device, QueuedAction

__all__ = [
    "Base",
    "create_session_factory",
    "Rule",
    "RuleExecution",
    "SensorReading",
    "Device",
    "QueuedAction",
]
