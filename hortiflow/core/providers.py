"""Protocols (interfaces) for the collaborators the rules engine depends on."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from hortiflow.core.conditions import Aggregation


@dataclass(frozen=True)
class SensorValue:
    """Latest reading of one sensor field."""

    value: float
    timestamp: datetime


class SensorStore(Protocol):
    """Read access to sensor readings."""

    def get_latest_sensor_value(self, sensor_id: str, field: str) -> SensorValue | None:
        """Latest reading for (sensor_id, field), or None if never reported."""
        ...

    def get_aggregate(
        self,
        sensor_id: str,
        field: str,
        window_minutes: int,
        fn: Aggregation,
        now: datetime,
    ) -> float | None:
        """Aggregate over readings in the trailing window; None when the window is empty."""
        ...

    def get_sensor_history(
        self, sensor_id: str, field: str, window_minutes: int, now: datetime
    ) -> list[float]:
        """Values in the trailing window, oldest first."""
        ...

    def get_last_seen(self, sensor_id: str) -> datetime | None:
        """Timestamp of the sensor's most recent reading on any field."""
        ...


class DeviceStore(Protocol):
    """Device state lookup and mutation."""

    def get_device_status(self, device_id: str) -> str | None:
        ...

    def apply_device_action(self, device_id: str, action: str, value: Any = None) -> dict:
        """Apply a command; returns the new and previous state. Raises DeviceNotFoundError."""
        ...


class RuleRepository(Protocol):
    """Persistence for rules and their execution history."""

    def list_enabled_rules(self) -> list:
        """Enabled rule rows ordered by priority, then id."""
        ...

    def get_rule(self, rule_id: int):
        ...

    def record_execution(self, execution) -> int:
        """Persist an ExecutionRecord; returns the stored id."""
        ...

    def update_rule_cooldown(self, rule_id: int, triggered_at: datetime, trigger_count: int) -> None:
        ...


class Notifier(Protocol):
    async def send_notification(
        self,
        message: str,
        title: str | None = None,
        channels: list[str] | None = None,
        priority: str = "normal",
        metadata: dict | None = None,
    ) -> dict[str, bool]:
        """Send through the given channels; returns per-channel success."""
        ...


class WebhookCaller(Protocol):
    async def call_webhook(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        payload: dict | None = None,
    ) -> dict:
        """Call a webhook; raises on transport errors or non-2xx responses."""
        ...


class ActionQueue(Protocol):
    def enqueue(self, queue_name: str, payload: dict, priority: str = "medium") -> int:
        """Hand work to the reliable queue; the returned id is the acknowledgement."""
        ...
