"""HortiFlow Condition Evaluator — evaluates condition trees against a state snapshot.

Evaluation happens in two phases:

1. ``capture`` walks the tree once and reads every sensor value, device status
   and historical aggregate the leaves need, producing an immutable
   ``StateSnapshot``. This is the only phase that touches the state providers.
2. ``evaluate_snapshot`` is a pure function of (tree, snapshot). Readings that
   change while a rule is being evaluated cannot affect its result.

Missing or stale data is a normal operating condition: the affected leaf
evaluates to False and records why (``missing``, ``stale``, ``empty``,
``insufficient``) instead of raising.

Groups short-circuit: AND stops at the first False child, OR at the first True
child. Children after the short-circuit point are not evaluated and appear in
the detail list with status ``skipped``. Empty groups follow the usual
convention: AND over no children is True, OR over no children is False.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from hortiflow.core.conditions import (
    Aggregation,
    ConditionNode,
    DeviceCondition,
    GroupCondition,
    HeartbeatCondition,
    HistoryCondition,
    LogicalOperator,
    SensorCondition,
    TimeCondition,
    TrendCondition,
    TrendDirection,
    iter_leaves,
)
from hortiflow.core.providers import DeviceStore, SensorStore, SensorValue

logger = logging.getLogger("hortiflow.evaluator")


@dataclass(frozen=True)
class StateSnapshot:
    """Everything a condition tree reads, captured at one instant."""

    taken_at: datetime
    local_time: datetime
    sensors: dict[tuple[str, str], SensorValue | None] = field(default_factory=dict)
    devices: dict[str, str | None] = field(default_factory=dict)
    aggregates: dict[tuple[str, str, Aggregation, int], float | None] = field(default_factory=dict)
    histories: dict[tuple[str, str, int], list[float]] = field(default_factory=dict)
    last_seen: dict[str, datetime | None] = field(default_factory=dict)

    def sensor_variables(self) -> dict[str, float]:
        """Latest sensor values keyed ``sensor_id.field``, for notification templates."""
        return {
            f"{sensor_id}.{name}": reading.value
            for (sensor_id, name), reading in self.sensors.items()
            if reading is not None
        }

    def to_dict(self) -> dict:
        """JSON-compatible form, stored as an execution's trigger data."""
        return {
            "taken_at": self.taken_at.isoformat(),
            "local_time": self.local_time.isoformat(),
            "sensors": {
                f"{sensor_id}.{name}": (
                    {"value": reading.value, "timestamp": reading.timestamp.isoformat()}
                    if reading is not None
                    else None
                )
                for (sensor_id, name), reading in self.sensors.items()
            },
            "devices": dict(self.devices),
            "aggregates": {
                f"{sensor_id}.{name}.{fn.value}.{window}m": value
                for (sensor_id, name, fn, window), value in self.aggregates.items()
            },
            "histories": {
                f"{sensor_id}.{name}.{window}m": list(values)
                for (sensor_id, name, window), values in self.histories.items()
            },
            "last_seen": {
                sensor_id: seen.isoformat() if seen else None
                for sensor_id, seen in self.last_seen.items()
            },
        }


@dataclass
class EvaluationResult:
    result: bool
    details: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"result": self.result, "details": self.details}


def _linear_slope(values: list[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    return (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)


class ConditionEvaluator:
    """Evaluates typed condition trees for automation rules.

    Uses the sensor store and device store for state, and the configured
    timezone for time-of-day windows.
    """

    def __init__(self, sensors: SensorStore, devices: DeviceStore, tz: str = "UTC"):
        self.sensors = sensors
        self.devices = devices
        self.tz = ZoneInfo(tz)

    def evaluate(self, node: ConditionNode, now: datetime | None = None) -> tuple[EvaluationResult, StateSnapshot]:
        """Capture a snapshot for the tree, then evaluate against it."""
        snapshot = self.capture(node, now)
        return self.evaluate_snapshot(node, snapshot), snapshot

    # =========================================================================
    # Snapshot capture
    # =========================================================================

    def capture(self, node: ConditionNode, now: datetime | None = None) -> StateSnapshot:
        """Read every piece of state the tree's leaves need."""
        if now is None:
            now = datetime.now(timezone.utc)
        snapshot = StateSnapshot(taken_at=now, local_time=now.astimezone(self.tz))

        for leaf in iter_leaves(node):
            match leaf:
                case SensorCondition(sensor_id=sensor_id, field=name):
                    key = (sensor_id, name)
                    if key not in snapshot.sensors:
                        snapshot.sensors[key] = self.sensors.get_latest_sensor_value(sensor_id, name)
                case DeviceCondition(device_id=device_id):
                    if device_id not in snapshot.devices:
                        snapshot.devices[device_id] = self.devices.get_device_status(device_id)
                case HistoryCondition():
                    key = (leaf.sensor_id, leaf.field, leaf.aggregation, leaf.window_minutes)
                    if key not in snapshot.aggregates:
                        snapshot.aggregates[key] = self.sensors.get_aggregate(
                            leaf.sensor_id, leaf.field, leaf.window_minutes, leaf.aggregation, now
                        )
                case TrendCondition():
                    key = (leaf.sensor_id, leaf.field, leaf.window_minutes)
                    if key not in snapshot.histories:
                        snapshot.histories[key] = self.sensors.get_sensor_history(
                            leaf.sensor_id, leaf.field, leaf.window_minutes, now
                        )
                case HeartbeatCondition(sensor_id=sensor_id):
                    if sensor_id not in snapshot.last_seen:
                        snapshot.last_seen[sensor_id] = self.sensors.get_last_seen(sensor_id)
                case TimeCondition():
                    pass
        return snapshot

    # =========================================================================
    # Pure evaluation
    # =========================================================================

    def evaluate_snapshot(self, node: ConditionNode, snapshot: StateSnapshot) -> EvaluationResult:
        details: list[dict] = []
        result = self._evaluate_node(node, snapshot, "root", details)
        return EvaluationResult(result=result, details=details)

    def _evaluate_node(self, node: ConditionNode, snapshot: StateSnapshot, path: str, details: list[dict]) -> bool:
        match node:
            case GroupCondition():
                return self._check_group(node, snapshot, path, details)
            case SensorCondition():
                detail = self._check_sensor(node, snapshot)
            case DeviceCondition():
                detail = self._check_device(node, snapshot)
            case TimeCondition():
                detail = self._check_time(node, snapshot)
            case HistoryCondition():
                detail = self._check_history(node, snapshot)
            case TrendCondition():
                detail = self._check_trend(node, snapshot)
            case HeartbeatCondition():
                detail = self._check_heartbeat(node, snapshot)
            case _:
                raise TypeError(f"Unsupported condition node: {type(node).__name__}")

        detail = {"path": path, "type": node.type, **detail}
        details.append(detail)
        return detail["result"]

    def _check_group(self, node: GroupCondition, snapshot: StateSnapshot, path: str, details: list[dict]) -> bool:
        entry = {"path": path, "type": "group", "operator": node.operator.value, "result": None}
        details.append(entry)

        if node.operator is LogicalOperator.NOT:
            result = not self._evaluate_node(node.children[0], snapshot, f"{path}.0", details)
        else:
            stop_on = node.operator is LogicalOperator.OR
            result = not stop_on
            for index, child in enumerate(node.children):
                child_path = f"{path}.{index}"
                if self._evaluate_node(child, snapshot, child_path, details) is stop_on:
                    result = stop_on
                    for skipped_index in range(index + 1, len(node.children)):
                        self._mark_skipped(node.children[skipped_index], f"{path}.{skipped_index}", details)
                    break

        entry["result"] = result
        return result

    def _mark_skipped(self, node: ConditionNode, path: str, details: list[dict]) -> None:
        details.append({"path": path, "type": node.type, "result": None, "status": "skipped"})
        if isinstance(node, GroupCondition):
            for index, child in enumerate(node.children):
                self._mark_skipped(child, f"{path}.{index}", details)

    # =========================================================================
    # Leaf checks
    # =========================================================================

    def _check_sensor(self, condition: SensorCondition, snapshot: StateSnapshot) -> dict:
        detail = {
            "sensor_id": condition.sensor_id,
            "field": condition.field,
            "operator": condition.operator.value,
            "expected": condition.value,
        }
        reading = snapshot.sensors.get((condition.sensor_id, condition.field))
        if reading is None:
            logger.debug(f"No reading for {condition.sensor_id}.{condition.field}")
            return {**detail, "result": False, "status": "missing", "actual": None}

        age = snapshot.taken_at - reading.timestamp
        detail.update(actual=reading.value, age_seconds=round(age.total_seconds(), 1))
        if age > timedelta(minutes=condition.max_data_age_minutes):
            logger.debug(f"Stale reading for {condition.sensor_id}.{condition.field} ({age})")
            return {**detail, "result": False, "status": "stale"}

        return {**detail, "result": condition.operator.compare(reading.value, condition.value), "status": "ok"}

    def _check_device(self, condition: DeviceCondition, snapshot: StateSnapshot) -> dict:
        detail = {"device_id": condition.device_id, "expected": condition.expected_status}
        actual = snapshot.devices.get(condition.device_id)
        if actual is None:
            return {**detail, "result": False, "status": "missing", "actual": None}
        return {**detail, "result": actual == condition.expected_status, "status": "ok", "actual": actual}

    def _check_time(self, condition: TimeCondition, snapshot: StateSnapshot) -> dict:
        """Check the local time-of-day against [time_start, time_end), wrapping midnight."""
        current = snapshot.local_time.strftime("%H:%M")
        weekday = (snapshot.local_time.weekday() + 1) % 7  # 0 = Sunday
        detail = {
            "time_start": condition.time_start,
            "time_end": condition.time_end,
            "actual": current,
            "weekday": weekday,
        }

        if condition.wraps_midnight:
            in_window = current >= condition.time_start or current < condition.time_end
        else:
            in_window = condition.time_start <= current < condition.time_end

        if condition.days_of_week is not None and weekday not in condition.days_of_week:
            return {**detail, "result": False, "status": "ok", "reason": "day_of_week"}
        return {**detail, "result": in_window, "status": "ok"}

    def _check_history(self, condition: HistoryCondition, snapshot: StateSnapshot) -> dict:
        detail = {
            "sensor_id": condition.sensor_id,
            "field": condition.field,
            "aggregation": condition.aggregation.value,
            "window_minutes": condition.window_minutes,
            "operator": condition.operator.value,
            "expected": condition.threshold,
        }
        value = snapshot.aggregates.get(
            (condition.sensor_id, condition.field, condition.aggregation, condition.window_minutes)
        )
        if value is None:
            return {**detail, "result": False, "status": "empty", "actual": None}
        return {
            **detail,
            "result": condition.operator.compare(value, condition.threshold),
            "status": "ok",
            "actual": value,
        }

    def _check_trend(self, condition: TrendCondition, snapshot: StateSnapshot) -> dict:
        detail = {
            "sensor_id": condition.sensor_id,
            "field": condition.field,
            "trend": condition.trend.value,
            "window_minutes": condition.window_minutes,
        }
        values = snapshot.histories.get((condition.sensor_id, condition.field, condition.window_minutes), [])
        if len(values) < 2:
            return {**detail, "result": False, "status": "insufficient", "samples": len(values)}

        slope = _linear_slope(values)
        match condition.trend:
            case TrendDirection.RISING:
                result = slope > condition.slope_threshold
            case TrendDirection.FALLING:
                result = slope < -condition.slope_threshold
            case TrendDirection.STABLE:
                result = abs(slope) <= condition.slope_threshold
        return {**detail, "result": result, "status": "ok", "slope": round(slope, 6), "samples": len(values)}

    def _check_heartbeat(self, condition: HeartbeatCondition, snapshot: StateSnapshot) -> dict:
        """True when the sensor has gone silent for longer than the timeout."""
        detail = {"sensor_id": condition.sensor_id, "timeout_minutes": condition.timeout_minutes}
        seen = snapshot.last_seen.get(condition.sensor_id)
        if seen is None:
            return {**detail, "result": True, "status": "missing", "last_seen": None}
        silent = snapshot.taken_at - seen
        return {
            **detail,
            "result": silent > timedelta(minutes=condition.timeout_minutes),
            "status": "ok",
            "last_seen": seen.isoformat(),
        }
