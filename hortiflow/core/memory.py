"""HortiFlow Memory — database operations.

Implements the rule repository, sensor store, device store and action queue
protocols on top of SQLAlchemy.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from hortiflow.core.conditions import Aggregation
from hortiflow.core.errors import DeviceNotFoundError
from hortiflow.core.providers import SensorValue
from hortiflow.models.device import Device, QueuedAction
from hortiflow.models.rule import Rule, RuleExecution
from hortiflow.models.sensor import SensorReading

logger = logging.getLogger("hortiflow.memory")

_AGGREGATE_FUNCTIONS = {
    Aggregation.AVG: func.avg,
    Aggregation.MIN: func.min,
    Aggregation.MAX: func.max,
    Aggregation.SUM: func.sum,
    Aggregation.COUNT: func.count,
}


def _as_utc(value: datetime | None) -> datetime | None:
    """Normalize to an aware UTC datetime (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Memory:
    """Database operations for HortiFlow.

    All persistence goes through this class.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory()

    # ── Rule operations ───────────────────────────────────────────────────────

    def create_rule(self, definition) -> Rule:
        """Persist a validated RuleDefinition."""
        with self._session() as session:
            rule = Rule(**definition.to_record())
            session.add(rule)
            session.commit()
            session.refresh(rule)
            session.expunge(rule)
            logger.info(f"Created rule: {rule.id} ({rule.name})")
            return rule

    def get_rule(self, rule_id: int) -> Rule | None:
        with self._session() as session:
            rule = session.get(Rule, rule_id)
            if rule:
                session.expunge(rule)
            return rule

    def get_all_rules(self) -> list[Rule]:
        with self._session() as session:
            rules = session.query(Rule).order_by(Rule.priority.asc(), Rule.id.asc()).all()
            for r in rules:
                session.expunge(r)
            return rules

    def list_enabled_rules(self) -> list[Rule]:
        with self._session() as session:
            rules = (
                session.query(Rule)
                .filter(Rule.enabled == True)  # noqa: E712
                .order_by(Rule.priority.asc(), Rule.id.asc())
                .all()
            )
            for r in rules:
                session.expunge(r)
            return rules

    def set_rule_enabled(self, rule_id: int, enabled: bool) -> Rule | None:
        with self._session() as session:
            rule = session.get(Rule, rule_id)
            if not rule:
                return None
            rule.enabled = enabled
            session.commit()
            session.refresh(rule)
            session.expunge(rule)
            logger.info(f"Rule {rule_id} {'enabled' if enabled else 'disabled'}")
            return rule

    def set_rules_enabled(self, rule_ids: list[int], enabled: bool) -> list[Rule]:
        with self._session() as session:
            rules = session.query(Rule).filter(Rule.id.in_(rule_ids)).all()
            for rule in rules:
                rule.enabled = enabled
            session.commit()
            for rule in rules:
                session.refresh(rule)
                session.expunge(rule)
            logger.info(f"{'Enabled' if enabled else 'Disabled'} {len(rules)}/{len(rule_ids)} rules")
            return rules

    def delete_rule(self, rule_id: int) -> bool:
        """Hard-delete a rule and its execution history."""
        with self._session() as session:
            rule = session.get(Rule, rule_id)
            if not rule:
                return False
            session.delete(rule)
            session.commit()
            logger.info(f"Deleted rule {rule_id}")
            return True

    def update_rule_cooldown(self, rule_id: int, triggered_at: datetime, trigger_count: int) -> None:
        """Store trigger bookkeeping; never moves last_triggered back or lowers the count."""
        triggered_at = _as_utc(triggered_at)
        with self._session() as session:
            rule = session.get(Rule, rule_id)
            if not rule:
                logger.warning(f"Cannot update cooldown: rule {rule_id} no longer exists")
                return
            current = _as_utc(rule.last_triggered)
            if current is None or triggered_at > current:
                rule.last_triggered = triggered_at
            if trigger_count > rule.trigger_count:
                rule.trigger_count = trigger_count
            session.commit()

    # ── Execution operations ──────────────────────────────────────────────────

    def record_execution(self, execution) -> int:
        with self._session() as session:
            row = RuleExecution(
                rule_id=execution.rule_id,
                triggered_at=_as_utc(execution.triggered_at),
                success=execution.success,
                suppressed=execution.suppressed,
                execution_time_ms=int(round(execution.execution_time_ms)),
                trigger_data=execution.trigger_data,
                evaluation_result=execution.evaluation_result,
                actions_executed=list(execution.actions_executed),
                error_message=execution.error,
                stack_trace=execution.stack_trace,
            )
            session.add(row)
            session.commit()
            return row.id

    def get_rule_executions(self, rule_id: int, limit: int = 50) -> list[RuleExecution]:
        with self._session() as session:
            items = (
                session.query(RuleExecution)
                .filter(RuleExecution.rule_id == rule_id)
                .order_by(RuleExecution.triggered_at.desc(), RuleExecution.id.desc())
                .limit(limit)
                .all()
            )
            for e in items:
                session.expunge(e)
            return items

    def get_rule_stats(self, rule_id: int, start: datetime, end: datetime) -> dict:
        """Execution counts for a rule within [start, end]."""
        with self._session() as session:
            total, successful, failed, suppressed, last = (
                session.query(
                    func.count(RuleExecution.id),
                    func.sum(case((RuleExecution.success == True, 1), else_=0)),  # noqa: E712
                    func.sum(case((RuleExecution.success == False, 1), else_=0)),  # noqa: E712
                    func.sum(case((RuleExecution.suppressed == True, 1), else_=0)),  # noqa: E712
                    func.max(RuleExecution.triggered_at),
                )
                .filter(
                    RuleExecution.rule_id == rule_id,
                    RuleExecution.triggered_at >= _as_utc(start),
                    RuleExecution.triggered_at <= _as_utc(end),
                )
                .one()
            )
        return {
            "rule_id": rule_id,
            "total_executions": total or 0,
            "successful_executions": successful or 0,
            "failed_executions": failed or 0,
            "suppressed_executions": suppressed or 0,
            "last_execution": _as_utc(last),
        }

    # ── Sensor operations ─────────────────────────────────────────────────────

    def add_sensor_reading(
        self, sensor_id: str, field: str, value: float, recorded_at: datetime | None = None
    ) -> SensorReading:
        with self._session() as session:
            reading = SensorReading(
                sensor_id=sensor_id,
                field=field,
                value=value,
                recorded_at=_as_utc(recorded_at) or datetime.now(timezone.utc),
            )
            session.add(reading)
            session.commit()
            session.refresh(reading)
            session.expunge(reading)
            return reading

    def get_latest_sensor_value(self, sensor_id: str, field: str) -> SensorValue | None:
        with self._session() as session:
            reading = (
                session.query(SensorReading)
                .filter(SensorReading.sensor_id == sensor_id, SensorReading.field == field)
                .order_by(SensorReading.recorded_at.desc(), SensorReading.id.desc())
                .first()
            )
            if not reading:
                return None
            return SensorValue(value=reading.value, timestamp=_as_utc(reading.recorded_at))

    def get_aggregate(
        self,
        sensor_id: str,
        field: str,
        window_minutes: int,
        fn: Aggregation,
        now: datetime,
    ) -> float | None:
        """Aggregate over the trailing window. None when no readings fall inside it."""
        cutoff = _as_utc(now) - timedelta(minutes=window_minutes)
        with self._session() as session:
            count, value = (
                session.query(
                    func.count(SensorReading.id),
                    _AGGREGATE_FUNCTIONS[fn](SensorReading.value),
                )
                .filter(
                    SensorReading.sensor_id == sensor_id,
                    SensorReading.field == field,
                    SensorReading.recorded_at >= cutoff,
                    SensorReading.recorded_at <= _as_utc(now),
                )
                .one()
            )
        if not count:
            return None
        return float(value)

    def get_sensor_history(
        self, sensor_id: str, field: str, window_minutes: int, now: datetime
    ) -> list[float]:
        cutoff = _as_utc(now) - timedelta(minutes=window_minutes)
        with self._session() as session:
            rows = (
                session.query(SensorReading.value)
                .filter(
                    SensorReading.sensor_id == sensor_id,
                    SensorReading.field == field,
                    SensorReading.recorded_at >= cutoff,
                    SensorReading.recorded_at <= _as_utc(now),
                )
                .order_by(SensorReading.recorded_at.asc(), SensorReading.id.asc())
                .all()
            )
        return [row.value for row in rows]

    def get_last_seen(self, sensor_id: str) -> datetime | None:
        with self._session() as session:
            last = (
                session.query(func.max(SensorReading.recorded_at))
                .filter(SensorReading.sensor_id == sensor_id)
                .scalar()
            )
        return _as_utc(last)

    # ── Device operations ─────────────────────────────────────────────────────

    def create_device(self, data: dict) -> Device:
        with self._session() as session:
            device = Device(**data)
            session.add(device)
            session.commit()
            session.refresh(device)
            session.expunge(device)
            logger.info(f"Created device: {device.id} ({device.name})")
            return device

    def get_device(self, device_id: str) -> Device | None:
        with self._session() as session:
            device = session.get(Device, device_id)
            if device:
                session.expunge(device)
            return device

    def get_device_status(self, device_id: str) -> str | None:
        device = self.get_device(device_id)
        return device.status if device else None

    def apply_device_action(self, device_id: str, action: str, value: Any = None) -> dict:
        """Apply a device command and return the resulting state.

        TURN_ON/TURN_OFF set the status, TOGGLE flips on/off, SET_VALUE stores the
        value and RESET switches off and clears the value.
        """
        with self._session() as session:
            device = session.get(Device, device_id)
            if not device:
                raise DeviceNotFoundError(device_id)
            previous_status, previous_value = device.status, device.value

            match action:
                case "TURN_ON":
                    device.status = "on"
                case "TURN_OFF":
                    device.status = "off"
                case "TOGGLE":
                    device.status = "off" if device.status == "on" else "on"
                case "SET_VALUE":
                    device.value = None if value is None else str(value)
                case "RESET":
                    device.status = "off"
                    device.value = None
                case _:
                    raise ValueError(f"Unknown device action: {action!r}")

            session.commit()
            logger.info(f"Device {device_id}: {action} → status={device.status!r} value={device.value!r}")
            return {
                "device_id": device_id,
                "status": device.status,
                "value": device.value,
                "previous_status": previous_status,
                "previous_value": previous_value,
            }

    # ── Queue operations ──────────────────────────────────────────────────────

    def enqueue(self, queue_name: str, payload: dict, priority: str = "medium") -> int:
        with self._session() as session:
            item = QueuedAction(queue_name=queue_name, payload=payload, priority=priority)
            session.add(item)
            session.commit()
            logger.info(f"Action queued on {queue_name!r} (id={item.id}, priority={priority})")
            return item.id

    def get_queued_actions(self, queue_name: str | None = None, status: str = "pending") -> list[QueuedAction]:
        with self._session() as session:
            query = session.query(QueuedAction).filter(QueuedAction.status == status)
            if queue_name:
                query = query.filter(QueuedAction.queue_name == queue_name)
            items = query.order_by(QueuedAction.created_at.asc(), QueuedAction.id.asc()).all()
            for item in items:
                session.expunge(item)
            return items
