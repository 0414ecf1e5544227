"""HortiFlow Cooldown Tracker — decides whether a rule may fire again."""

import logging
from datetime import datetime, timedelta

from hortiflow.core.rules import AutomationRule

logger = logging.getLogger("hortiflow.cooldown")


class CooldownTracker:
    """Tracks last trigger time and count per rule.

    Persisted rule state is merged in at the start of every tick. The tracker
    only ever moves ``last_triggered`` forward, so a stale read from storage
    cannot reopen a cooldown window.
    """

    def __init__(self):
        self._last_triggered: dict[int, datetime] = {}
        self._counts: dict[int, int] = {}
        self._cooldowns: dict[int, int] = {}

    def refresh(self, rules: list[AutomationRule]) -> None:
        """Merge the tick's rules and drop entries for rules no longer loaded."""
        loaded = {rule.id for rule in rules}
        for rule_id in (self._cooldowns.keys() | self._counts.keys()) - loaded:
            self.forget(rule_id)
        for rule in rules:
            self.sync(rule)

    def sync(self, rule: AutomationRule) -> None:
        self._cooldowns[rule.id] = rule.cooldown_minutes
        if rule.last_triggered is not None:
            current = self._last_triggered.get(rule.id)
            if current is None or rule.last_triggered > current:
                self._last_triggered[rule.id] = rule.last_triggered
        self._counts[rule.id] = max(self._counts.get(rule.id, 0), rule.trigger_count)

    def last_triggered(self, rule_id: int) -> datetime | None:
        return self._last_triggered.get(rule_id)

    def trigger_count(self, rule_id: int) -> int:
        return self._counts.get(rule_id, 0)

    def is_eligible(self, rule_id: int, now: datetime) -> bool:
        last = self._last_triggered.get(rule_id)
        if last is None:
            return True
        return now - last >= timedelta(minutes=self._cooldowns.get(rule_id, 0))

    def remaining(self, rule_id: int, now: datetime) -> timedelta:
        """Time left until the rule is eligible again (zero when eligible)."""
        last = self._last_triggered.get(rule_id)
        if last is None:
            return timedelta(0)
        left = timedelta(minutes=self._cooldowns.get(rule_id, 0)) - (now - last)
        return max(left, timedelta(0))

    def mark_triggered(self, rule_id: int, now: datetime) -> tuple[datetime, int]:
        """Record a successful trigger; returns the new (last_triggered, trigger_count)."""
        last = self._last_triggered.get(rule_id)
        if last is None or now > last:
            self._last_triggered[rule_id] = now
        self._counts[rule_id] = self._counts.get(rule_id, 0) + 1
        logger.debug(f"Rule {rule_id} triggered (count={self._counts[rule_id]})")
        return self._last_triggered[rule_id], self._counts[rule_id]

    def forget(self, rule_id: int) -> None:
        logger.debug(f"Rule {rule_id} no longer loaded — dropping cooldown state")
        self._last_triggered.pop(rule_id, None)
        self._counts.pop(rule_id, None)
        self._cooldowns.pop(rule_id, None)
