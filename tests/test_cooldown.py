"""Tests for the cooldown tracker and rule ordering."""

from datetime import timedelta

from conftest import NOW
from hortiflow.core.cooldown import CooldownTracker
from hortiflow.core.rules import AutomationRule, RuleOrder


def rule(rule_id=1, priority=5, cooldown=15, last_triggered=None, count=0):
    return AutomationRule(
        id=rule_id,
        name=f"rule {rule_id}",
        priority=priority,
        cooldown_minutes=cooldown,
        conditions=[],
        actions=[],
        last_triggered=last_triggered,
        trigger_count=count,
    )


class TestCooldownTracker:
    def test_never_triggered_is_eligible(self):
        tracker = CooldownTracker()
        tracker.refresh([rule()])
        assert tracker.is_eligible(1, NOW)

    def test_window(self):
        tracker = CooldownTracker()
        tracker.refresh([rule(last_triggered=NOW)])

        assert not tracker.is_eligible(1, NOW + timedelta(minutes=14, seconds=59))
        assert tracker.is_eligible(1, NOW + timedelta(minutes=15))
        assert tracker.remaining(1, NOW + timedelta(minutes=10)) == timedelta(minutes=5)

    def test_zero_cooldown(self):
        tracker = CooldownTracker()
        tracker.refresh([rule(cooldown=0, last_triggered=NOW)])
        assert tracker.is_eligible(1, NOW)

    def test_mark_triggered_counts(self):
        tracker = CooldownTracker()
        tracker.refresh([rule(count=3)])

        last, count = tracker.mark_triggered(1, NOW)

        assert last == NOW
        assert count == 4
        assert not tracker.is_eligible(1, NOW + timedelta(minutes=1))

    def test_refresh_never_moves_backwards(self):
        tracker = CooldownTracker()
        tracker.refresh([rule()])
        tracker.mark_triggered(1, NOW)

        # Storage still has the older value
        tracker.refresh([rule(last_triggered=NOW - timedelta(hours=1), count=0)])

        assert tracker.last_triggered(1) == NOW
        assert tracker.trigger_count(1) == 1

    def test_refresh_picks_up_newer_persisted_value(self):
        tracker = CooldownTracker()
        tracker.refresh([rule(last_triggered=NOW - timedelta(hours=1))])
        tracker.refresh([rule(last_triggered=NOW, count=7)])

        assert tracker.last_triggered(1) == NOW
        assert tracker.trigger_count(1) == 7

    def test_refresh_drops_rules_no_longer_loaded(self):
        tracker = CooldownTracker()
        tracker.refresh([rule(1, last_triggered=NOW, count=2), rule(2, last_triggered=NOW, count=4)])
        tracker.mark_triggered(2, NOW + timedelta(minutes=20))

        tracker.refresh([rule(1, last_triggered=NOW, count=2)])

        assert tracker.last_triggered(2) is None
        assert tracker.trigger_count(2) == 0
        assert tracker.is_eligible(2, NOW)
        assert tracker.last_triggered(1) == NOW
        assert tracker.trigger_count(1) == 2


class TestRuleOrder:
    """Priority ordering with stable tie-breaking across ticks."""

    def test_priority_ascending(self):
        ordered = RuleOrder().sort([rule(1, priority=3), rule(2, priority=1), rule(3, priority=2)])
        assert [r.id for r in ordered] == [2, 3, 1]

    def test_ties_keep_storage_order(self):
        ordered = RuleOrder().sort([rule(5), rule(2), rule(9)])
        assert [r.id for r in ordered] == [5, 2, 9]

    def test_ties_keep_previous_order(self):
        order = RuleOrder()
        order.sort([rule(5), rule(2)])

        ordered = order.sort([rule(2), rule(7), rule(5)])

        assert [r.id for r in ordered] == [5, 2, 7]
