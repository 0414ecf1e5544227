"""HortiFlow rule definitions — validated construction of typed rules.

Rules are persisted with their conditions and actions as JSON. Everything past
this module works on ``AutomationRule`` objects whose trees were validated once,
here, at the load boundary.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hortiflow.core.actions import Action, dump_actions, parse_actions
from hortiflow.core.conditions import ConditionNode, dump_conditions, parse_conditions
from hortiflow.core.errors import RuleValidationError

logger = logging.getLogger("hortiflow.rules")


class RuleDefinition(BaseModel):
    """A rule as authored: metadata plus typed condition tree and action list."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    enabled: bool = True
    priority: int = 5
    cooldown_minutes: int = Field(15, ge=0)
    conditions: ConditionNode
    actions: list[Action] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def parse_condition_tree(cls, value):
        if isinstance(value, BaseModel):
            return value
        return parse_conditions(value)

    @field_validator("actions", mode="before")
    @classmethod
    def parse_action_list(cls, value):
        if isinstance(value, list) and all(isinstance(a, BaseModel) for a in value):
            return value
        return parse_actions(value)

    def to_record(self) -> dict:
        """Column values for persisting this definition."""
        return {
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "priority": self.priority,
            "cooldown_minutes": self.cooldown_minutes,
            "conditions": dump_conditions(self.conditions),
            "actions": dump_actions(self.actions),
        }


class AutomationRule(RuleDefinition):
    """A persisted rule, typed, as the engine sees it during a tick."""

    id: int
    last_triggered: datetime | None = None
    trigger_count: int = Field(0, ge=0)


def validate_definition(data: dict) -> RuleDefinition:
    """Validate an authoring payload. Raises RuleValidationError."""
    try:
        return RuleDefinition.model_validate(data)
    except RuleValidationError:
        raise
    except ValidationError as e:
        raise RuleValidationError(
            f"Invalid rule definition: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def build_rule(record) -> AutomationRule:
    """Build a typed rule from a persisted ``models.Rule`` row.

    Raises RuleValidationError if the stored conditions or actions are malformed.
    """
    last_triggered = record.last_triggered
    if last_triggered is not None and last_triggered.tzinfo is None:
        last_triggered = last_triggered.replace(tzinfo=timezone.utc)
    try:
        return AutomationRule(
            id=record.id,
            name=record.name,
            description=record.description,
            enabled=record.enabled,
            priority=record.priority,
            cooldown_minutes=record.cooldown_minutes,
            conditions=record.conditions,
            actions=record.actions,
            last_triggered=last_triggered,
            trigger_count=record.trigger_count or 0,
        )
    except RuleValidationError as e:
        raise RuleValidationError(f"Rule {record.id} is invalid: {e}", errors=e.errors) from e
    except ValidationError as e:
        raise RuleValidationError(
            f"Rule {record.id} is invalid: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def load_rule_file(path: str | Path) -> list[RuleDefinition]:
    """Load rule definitions from a YAML file with a top-level ``rules`` list.

    Every definition is validated; the first invalid one aborts the load.
    """
    path = Path(path)
    data = yaml.safe_load(path.read_text())
    if not data or "rules" not in data:
        logger.warning(f"No rules found in {path.name}")
        return []

    definitions = []
    for index, raw in enumerate(data["rules"]):
        try:
            definitions.append(validate_definition(raw))
        except RuleValidationError as e:
            raise RuleValidationError(f"{path.name} rule #{index}: {e}", errors=e.errors) from e
    logger.info(f"Loaded {len(definitions)} rule definitions from {path.name}")
    return definitions


class RuleOrder:
    """Priority ordering of rules with stable, remembered tie-breaking.

    Lower priority numbers come first. Rules sharing a priority keep the relative
    order they had on the previous tick; rules not seen before follow in the
    order storage returned them.
    """

    def __init__(self):
        self._positions: dict[int, int] = {}

    def sort(self, rules: list[AutomationRule]) -> list[AutomationRule]:
        unseen = len(self._positions) + len(rules)
        ordered = sorted(rules, key=lambda r: (r.priority, self._positions.get(r.id, unseen)))
        self._positions = {rule.id: index for index, rule in enumerate(ordered)}
        return ordered
