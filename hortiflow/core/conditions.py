"""HortiFlow condition tree — typed condition nodes parsed once at the rule-load boundary.

A rule's ``conditions`` column holds a JSON document. ``parse_conditions`` turns it
into a tree of frozen pydantic models (a closed set of node types selected by the
``type`` discriminator). Unknown node types, unknown operators and malformed leaves
are rejected here, never at evaluation time.

Accepted input shapes:
    - a node dict: ``{"type": "sensor", "sensor_id": "temhum1", ...}``
    - a legacy group dict: ``{"operator": "OR", "rules": [...]}``
    - a legacy bare list of nodes, treated as an AND group
    - any of the above as a JSON string
Keys may be snake_case or camelCase.
"""

import json
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from hortiflow.core.errors import RuleValidationError

_TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}

_OPERATOR_ALIASES = {
    ">": "GT",
    ">=": "GTE",
    "<": "LT",
    "<=": "LTE",
    "==": "EQ",
    "=": "EQ",
    "!=": "NEQ",
}

_NODE_TYPE_ALIASES = {
    "sensor_history": "history",
    "sensor_trend": "trend",
    "sensor_heartbeat": "heartbeat",
}


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ComparisonOperator(str, Enum):
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    EQ = "EQ"
    NEQ = "NEQ"

    def compare(self, actual: float, expected: float) -> bool:
        match self:
            case ComparisonOperator.GT:
                return actual > expected
            case ComparisonOperator.GTE:
                return actual >= expected
            case ComparisonOperator.LT:
                return actual < expected
            case ComparisonOperator.LTE:
                return actual <= expected
            case ComparisonOperator.EQ:
                return actual == expected
            case ComparisonOperator.NEQ:
                return actual != expected


class Aggregation(str, Enum):
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"
    COUNT = "COUNT"
    SUM = "SUM"


class TrendDirection(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


def _normalize_operator(value: Any) -> Any:
    if isinstance(value, str):
        return _OPERATOR_ALIASES.get(value.strip(), value.strip().upper())
    return value


Comparison = Annotated[ComparisonOperator, BeforeValidator(_normalize_operator)]
Logical = Annotated[LogicalOperator, BeforeValidator(_normalize_operator)]


class _Node(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class GroupCondition(_Node):
    type: Literal["group"] = "group"
    operator: Logical = LogicalOperator.AND
    children: list["ConditionNode"] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_not_arity(self) -> "GroupCondition":
        if self.operator is LogicalOperator.NOT and len(self.children) != 1:
            raise ValueError(f"NOT group expects exactly one child, got {len(self.children)}")
        return self


class SensorCondition(_Node):
    type: Literal["sensor"] = "sensor"
    sensor_id: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    operator: Comparison
    value: float
    max_data_age_minutes: int = Field(10, ge=0)


class DeviceCondition(_Node):
    type: Literal["device"] = "device"
    device_id: str = Field(..., min_length=1)
    expected_status: str = Field(..., min_length=1)


class TimeCondition(_Node):
    type: Literal["time"] = "time"
    time_start: str = Field(..., pattern=_TIME_PATTERN)
    time_end: str = Field(..., pattern=_TIME_PATTERN)
    days_of_week: frozenset[int] | None = None

    @field_validator("days_of_week", mode="before")
    @classmethod
    def parse_days(cls, value: Any) -> Any:
        if value is None:
            return None
        days = []
        for day in value:
            if isinstance(day, str):
                key = day.strip().lower()[:3]
                if key not in _DAY_NAMES:
                    raise ValueError(f"Unknown weekday {day!r}")
                days.append(_DAY_NAMES[key])
            else:
                days.append(day)
        if any(not 0 <= d <= 6 for d in days):
            raise ValueError("days_of_week values must be 0 (Sunday) to 6 (Saturday)")
        return frozenset(days)

    @property
    def wraps_midnight(self) -> bool:
        return self.time_end <= self.time_start


class HistoryCondition(_Node):
    type: Literal["history"] = "history"
    sensor_id: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    aggregation: Aggregation
    window_minutes: int = Field(..., gt=0)
    operator: Comparison
    threshold: float

    @field_validator("aggregation", mode="before")
    @classmethod
    def upper_aggregation(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class TrendCondition(_Node):
    type: Literal["trend"] = "trend"
    sensor_id: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    trend: TrendDirection
    window_minutes: int = Field(..., gt=0)
    slope_threshold: float = Field(0.01, ge=0)


class HeartbeatCondition(_Node):
    type: Literal["heartbeat"] = "heartbeat"
    sensor_id: str = Field(..., min_length=1)
    timeout_minutes: int = Field(..., gt=0)


ConditionNode = Annotated[
    Union[
        GroupCondition,
        SensorCondition,
        DeviceCondition,
        TimeCondition,
        HistoryCondition,
        TrendCondition,
        HeartbeatCondition,
    ],
    Field(discriminator="type"),
]

GroupCondition.model_rebuild()

LeafCondition = Union[
    SensorCondition,
    DeviceCondition,
    TimeCondition,
    HistoryCondition,
    TrendCondition,
    HeartbeatCondition,
]

_condition_adapter: TypeAdapter = TypeAdapter(ConditionNode)


def _normalize_node(data: Any) -> Any:
    """Rewrite legacy shapes into the canonical tagged form, recursively."""
    if isinstance(data, list):
        return {"type": "group", "operator": "AND", "children": [_normalize_node(c) for c in data]}
    if not isinstance(data, dict):
        return data

    node = dict(data)
    if "type" not in node and ("rules" in node or "children" in node):
        node["type"] = "group"
    if isinstance(node.get("type"), str):
        node_type = node["type"].strip().lower()
        node["type"] = _NODE_TYPE_ALIASES.get(node_type, node_type)
    if node.get("type") == "group":
        if "rules" in node:
            node["children"] = node.pop("rules")
        node["children"] = [_normalize_node(c) for c in node.get("children", [])]
    return node


def parse_conditions(data: dict | list | str) -> ConditionNode:
    """Validate a raw condition document and return the typed tree.

    Raises RuleValidationError if the document is not a valid condition tree.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise RuleValidationError(f"Conditions are not valid JSON: {e}") from e
    try:
        return _condition_adapter.validate_python(_normalize_node(data))
    except ValidationError as e:
        raise RuleValidationError(
            f"Invalid condition tree: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def dump_conditions(node: ConditionNode) -> dict:
    """Serialize a condition tree to its canonical JSON-compatible form."""
    return _condition_adapter.dump_python(node, mode="json")


def iter_leaves(node: ConditionNode) -> Iterator[LeafCondition]:
    """Yield every leaf of the tree, depth first, in declaration order."""
    if isinstance(node, GroupCondition):
        for child in node.children:
            yield from iter_leaves(child)
    else:
        yield node
