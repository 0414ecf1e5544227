"""HortiFlow actions — the closed set of side effects a rule can perform."""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from hortiflow.core.errors import RuleValidationError

_ACTION_TYPE_ALIASES = {
    "device_status": "device_control",
    "operation": "queue",
}


class DeviceCommand(str, Enum):
    TURN_ON = "TURN_ON"
    TURN_OFF = "TURN_OFF"
    TOGGLE = "TOGGLE"
    SET_VALUE = "SET_VALUE"
    RESET = "RESET"


class NotificationChannel(str, Enum):
    LOG = "log"
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    WEBHOOK = "webhook"


class _Action(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class NotificationAction(_Action):
    type: Literal["notification"] = "notification"
    channels: list[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.LOG])
    template: str = Field(..., min_length=1)
    title: str | None = None
    priority: Literal["low", "normal", "high", "critical"] = "normal"
    variables: dict[str, Any] = Field(default_factory=dict)

    @field_validator("channels", mode="before")
    @classmethod
    def lower_channels(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        return [c.lower() if isinstance(c, str) else c for c in value]


class DeviceControlAction(_Action):
    type: Literal["device_control"] = "device_control"
    device_id: str = Field(..., min_length=1)
    action: DeviceCommand
    value: float | str | None = None
    duration_minutes: int | None = Field(None, gt=0)

    @field_validator("action", mode="before")
    @classmethod
    def upper_action(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def check_value(self) -> "DeviceControlAction":
        if self.action is DeviceCommand.SET_VALUE and self.value is None:
            raise ValueError("SET_VALUE requires a value")
        return self


class WebhookAction(_Action):
    type: Literal["webhook"] = "webhook"
    url: HttpUrl
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] | None = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class QueueAction(_Action):
    type: Literal["queue"] = "queue"
    queue_name: str = Field(..., min_length=1)
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    payload: dict[str, Any] = Field(default_factory=dict)


Action = Annotated[
    Union[NotificationAction, DeviceControlAction, WebhookAction, QueueAction],
    Field(discriminator="type"),
]

_actions_adapter: TypeAdapter = TypeAdapter(list[Action])


def _normalize_action(data: Any) -> Any:
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        return data
    action = dict(data)
    action_type = action["type"].strip().lower()
    action["type"] = _ACTION_TYPE_ALIASES.get(action_type, action_type)
    return action


def parse_actions(data: list | str | None) -> list[Action]:
    """Validate a raw action list and return typed actions, order preserved.

    Raises RuleValidationError on unknown action types or malformed actions.
    """
    if data is None:
        return []
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise RuleValidationError(f"Actions are not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise RuleValidationError("Actions must be a list")
    try:
        return _actions_adapter.validate_python([_normalize_action(a) for a in data])
    except ValidationError as e:
        raise RuleValidationError(
            f"Invalid action list: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def dump_actions(actions: list[Action]) -> list[dict]:
    """Serialize actions to their canonical JSON-compatible form."""
    return _actions_adapter.dump_python(actions, mode="json")
