"""HortiFlow domain exceptions."""


class HortiFlowError(Exception):
    """Base class for all HortiFlow errors."""


class RuleValidationError(HortiFlowError):
    """A rule definition (conditions, actions or metadata) is malformed."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class RuleNotFoundError(HortiFlowError):
    def __init__(self, rule_id: int):
        super().__init__(f"Rule {rule_id} not found")
        self.rule_id = rule_id


class DeviceNotFoundError(HortiFlowError):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id!r} not found")
        self.device_id = device_id


class ActionTimeoutError(HortiFlowError):
    """An action did not complete within its dispatch timeout."""

    def __init__(self, action_type: str, timeout: float):
        super().__init__(f"Action {action_type!r} timed out after {timeout:.1f}s")
        self.action_type = action_type
        self.timeout = timeout
