"""HortiFlow Execution Recorder — persists one execution per fired rule."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from hortiflow.core.providers import RuleRepository

logger = logging.getLogger("hortiflow.recorder")


@dataclass(frozen=True)
class ExecutionRecord:
    rule_id: int
    triggered_at: datetime
    success: bool
    execution_time_ms: float
    suppressed: bool = False
    trigger_data: dict | None = None
    evaluation_result: dict | None = None
    actions_executed: list[dict] = field(default_factory=list)
    error: str | None = None
    stack_trace: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["triggered_at"] = self.triggered_at.isoformat()
        return data


class ExecutionRecorder:
    """Writes executions and cooldown bookkeeping through the rule repository.

    A persistence failure is logged and swallowed here so that one bad write
    cannot stop the remaining rules in a tick.
    """

    def __init__(self, repository: RuleRepository):
        self.repository = repository
        self.failures = 0

    def record(self, execution: ExecutionRecord) -> int | None:
        try:
            execution_id = self.repository.record_execution(execution)
        except Exception as e:
            self.failures += 1
            logger.error(f"Failed to record execution for rule {execution.rule_id}: {e}", exc_info=True)
            return None
        logger.debug(
            f"Recorded execution {execution_id} for rule {execution.rule_id} "
            f"(success={execution.success}, suppressed={execution.suppressed})"
        )
        return execution_id

    def record_trigger(self, rule_id: int, triggered_at: datetime, trigger_count: int) -> bool:
        try:
            self.repository.update_rule_cooldown(rule_id, triggered_at, trigger_count)
        except Exception as e:
            self.failures += 1
            logger.error(f"Failed to persist cooldown for rule {rule_id}: {e}", exc_info=True)
            return False
        return True
