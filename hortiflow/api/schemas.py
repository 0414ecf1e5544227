"""HortiFlow API — Pydantic request/response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ── Rule schemas ──────────────────────────────────────────────────────────────

class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    enabled: bool = True
    priority: int = Field(5, description="Lower numbers run first")
    cooldown_minutes: int = Field(15, ge=0)
    conditions: dict[str, Any] | list[Any] = Field(..., description="Condition tree")
    actions: list[dict[str, Any]] = Field(default_factory=list)


class RuleResponse(BaseModel):
    id: int
    name: str
    description: str | None
    enabled: bool
    priority: int
    cooldown_minutes: int
    conditions: dict[str, Any]
    actions: list[dict[str, Any]]
    last_triggered: datetime | None
    trigger_count: int
    created_at: datetime

    model_config = {"from_attributes": True}


class BulkRuleRequest(BaseModel):
    rule_ids: list[int] = Field(..., min_length=1)


class BulkRuleResponse(BaseModel):
    updated: list[int]
    not_found: list[int]


# ── Execution schemas ─────────────────────────────────────────────────────────

class ExecutionResponse(BaseModel):
    id: int
    rule_id: int
    triggered_at: datetime
    success: bool
    suppressed: bool
    execution_time_ms: float | None
    trigger_data: dict[str, Any] | None
    evaluation_result: dict[str, Any] | None
    actions_executed: list[dict[str, Any]] | None
    error_message: str | None

    model_config = {"from_attributes": True}


class RuleStatsResponse(BaseModel):
    rule_id: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    suppressed_executions: int
    last_execution: datetime | None


class TriggerRequest(BaseModel):
    force: bool = Field(False, description="Dispatch actions even if conditions are not met")


class TriggerResponse(BaseModel):
    rule_id: int
    status: str
    execution: dict[str, Any] | None = None
    evaluation: dict[str, Any] | None = None


class ConditionTestRequest(BaseModel):
    conditions: dict[str, Any] | list[Any]


class ConditionTestResponse(BaseModel):
    result: bool
    details: list[dict[str, Any]]
    state: dict[str, Any]


# ── Engine schemas ────────────────────────────────────────────────────────────

class EngineStatusResponse(BaseModel):
    is_running: bool
    interval_seconds: int
    active_rules: int
    last_tick_at: datetime | None
    next_tick_at: datetime | None
    last_error: str | None
    tick_in_progress: bool
    ticks: int
    skipped_ticks: int
    rules_evaluated: int
    rules_triggered: int
    suppressed: int
    failed_executions: int
    invalid_rules: int
    recorder_failures: int
    overruns: int


class TickResponse(BaseModel):
    skipped: bool = False
    summary: dict[str, Any] | None = None


class StatusResponse(BaseModel):
    status: str
    message: str
