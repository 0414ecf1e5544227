"""Rules router — rule authoring, enable/disable, history, manual triggers."""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException

from hortiflow.api.deps import get_engine, get_memory
from hortiflow.api.schemas import (
    BulkRuleRequest,
    BulkRuleResponse,
    ConditionTestRequest,
    ConditionTestResponse,
    ExecutionResponse,
    RuleCreate,
    RuleResponse,
    RuleStatsResponse,
    StatusResponse,
    TriggerRequest,
    TriggerResponse,
)
from hortiflow.core.engine import RulesEngine
from hortiflow.core.errors import RuleNotFoundError, RuleValidationError
from hortiflow.core.memory import Memory
from hortiflow.core.rules import validate_definition

router = APIRouter()


def _validation_error(e: RuleValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail={"message": str(e), "errors": e.errors})


def _get_rule_or_404(memory: Memory, rule_id: int):
    rule = memory.get_rule(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@router.get("", response_model=list[RuleResponse])
async def list_rules(enabled: bool | None = None, memory: Memory = Depends(get_memory)):
    """List rules in evaluation order, optionally filtered by enabled flag."""
    rules = memory.get_all_rules()
    if enabled is not None:
        rules = [r for r in rules if r.enabled == enabled]
    return rules


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(body: RuleCreate, memory: Memory = Depends(get_memory)):
    """Create a rule. Conditions and actions are validated before anything is stored."""
    try:
        definition = validate_definition(body.model_dump())
    except RuleValidationError as e:
        raise _validation_error(e)
    return memory.create_rule(definition)


@router.post("/test", response_model=ConditionTestResponse)
async def test_conditions(body: ConditionTestRequest, engine: RulesEngine = Depends(get_engine)):
    """Evaluate a condition tree against live state without firing anything."""
    try:
        return engine.test_conditions(body.conditions)
    except RuleValidationError as e:
        raise _validation_error(e)


@router.post("/bulk/enable", response_model=BulkRuleResponse)
async def bulk_enable(body: BulkRuleRequest, memory: Memory = Depends(get_memory)):
    return _bulk_set_enabled(memory, body.rule_ids, True)


@router.post("/bulk/disable", response_model=BulkRuleResponse)
async def bulk_disable(body: BulkRuleRequest, memory: Memory = Depends(get_memory)):
    return _bulk_set_enabled(memory, body.rule_ids, False)


def _bulk_set_enabled(memory: Memory, rule_ids: list[int], enabled: bool) -> BulkRuleResponse:
    updated = sorted(r.id for r in memory.set_rules_enabled(rule_ids, enabled))
    missing = sorted(set(rule_ids) - set(updated))
    return BulkRuleResponse(updated=updated, not_found=missing)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: int, memory: Memory = Depends(get_memory)):
    return _get_rule_or_404(memory, rule_id)


@router.post("/{rule_id}/enable", response_model=RuleResponse)
async def enable_rule(rule_id: int, memory: Memory = Depends(get_memory)):
    rule = memory.set_rule_enabled(rule_id, True)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@router.post("/{rule_id}/disable", response_model=RuleResponse)
async def disable_rule(rule_id: int, memory: Memory = Depends(get_memory)):
    rule = memory.set_rule_enabled(rule_id, False)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@router.delete("/{rule_id}", response_model=StatusResponse)
async def delete_rule(rule_id: int, memory: Memory = Depends(get_memory)):
    """Delete a rule and its execution history."""
    if not memory.delete_rule(rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return StatusResponse(status="ok", message=f"Rule {rule_id} deleted")


@router.get("/{rule_id}/executions", response_model=list[ExecutionResponse])
async def get_executions(rule_id: int, limit: int = 50, memory: Memory = Depends(get_memory)):
    """Execution history for a rule, newest first."""
    _get_rule_or_404(memory, rule_id)
    return memory.get_rule_executions(rule_id, limit=limit)


@router.get("/{rule_id}/stats", response_model=RuleStatsResponse)
async def get_stats(
    rule_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    memory: Memory = Depends(get_memory),
):
    """Execution counts for a rule. Defaults to the last 24 hours."""
    _get_rule_or_404(memory, rule_id)
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(hours=24)
    return memory.get_rule_stats(rule_id, start, end)


@router.post("/{rule_id}/trigger", response_model=TriggerResponse)
async def trigger_rule(
    rule_id: int,
    body: TriggerRequest | None = None,
    engine: RulesEngine = Depends(get_engine),
):
    """Evaluate a rule now, bypassing its cooldown."""
    try:
        return await engine.trigger_rule(rule_id, force=body.force if body else False)
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found")
    except RuleValidationError as e:
        raise _validation_error(e)
