"""Engine router — scheduler status and control."""

from fastapi import APIRouter, Depends

from hortiflow.api.deps import get_scheduler
from hortiflow.api.schemas import EngineStatusResponse, TickResponse
from hortiflow.core.scheduler import EngineScheduler

router = APIRouter()


@router.get("/status", response_model=EngineStatusResponse)
async def engine_status(scheduler: EngineScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.post("/start", response_model=EngineStatusResponse)
async def start_engine(scheduler: EngineScheduler = Depends(get_scheduler)):
    """Start the tick loop (no-op if already running)."""
    scheduler.start()
    return scheduler.status()


@router.post("/stop", response_model=EngineStatusResponse)
async def stop_engine(scheduler: EngineScheduler = Depends(get_scheduler)):
    """Stop the tick loop, waiting for an in-flight tick."""
    await scheduler.stop()
    return scheduler.status()


@router.post("/tick", response_model=TickResponse)
async def run_tick(scheduler: EngineScheduler = Depends(get_scheduler)):
    """Run one tick now. Reports ``skipped`` when a tick is already in progress."""
    summary = await scheduler.trigger_now()
    return TickResponse(skipped=summary is None, summary=summary)
