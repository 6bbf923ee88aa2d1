"""Recurring plan endpoints: CRUD, lifecycle transitions, executions and stats."""

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from invest.api.schemas import PlanCreateRequest
from invest.api.serializers import to_json
from invest.models import PlanStatus

router = APIRouter()


@router.get("")
async def list_plans(
    request: Request,
    status: PlanStatus | None = None,
) -> JSONResponse:
    """All plans, oldest first, optionally filtered by status."""
    plans = request.app.state.scheduler.list_plans(status)
    return JSONResponse(content=to_json(plans))


@router.post("", status_code=201)
async def create_plan(request: Request, body: PlanCreateRequest) -> JSONResponse:
    plan = await request.app.state.scheduler.create(
        body.instrument_id, body.amount_per_execution, body.frequency
    )
    return JSONResponse(content=to_json(plan), status_code=201)


@router.get("/stats")
async def get_stats(request: Request) -> JSONResponse:
    scheduler = request.app.state.scheduler
    return JSONResponse(content={
        "active_plans": len(scheduler.list_plans(PlanStatus.ACTIVE)),
        "paused_plans": len(scheduler.list_plans(PlanStatus.PAUSED)),
        "total_monthly_investment": str(scheduler.total_monthly_investment()),
        "total_invested": str(scheduler.total_invested()),
        "total_executions": scheduler.total_executions(),
    })


@router.get("/executions")
async def get_executions(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
) -> JSONResponse:
    """Execution history across all plans, most recent first."""
    records = request.app.state.scheduler.get_execution_history(limit=limit)
    return JSONResponse(content=to_json(records))


@router.get("/{plan_id}")
async def get_plan(request: Request, plan_id: str) -> JSONResponse:
    return JSONResponse(content=to_json(request.app.state.scheduler.get_plan(plan_id)))


@router.get("/{plan_id}/executions")
async def get_plan_executions(
    request: Request,
    plan_id: str,
    limit: int | None = Query(default=None, ge=1),
) -> JSONResponse:
    scheduler = request.app.state.scheduler
    scheduler.get_plan(plan_id)
    records = scheduler.get_execution_history(plan_id=plan_id, limit=limit)
    return JSONResponse(content=to_json(records))


@router.post("/{plan_id}/pause")
async def pause_plan(request: Request, plan_id: str) -> JSONResponse:
    plan = await request.app.state.scheduler.pause(plan_id)
    return JSONResponse(content=to_json(plan))


@router.post("/{plan_id}/resume")
async def resume_plan(request: Request, plan_id: str) -> JSONResponse:
    plan = await request.app.state.scheduler.resume(plan_id)
    return JSONResponse(content=to_json(plan))


@router.post("/{plan_id}/cancel")
async def cancel_plan(request: Request, plan_id: str) -> JSONResponse:
    plan = await request.app.state.scheduler.cancel(plan_id)
    return JSONResponse(content=to_json(plan))
