"""同步 API."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from feedmirror.core.errors import StoreUnavailableError, SyncAlreadyRunningError
from feedmirror.core.quota import Zone
from feedmirror.core.services import SyncServices, get_services
from feedmirror.models.sync import SyncRun

router = APIRouter(prefix="/api/sync", tags=["sync"])


def run_to_dict(run: SyncRun) -> dict[str, Any]:
    """序列化同步任务."""
    return {
        "id": run.id,
        "status": run.status,
        "progress": run.progress,
        "message": run.message,
        "error": run.error,
        "error_kind": run.error_kind,
        "retryable": run.retryable,
        "new_articles": run.new_articles,
        "updated_articles": run.updated_articles,
        "deleted_articles": run.deleted_articles,
        "new_tags": run.new_tags,
        "failed_feeds": run.failed_feeds,
        "skipped_items": run.skipped_items,
        "feeds_total": run.feeds_total,
        "items_total": run.items_total,
        "items_processed": run.items_processed,
        "sidebar": run.sidebar,
        "started_at": run.started_at.isoformat(),
        "updated_at": run.updated_at.isoformat(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


@router.post("", status_code=202)
async def trigger_sync(
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """触发同步，立即返回任务 ID."""
    try:
        if not await services.quota.can_proceed(Zone.READ):
            snapshot = await services.quota.snapshot()
            raise HTTPException(
                status_code=429,
                detail={
                    "message": "API 配额已用尽",
                    "reset_after_seconds": snapshot.reset_after_seconds,
                },
                headers={"Retry-After": str(snapshot.reset_after_seconds)},
            )
        run = await services.orchestrator.start()
    except SyncAlreadyRunningError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": e.user_message, "run_id": e.run_id},
        ) from e
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.user_message) from e

    return run_to_dict(run)


@router.get("/runs")
async def list_runs(
    limit: int = Query(5, ge=1, le=50, description="数量"),
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """最近的同步任务."""
    runs = await services.orchestrator.list_runs(limit)
    return {
        "active_run_id": services.orchestrator.active_run_id,
        "items": [run_to_dict(run) for run in runs],
    }


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """查询同步任务状态."""
    run = await services.orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="同步任务不存在")
    return run_to_dict(run)


@router.get("/last-success")
async def last_success(
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """最近一次成功同步的时间."""
    completed_at = await services.orchestrator.last_successful_sync()
    return {"completed_at": completed_at.isoformat() if completed_at else None}


@router.get("/usage")
async def get_usage(
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """当前配额使用情况."""
    snapshot = await services.quota.snapshot()
    data = snapshot.to_dict()
    data["recommended_delay_seconds"] = await services.quota.recommended_delay()
    return data


@router.get("/usage/history")
async def get_usage_history(
    days: int = Query(30, ge=1, le=365, description="天数"),
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """近几天的配额记录."""
    records = await services.quota.usage_history(days)
    return {
        "items": [
            {
                "day": r.day,
                "zone1_usage": r.zone1_usage,
                "zone1_limit": r.zone1_limit,
                "zone1_calls": r.zone1_calls,
                "zone2_usage": r.zone2_usage,
                "zone2_limit": r.zone2_limit,
                "zone2_calls": r.zone2_calls,
                "reset_at": r.reset_at.isoformat() if r.reset_at else None,
                "updated_at": r.updated_at.isoformat(),
            }
            for r in records
        ]
    }
