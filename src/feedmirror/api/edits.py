"""编辑回推队列 API."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from feedmirror.core.services import SyncServices, get_services

router = APIRouter(prefix="/api/edits", tags=["edits"])


@router.post("/flush")
async def flush_edits(
    force: bool = Query(True, description="忽略最小批量立即回推"),
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """立即回推本地编辑."""
    result = await services.edit_queue.flush(force=force)
    return result.to_dict()


@router.get("/stats")
async def get_stats(
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """队列统计."""
    return await services.edit_queue.stats()


@router.get("/failed")
async def list_failed(
    limit: int = Query(50, ge=1, le=500, description="数量"),
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """回推失败（常驻错误）的编辑."""
    entries = await services.edit_queue.list_failed(limit)
    return {
        "items": [
            {
                "id": e.id,
                "article_id": e.article_id,
                "action": e.action,
                "tag": e.tag,
                "attempts": e.attempts,
                "last_error": e.last_error,
                "created_at": e.created_at.isoformat(),
                "last_attempt_at": e.last_attempt_at.isoformat() if e.last_attempt_at else None,
            }
            for e in entries
        ]
    }


@router.post("/retry")
async def retry_failed(
    services: SyncServices = Depends(get_services),
) -> dict[str, int]:
    """重置常驻错误为待回推."""
    count = await services.edit_queue.retry_failed()
    return {"reset_count": count}


@router.delete("/failed")
async def abandon_failed(
    services: SyncServices = Depends(get_services),
) -> dict[str, int]:
    """放弃所有常驻错误."""
    count = await services.edit_queue.abandon_failed()
    return {"abandoned_count": count}
