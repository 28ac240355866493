"""文章本地操作 API - 修改本地状态并加入回推队列."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from feedmirror.core.errors import StoreUnavailableError
from feedmirror.core.services import SyncServices, get_services
from feedmirror.models.article import Article
from feedmirror.models.database import get_session
from feedmirror.models.edit_queue import EditAction, EditQueueEntry
from feedmirror.models.tag import ArticleTag, Tag

router = APIRouter(prefix="/api/articles", tags=["articles"])


class TagRequest(BaseModel):
    """添加标签请求."""

    tag: str = Field(min_length=1, max_length=200)


async def _apply(
    services: SyncServices, article_id: str, action: str, tag: str | None = None
) -> dict[str, Any]:
    try:
        article = await services.edit_queue.record_local_edit(article_id, action, tag)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.user_message) from e

    if article is None:
        raise HTTPException(status_code=404, detail="文章不存在")
    return _article_state(article, action)


def _article_state(article: Article, action: str) -> dict[str, Any]:
    return {
        "id": article.id,
        "action": action,
        "is_read": article.is_read,
        "is_starred": article.is_starred,
        "queued": True,
    }


@router.post("/{article_id:path}/read")
async def mark_read(
    article_id: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """标记为已读."""
    return await _apply(services, article_id, EditAction.READ)


@router.post("/{article_id:path}/unread")
async def mark_unread(
    article_id: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """标记为未读."""
    return await _apply(services, article_id, EditAction.UNREAD)


@router.post("/{article_id:path}/star")
async def star(
    article_id: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """收藏."""
    return await _apply(services, article_id, EditAction.STAR)


@router.post("/{article_id:path}/unstar")
async def unstar(
    article_id: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """取消收藏."""
    return await _apply(services, article_id, EditAction.UNSTAR)


@router.post("/{article_id:path}/tags")
async def add_tag(
    article_id: str,
    request: TagRequest,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """添加标签."""
    result = await _apply(services, article_id, EditAction.ADD_TAG, request.tag.strip())
    result["tag"] = request.tag.strip()
    return result


@router.delete("/{article_id:path}/tags/{tag}")
async def remove_tag(
    article_id: str,
    tag: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """移除标签."""
    result = await _apply(services, article_id, EditAction.REMOVE_TAG, tag)
    result["tag"] = tag
    return result


@router.get("/detail")
async def get_article(
    article_id: str = Query(..., description="文章 ID"),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """获取文章本地状态（article_id 作为 query 参数）."""
    article = await session.get(Article, article_id)
    if not article:
        raise HTTPException(status_code=404, detail="文章不存在")

    tag_stmt = (
        select(Tag.name)
        .join(ArticleTag, ArticleTag.tag_id == Tag.id)
        .where(ArticleTag.article_id == article_id)
        .order_by(Tag.name)
    )
    tags = (await session.execute(tag_stmt)).scalars().all()

    edit_stmt = select(EditQueueEntry).where(EditQueueEntry.article_id == article_id)
    edits = (await session.execute(edit_stmt)).scalars().all()

    return {
        "id": article.id,
        "feed_id": article.feed_id,
        "title": article.title,
        "author": article.author,
        "url": article.url,
        "content": article.full_content or article.content_text or article.content,
        "content_html": article.content,
        "ai_summary": article.ai_summary,
        "published_at": article.published_at.isoformat()
        if article.published_at
        else None,
        "is_read": article.is_read,
        "is_starred": article.is_starred,
        "tags": list(tags),
        # 尚未回推到远端的本地编辑
        "pending_edits": [
            {"action": e.action, "tag": e.tag, "status": e.status} for e in edits
        ],
        "last_local_update": article.last_local_update.isoformat()
        if article.last_local_update
        else None,
        "last_sync_update": article.last_sync_update.isoformat()
        if article.last_sync_update
        else None,
    }
