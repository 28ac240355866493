"""数据模型."""

from feedmirror.models.article import Article
from feedmirror.models.edit_queue import EditAction, EditQueueEntry, EditStatus
from feedmirror.models.feed import Feed
from feedmirror.models.metadata import SyncMetadata
from feedmirror.models.sync import SyncRun, SyncRunStatus
from feedmirror.models.tag import ArticleTag, Tag
from feedmirror.models.usage import UsageRecord

__all__ = [
    "Article",
    "ArticleTag",
    "EditAction",
    "EditQueueEntry",
    "EditStatus",
    "Feed",
    "SyncMetadata",
    "SyncRun",
    "SyncRunStatus",
    "Tag",
    "UsageRecord",
]
