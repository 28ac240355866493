"""同步元数据 key/value 存储."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from feedmirror.utils.clock import utc_now

LAST_SYNC_TIME = "last_sync_time"
LAST_INCREMENTAL_TIMESTAMP = "last_incremental_sync_timestamp"


class SyncMetadata(SQLModel, table=True):
    """同步元数据项."""

    __tablename__ = "sync_metadata"  # type: ignore[assignment]

    key: str = Field(primary_key=True, description="键")
    value: str = Field(description="值")
    updated_at: datetime = Field(default_factory=utc_now)
