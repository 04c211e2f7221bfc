import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class ArchiveStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("disk", "path", name="uq_document_disk_path"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    disk: str = Field(default="s3", index=True)
    path: str
    original_name: str
    extension: Optional[str] = Field(default=None, nullable=True)
    size: int
    mime_type: str = Field(default="application/octet-stream")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class ArchiveJob(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    status: str = Field(default=ArchiveStatus.QUEUED, index=True)
    progress: int = Field(default=0)
    document_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    disk: str = Field(default="s3")
    archive_disk: Optional[str] = Field(default=None, nullable=True)
    result_path: Optional[str] = Field(default=None, nullable=True)
    result_filename: Optional[str] = Field(default=None, nullable=True)
    error: Optional[str] = Field(default=None, nullable=True)
    attempts: int = Field(default=0)
    started_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
