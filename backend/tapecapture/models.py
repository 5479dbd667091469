# backend/tapecapture/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite drops the offset on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CaptureJob(SQLModel):
    """In-memory capture job. Owned by the registry; callers get copies."""

    id: str
    collection_id: int
    collection_name: str
    status: JobStatus = JobStatus.STARTING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    progress: Optional[int] = None   # 0 - 100
    error: Optional[str] = None
    output_path: str


class JobLogEntry(SQLModel):
    """One line of process output or lifecycle note kept with a job."""

    time: datetime = Field(default_factory=utcnow)
    level: str = "info"   # info | error
    message: str


class DeviceListing(SQLModel):
    emulated: bool = False
    devices: List[str] = Field(default_factory=list)


class CaptureJobRecord(SQLModel, table=True):
    __tablename__ = "capture_jobs"

    id: str = Field(primary_key=True, nullable=False, max_length=255)
    collection_id: int = Field(nullable=False, index=True)
    collection_name: str = Field(nullable=False, max_length=255)
    status: str = Field(nullable=False, max_length=20)   # starting | running | completed | failed | cancelled
    start_time: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    end_time: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    progress: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None)
    output_path: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @classmethod
    def from_job(cls, job: CaptureJob) -> "CaptureJobRecord":
        return cls(
            id=job.id,
            collection_id=job.collection_id,
            collection_name=job.collection_name,
            status=job.status.value,
            start_time=as_utc(job.start_time),
            end_time=as_utc(job.end_time),
            progress=job.progress,
            error=job.error,
            output_path=job.output_path,
        )

    def to_job(self) -> CaptureJob:
        return CaptureJob(
            id=self.id,
            collection_id=self.collection_id,
            collection_name=self.collection_name,
            status=JobStatus(self.status),
            start_time=as_utc(self.start_time),
            end_time=as_utc(self.end_time),
            progress=self.progress,
            error=self.error,
            output_path=self.output_path or "",
        )
