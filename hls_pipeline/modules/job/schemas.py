"""Pydantic schemas for job and asset status reporting."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from hls_pipeline.modules.asset.models import ProcessingStatus
from hls_pipeline.modules.job.models import JobStatus


class JobInfo(BaseModel):
    """Job information."""
    id: uuid.UUID
    asset_id: int
    source_key: str
    status: JobStatus
    attempts: int
    max_attempts: int
    cancel_requested: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AssetStatusInfo(BaseModel):
    """Processing status of an asset with its latest job."""
    id: int
    asset_name: str
    processing_status: ProcessingStatus
    manifest_url: Optional[str] = None
    updated_at: Optional[datetime] = None
    latest_job: Optional[JobInfo] = Field(None, description="Most recent transcode job")

    class Config:
        from_attributes = True


class EnqueueResponse(BaseModel):
    """Response after enqueueing a job."""
    job_id: uuid.UUID
    asset_id: int
    status: JobStatus
    message: str
