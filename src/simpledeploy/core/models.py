"""Core response models for SimpleDeploy."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ServiceStatus(str, Enum):
    """Agent status enum."""

    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


class StatusResponse(BaseModel):
    """Liveness report for the deploy endpoint."""

    status: ServiceStatus = Field(ServiceStatus.STOPPED)
    version: str = Field(..., description="Agent version")
    allowed: List[str] = Field(default_factory=list, description="Allowed deployment names")


class RuntimeInfo(BaseModel):
    """Runtime information."""

    version: str = Field(..., description="Agent version")
    start_time: datetime = Field(..., description="Agent start time")
    queue_depth: int = Field(0, description="Jobs waiting to run")
    jobs_tracked: int = Field(0, description="Jobs queued, running or recently completed")
    running_job: Optional[str] = Field(None, description="Id of the job currently running")
    status: str = Field("healthy", description="Agent status")
