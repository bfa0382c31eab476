"""Models for jobs flowing through the deployment queue."""

from __future__ import annotations

import re
import secrets
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from simpledeploy.core.exceptions import InvalidJobTransitionError
from simpledeploy.deploy.job_log import JobLog


JOB_ID_LENGTH = 6
JOB_ID_CHARS = string.ascii_uppercase + string.ascii_lowercase + string.digits


_DEPLOYMENT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def new_job_id() -> str:
    """Generate a short random job id."""
    return "".join(secrets.choice(JOB_ID_CHARS) for _ in range(JOB_ID_LENGTH))


def is_valid_deployment_name(name: str) -> bool:
    """Deployment names become folder names, so only allow safe characters."""
    return bool(name) and len(name) <= 255 and _DEPLOYMENT_NAME_RE.match(name) is not None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"


class Artifact(BaseModel):
    filename: str
    data: bytes = b""
    created_at: datetime = Field(default_factory=utcnow)

    def release(self) -> None:
        """Drop the in-memory payload once it has been written to disk."""
        self.data = b""


class Job(BaseModel):
    """One deployment request with its artifacts and flags."""

    job_id: str = Field(default_factory=new_job_id)
    deployment_name: str
    domain: Optional[str] = None
    deployment_script: Optional[str] = None
    artifacts: List[Artifact] = Field(default_factory=list)
    auto_copy: bool = False
    auto_extract: bool = False
    interactive: bool = False
    is_managed_website: bool = False
    interactive_timeout: float = 300.0
    created_at: datetime = Field(default_factory=utcnow)


class PipelineResult(BaseModel):
    job_id: str
    success: bool
    stage: str
    message: str = ""
    exit_code: Optional[int] = None
    elapsed_seconds: float = 0.0


@dataclass
class JobRecord:
    """Bookkeeping for a tracked job.

    Only the queue worker moves a record forward; the state machine is
    queued -> running -> completed and never goes back.
    """

    job: Job
    work: Callable[[], Optional[PipelineResult]]
    log: JobLog
    state: JobState = JobState.QUEUED
    queued_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[PipelineResult] = None
    done: threading.Event = field(default_factory=threading.Event)

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def mark_running(self) -> None:
        if self.state != JobState.QUEUED:
            raise InvalidJobTransitionError(f"Job '{self.job_id}' cannot start from state {self.state.value}")
        self.state = JobState.RUNNING
        self.started_at = utcnow()

    def mark_completed(self, result: Optional[PipelineResult] = None) -> None:
        if self.state != JobState.RUNNING:
            raise InvalidJobTransitionError(f"Job '{self.job_id}' cannot complete from state {self.state.value}")
        self.state = JobState.COMPLETED
        self.completed_at = utcnow()
        self.result = result
        self.done.set()


class DeploymentResponse(BaseModel):
    isSuccess: bool = False
    message: str = ""
    log: str = ""
    jobId: Optional[str] = None


class JobStatusResponse(BaseModel):
    jobId: str
    deploymentName: str
    state: JobState
    queuedAt: datetime
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    success: Optional[bool] = None
    exitCode: Optional[int] = None
    log: str = ""

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        return cls(
            jobId=record.job_id,
            deploymentName=record.job.deployment_name,
            state=record.state,
            queuedAt=record.queued_at,
            startedAt=record.started_at,
            completedAt=record.completed_at,
            success=record.result.success if record.result else None,
            exitCode=record.result.exit_code if record.result else None,
            log=record.log.text(),
        )
