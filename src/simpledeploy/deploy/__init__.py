"""
Deployment primitives

- DeploymentQueue: FIFO intake, the single worker and the job table
- DeploymentPipeline: the ordered stages run for one job
- Job/Artifact/JobRecord: what flows between intake and the worker
"""

from .models import Artifact, Job, JobRecord, JobState, PipelineResult
from .pipeline import DeploymentPipeline
from .queue import DeploymentQueue

__all__ = [
    "Artifact",
    "Job",
    "JobRecord",
    "JobState",
    "PipelineResult",
    "DeploymentPipeline",
    "DeploymentQueue",
]
