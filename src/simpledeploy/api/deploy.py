"""Deploy API: job submission, status and webserver lookups."""

from __future__ import annotations

import asyncio
from typing import List, Optional

import structlog
from fastapi import APIRouter, File, Form, Header, Request, UploadFile

from simpledeploy import __version__
from simpledeploy.api.auth import Authenticator
from simpledeploy.core.config import Settings
from simpledeploy.core.exceptions import (
    DeploymentNotAllowedError,
    DeploymentTooLargeError,
    JobNotFoundError,
    QueueClosedError,
)
from simpledeploy.core.models import ServiceStatus, StatusResponse
from simpledeploy.deploy.models import (
    Artifact,
    DeploymentResponse,
    Job,
    JobStatusResponse,
    is_valid_deployment_name,
)
from simpledeploy.deploy.queue import DeploymentQueue
from simpledeploy.utils.disk import display_file_size
from simpledeploy.webserver.base import NullWebserverControl, ServerWebsite, WebserverControl


router = APIRouter()
logger = structlog.get_logger()


_deployment_queue: DeploymentQueue | None = None


def init_deploy_queue(queue: DeploymentQueue) -> DeploymentQueue:
    global _deployment_queue
    _deployment_queue = queue
    return _deployment_queue


def get_deploy_queue() -> DeploymentQueue:
    if _deployment_queue is None:
        raise QueueClosedError("Deployment queue not initialized")
    return _deployment_queue


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _authenticate(
    request: Request,
    username: Optional[str],
    password: Optional[str],
    token: Optional[str],
) -> None:
    authenticator = getattr(request.app.state, "authenticator", None)
    if authenticator is None:
        authenticator = Authenticator.from_settings(_settings(request))
    authenticator.require(username, password, token)


@router.get("/deploy", response_model=StatusResponse)
async def deploy_status(request: Request) -> StatusResponse:
    settings = _settings(request)
    return StatusResponse(
        status=ServiceStatus.RUNNING,
        version=__version__,
        allowed=settings.deployment_names.allow,
    )


@router.post("/deploy", response_model=DeploymentResponse)
async def deploy_endpoint(
    request: Request,
    deployment_name: Optional[str] = Form(None, alias="DeploymentName"),
    website: Optional[str] = Form(None, alias="Website"),
    domain: Optional[str] = Form(None, alias="Domain"),
    deployment_script: Optional[str] = Form(None, alias="DeploymentScript"),
    auto_copy: bool = Form(False, alias="AutoCopy"),
    auto_extract: bool = Form(False, alias="AutoExtract"),
    interactive: bool = Form(False, alias="Interactive"),
    iis: bool = Form(False, alias="IIS"),
    interactive_timeout: float = Form(300.0, alias="InteractiveTimeout"),
    artifacts: Optional[List[UploadFile]] = File(None, alias="Artifacts"),
    x_username: Optional[str] = Header(default=None, alias="X-Username"),
    x_password: Optional[str] = Header(default=None, alias="X-Password"),
    x_token: Optional[str] = Header(default=None, alias="X-Token"),
) -> DeploymentResponse:
    settings = _settings(request)
    client = request.client.host if request.client else None
    logger.info("Deployment request received", client=client)

    _authenticate(request, x_username, x_password, x_token)

    name = (deployment_name or website or "").strip()
    if not is_valid_deployment_name(name):
        raise DeploymentNotAllowedError(f"Invalid deployment name '{name}'.", code="invalid_name")
    if not settings.deployment_names.is_allowed(name):
        logger.error("Deployment name not configured for deployment", deployment_name=name)
        raise DeploymentNotAllowedError(f"Deployment {name} not configured for deployment.", code="not_allowed")

    received: List[Artifact] = []
    total = 0
    too_large = DeploymentTooLargeError(
        f"Deployment exceeds the maximum size of {display_file_size(settings.max_deployment_size)}.",
        code="too_large",
    )
    for upload in artifacts or []:
        # Spooled uploads report their size before being read.
        if upload.size is not None and total + upload.size > settings.max_deployment_size:
            await upload.close()
            raise too_large
        data = await upload.read()
        await upload.close()
        total += len(data)
        if total > settings.max_deployment_size:
            raise too_large
        received.append(Artifact(filename=upload.filename or "", data=data))

    job = Job(
        deployment_name=name,
        domain=(domain or "").strip() or None,
        deployment_script=deployment_script or None,
        artifacts=received,
        auto_copy=auto_copy,
        auto_extract=auto_extract,
        interactive=interactive,
        is_managed_website=iis,
        interactive_timeout=interactive_timeout,
    )
    queue = get_deploy_queue()
    queue.enqueue(job)
    logger.info(
        "Job created",
        job_id=job.job_id,
        deployment_name=name,
        artifacts=len(received),
        total_size=display_file_size(total),
        interactive=interactive,
    )

    if not interactive:
        return DeploymentResponse(isSuccess=True, message=f"Job '{job.job_id}' queued.", jobId=job.job_id)

    timeout = interactive_timeout if interactive_timeout > 0 else None
    loop = asyncio.get_running_loop()
    completed, log = await loop.run_in_executor(None, queue.wait_for_completion, job.job_id, timeout)
    record = queue.get(job.job_id)
    if not completed:
        return DeploymentResponse(
            isSuccess=True,
            message=f"Job '{job.job_id}' still running after {interactive_timeout} seconds.",
            log=log,
            jobId=job.job_id,
        )

    result = record.result if record else None
    success = bool(result and result.success)
    message = f"Job '{job.job_id}' completed." if success else f"Job '{job.job_id}' failed. {result.message if result else ''}"
    return DeploymentResponse(isSuccess=success, message=message.strip(), log=log, jobId=job.job_id)


@router.get("/deploy/jobs/{job_id}", response_model=JobStatusResponse)
async def job_status(
    job_id: str,
    request: Request,
    x_username: Optional[str] = Header(default=None, alias="X-Username"),
    x_password: Optional[str] = Header(default=None, alias="X-Password"),
    x_token: Optional[str] = Header(default=None, alias="X-Token"),
) -> JobStatusResponse:
    _authenticate(request, x_username, x_password, x_token)
    record = get_deploy_queue().get(job_id)
    if record is None:
        raise JobNotFoundError(f"Job '{job_id}' not found", code="job_not_found")
    return JobStatusResponse.from_record(record)


@router.get("/deploy/websites", response_model=List[ServerWebsite])
def list_websites(
    request: Request,
    x_username: Optional[str] = Header(default=None, alias="X-Username"),
    x_password: Optional[str] = Header(default=None, alias="X-Password"),
    x_token: Optional[str] = Header(default=None, alias="X-Token"),
) -> List[ServerWebsite]:
    # Sync handler, appcmd calls block
    _authenticate(request, x_username, x_password, x_token)
    webserver: WebserverControl = getattr(request.app.state, "webserver", None) or NullWebserverControl()
    return webserver.list_websites()
