"""Health check and informational endpoints."""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from simpledeploy import __version__
from simpledeploy.core.exceptions import QueueClosedError
from simpledeploy.core.models import RuntimeInfo
from simpledeploy.api.deploy import get_deploy_queue

router = APIRouter()
root_router = APIRouter()

# Track start time
START_TIME = datetime.now(timezone.utc)

INDEX_PAGE = """<!DOCTYPE html>
<html>
<head><title>SimpleDeploy</title></head>
<body>
<h1>SimpleDeploy</h1>
<p>Deployment agent version {version} is running.</p>
<p>Submit deployments with a POST to <code>/deploy</code>.</p>
</body>
</html>
"""


@router.get("/health", response_model=Dict[str, str])
async def health_check() -> Dict[str, str]:
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/info", response_model=RuntimeInfo)
async def runtime_info() -> RuntimeInfo:
    """Get detailed runtime information."""
    try:
        queue = get_deploy_queue()
    except QueueClosedError:
        return RuntimeInfo(version=__version__, start_time=START_TIME, status="starting")

    return RuntimeInfo(
        version=__version__,
        start_time=START_TIME,
        queue_depth=queue.queue_depth(),
        jobs_tracked=len(queue.list_jobs()),
        running_job=queue.running_job_id,
        status="healthy" if queue.is_running else "stopped",
    )


@root_router.get("/", response_class=HTMLResponse, include_in_schema=False)
@root_router.get("/index.html", response_class=HTMLResponse, include_in_schema=False)
async def index() -> str:
    return INDEX_PAGE.format(version=__version__)
