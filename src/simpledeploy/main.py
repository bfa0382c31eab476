"""Main entry point for the SimpleDeploy agent."""

import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from simpledeploy import __version__
from simpledeploy.api.auth import Authenticator
from simpledeploy.api.deploy import init_deploy_queue, router as deploy_router
from simpledeploy.api.health import health_check as runtime_health_check
from simpledeploy.api.health import root_router
from simpledeploy.api.health import router as health_router
from simpledeploy.api.middleware import (
    setup_error_handling,
    setup_ip_restriction_middleware,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from simpledeploy.core.config import Settings, load_settings
from simpledeploy.deploy.job_log import DeploymentLogManager
from simpledeploy.deploy.pipeline import DeploymentPipeline
from simpledeploy.deploy.queue import DeploymentQueue
from simpledeploy.utils.logging import setup_logging
from simpledeploy.webserver.factory import create_webserver_control

logger = structlog.get_logger()

CONFIG_ENV_VAR = "SIMPLEDEPLOY_CONFIG"
SHUTDOWN_TIMEOUT = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    logger.info("Starting SimpleDeploy agent", version=__version__)

    app.state.log_manager = DeploymentLogManager(settings.log_path)
    app.state.webserver = create_webserver_control(settings.webserver)
    app.state.authenticator = Authenticator.from_settings(settings)

    pipeline = DeploymentPipeline(settings, app.state.webserver, log_manager=app.state.log_manager)
    queue = DeploymentQueue(
        pipeline,
        poll_interval=settings.queue_poll_interval,
        reaper_interval=settings.reaper_interval,
        retention_seconds=settings.job_retention_seconds,
    )
    app.state.deployment_queue = init_deploy_queue(queue)
    queue.start()

    logger.info(
        "SimpleDeploy agent listening",
        scheme="https" if settings.use_https else "http",
        host=settings.host,
        port=settings.port,
        authentication=settings.authentication_mode,
        working_folder=settings.working_folder,
        jobs_path=str(settings.jobs_path),
        backups_path=str(settings.backups_path),
        log_path=str(settings.log_path),
        allowed=settings.deployment_names.allow,
        ip_whitelist=settings.ip_whitelist_list,
    )
    if not settings.deployment_names.allow:
        logger.warning("No deployment names are allowed, all deployments will be rejected")

    yield

    logger.info("Shutting down SimpleDeploy agent")
    try:
        queue.shutdown(timeout=SHUTDOWN_TIMEOUT)
    finally:
        app.state.log_manager.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = load_settings(os.environ.get(CONFIG_ENV_VAR))

    setup_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="SimpleDeploy",
        version=__version__,
        description="Deployment agent for website artifacts",
        lifespan=lifespan,
    )

    app.state.settings = settings

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)
    # Added last so it runs first
    setup_ip_restriction_middleware(app)

    app.include_router(root_router, tags=["info"])
    app.include_router(health_router, prefix="/runtime", tags=["runtime"])
    app.include_router(deploy_router, tags=["deploy"])

    @app.get("/health")
    async def top_level_health():
        return await runtime_health_check()

    if settings.metrics_enabled:
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    return app


def run(config_file: Optional[str] = None) -> None:
    """Run the application."""
    settings = load_settings(config_file or os.environ.get(CONFIG_ENV_VAR))

    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        ssl_certfile=settings.ssl_certfile if settings.use_https else None,
        ssl_keyfile=settings.ssl_keyfile if settings.use_https else None,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
