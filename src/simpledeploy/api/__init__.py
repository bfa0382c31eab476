"""API module for SimpleDeploy."""

from .health import root_router
from .health import router as health_router
from .deploy import router as deploy_router

__all__ = [
    "health_router",
    "root_router",
    "deploy_router",
]
