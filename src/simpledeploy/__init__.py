"""SimpleDeploy - deployment agent for website artifacts."""

__version__ = "0.1.0"
__author__ = "SimpleDeploy Team"

from simpledeploy.core.config import Settings, load_settings

__all__ = ["Settings", "load_settings", "__version__"]
