"""Webserver control adapters used to query, start and stop hosted sites."""

from .base import NullWebserverControl, ServerWebsite, WebserverControl
from .factory import create_webserver_control

__all__ = [
    "ServerWebsite",
    "WebserverControl",
    "NullWebserverControl",
    "create_webserver_control",
]
