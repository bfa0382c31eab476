"""Webserver control capability consumed by the deployment pipeline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field


class ServerWebsite(BaseModel):
    """A site hosted by the webserver."""

    id: int = Field(-1, description="Webserver site id")
    name: str = Field("", description="Site name")
    state: str = Field("", description="Site state as reported by the webserver")
    bindings: str = Field("", description="Raw binding list")
    physical_path: str = Field("", description="Physical path of the site root, may be empty")
    path: str = Field("", description="Virtual path of the site root")


class WebserverControl(ABC):
    """Query/start/stop capability for hosted sites.

    Implementations report failure through ``None`` or ``False`` and must not
    raise.
    """

    name = "abstract"

    @abstractmethod
    def get_website(self, website: str) -> Optional[ServerWebsite]:
        """Find a site by name or binding."""

    @abstractmethod
    def list_websites(self) -> List[ServerWebsite]:
        """List all sites."""

    @abstractmethod
    def stop(self, website: str) -> bool:
        """Stop a site."""

    @abstractmethod
    def start(self, website: str) -> bool:
        """Start a site."""

    def restart(self, website: str) -> bool:
        stopped = self.stop(website)
        started = self.start(website)
        return stopped and started


class NullWebserverControl(WebserverControl):
    """Used when no webserver is managed by this agent."""

    name = "none"

    def get_website(self, website: str) -> Optional[ServerWebsite]:
        return None

    def list_websites(self) -> List[ServerWebsite]:
        return []

    def stop(self, website: str) -> bool:
        return False

    def start(self, website: str) -> bool:
        return False
