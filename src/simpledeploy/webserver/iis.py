"""IIS control through appcmd.exe.

appcmd is used instead of the IIS PowerShell module because it is present
on every IIS version.
"""

from __future__ import annotations

import os
import subprocess
import time
import xml.etree.ElementTree as ET
from pathlib import PureWindowsPath
from typing import List, Optional, Tuple

import structlog

from simpledeploy.webserver.base import ServerWebsite, WebserverControl

logger = structlog.get_logger()

_STOPPED_MARKERS = ("successfully stopped", "already stopped")
_STARTED_MARKERS = ("successfully started", "already started")


class IISWebserverControl(WebserverControl):
    """Manage IIS sites and their application pools."""

    name = "iis"

    def __init__(self, appcmd_path: Optional[str] = None, command_timeout: float = 60.0):
        if appcmd_path is None:
            system_root = os.environ.get("SystemRoot", r"C:\Windows")
            appcmd_path = str(PureWindowsPath(system_root) / "System32" / "inetsrv" / "appcmd.exe")
        self.appcmd_path = appcmd_path
        self.command_timeout = command_timeout

    def _execute(self, *arguments: str) -> Tuple[str, str]:
        """Run appcmd and return (stdout, stderr); failures yield empty output."""
        try:
            result = subprocess.run(
                [self.appcmd_path, *arguments],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                timeout=self.command_timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("appcmd failed", arguments=list(arguments), error=str(exc))
            return "", str(exc)
        return result.stdout or "", result.stderr or ""

    def list_websites(self) -> List[ServerWebsite]:
        sites_output, _ = self._execute("list", "sites", "/xml")
        vdir_output, _ = self._execute("list", "vdir", "/xml")
        return self.parse_websites(sites_output, vdir_output)

    @staticmethod
    def parse_websites(sites_xml: str, vdir_xml: str) -> List[ServerWebsite]:
        """Combine appcmd site and virtual directory listings."""
        try:
            sites_doc = ET.fromstring(sites_xml)
            vdir_doc = ET.fromstring(vdir_xml) if vdir_xml.strip() else None
        except ET.ParseError as exc:
            logger.error("Unable to parse appcmd output", error=str(exc))
            return []

        # appcmd appends '/' to the application name of a site root
        root_vdirs = {}
        if vdir_doc is not None:
            for vdir in vdir_doc.iter("VDIR"):
                app_name = vdir.get("APP.NAME", "")
                if app_name.endswith("/") and app_name not in root_vdirs:
                    root_vdirs[app_name] = vdir

        websites: List[ServerWebsite] = []
        for site in sites_doc.iter("SITE"):
            name = site.get("SITE.NAME", "")
            vdir = root_vdirs.get(f"{name}/")
            try:
                site_id = int(site.get("SITE.ID", "-1"))
            except ValueError:
                site_id = -1
            websites.append(
                ServerWebsite(
                    id=site_id,
                    name=name,
                    state=site.get("state", ""),
                    bindings=site.get("bindings", ""),
                    physical_path=vdir.get("physicalPath", "") if vdir is not None else "",
                    path=vdir.get("path", "") if vdir is not None else "",
                )
            )
        return websites

    def get_website(self, website: str) -> Optional[ServerWebsite]:
        lowered = website.lower()
        for site in self.list_websites():
            if site.name.lower() == lowered or lowered in site.bindings.lower():
                return site
        return None

    def stop(self, website: str) -> bool:
        site = self.get_website(website)
        if site is None:
            return False
        output, _ = self._execute("stop", "site", f"/site.name:{site.name}")
        if not any(marker in output for marker in _STOPPED_MARKERS):
            return False
        output, _ = self._execute("stop", "apppool", f"/apppool.name:{site.name}")
        return any(marker in output for marker in _STOPPED_MARKERS)

    def start(self, website: str) -> bool:
        site = self.get_website(website)
        if site is None:
            return False
        output, _ = self._execute("start", "apppool", f"/apppool.name:{site.name}")
        if not any(marker in output for marker in _STARTED_MARKERS):
            return False
        output, _ = self._execute("start", "site", f"/site.name:{site.name}")
        return any(marker in output for marker in _STARTED_MARKERS)

    def restart(self, website: str) -> bool:
        stopped = self.stop(website)
        time.sleep(0.5)
        started = self.start(website)
        return stopped and started
