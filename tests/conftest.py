"""
Pytest configuration and fixtures for SimpleDeploy tests.
"""

import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from simpledeploy.core.config import Settings
from simpledeploy.deploy.job_log import JobLog
from simpledeploy.deploy.models import Artifact, Job, PipelineResult
from simpledeploy.deploy.script_runner import ScriptResult
from simpledeploy.webserver.base import ServerWebsite, WebserverControl


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """
    Keep SIMPLEDEPLOY_* variables from the developer's shell out of the tests.
    """
    import os
    for key in list(os.environ):
        if key.upper().startswith("SIMPLEDEPLOY_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def working_folder(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def destination(tmp_path: Path) -> Path:
    path = tmp_path / "site"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(working_folder: Path):
    """Settings factory rooted in a temp working folder."""

    def _make(**overrides) -> Settings:
        values = dict(
            working_folder=str(working_folder),
            min_free_space=0,
            deployment_names={"allow": ["*"]},
            queue_poll_interval=0.05,
            reaper_interval=3600,
            log_format="console",
            cleanup_after_deploy=False,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


class FakeWebserver(WebserverControl):
    """Records start/stop calls and serves a fixed site list."""

    name = "fake"

    def __init__(self, websites: Optional[List[ServerWebsite]] = None, succeed: bool = True):
        self.websites = websites or []
        self.succeed = succeed
        self.calls: List[str] = []

    def get_website(self, website: str) -> Optional[ServerWebsite]:
        for site in self.websites:
            if site.name.lower() == website.lower():
                return site
        return None

    def list_websites(self) -> List[ServerWebsite]:
        return list(self.websites)

    def stop(self, website: str) -> bool:
        self.calls.append(f"stop:{website}")
        return self.succeed

    def start(self, website: str) -> bool:
        self.calls.append(f"start:{website}")
        return self.succeed


class FakeScriptRunner:
    """Stands in for ScriptRunner without launching a process."""

    def __init__(self, exit_code: Optional[int] = 0):
        self.exit_code = exit_code
        self.runs = []

    def run(self, script_path, context, log):
        self.runs.append((script_path, context))
        log.info(f"Running deployment script '{script_path}'...")
        return ScriptResult(exit_code=self.exit_code)


class RecordingPipeline:
    """Minimal pipeline for queue tests: records order and concurrency."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.order: List[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def create_job_log(self, job: Job) -> JobLog:
        return JobLog(job.job_id)

    def run(self, job: Job, log: JobLog) -> PipelineResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.order.append(job.job_id)
        try:
            log.info("==Deployment started==")
            if self.fail:
                raise RuntimeError("pipeline exploded")
            time.sleep(self.delay)
            log.finish("==Deployment complete in 0:00:00==")
            return PipelineResult(job_id=job.job_id, success=True, stage="finish")
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def fake_webserver() -> FakeWebserver:
    return FakeWebserver()


def make_job(name: str = "site", artifacts=None, **kwargs) -> Job:
    """Build a job from (filename, bytes) pairs."""
    return Job(
        deployment_name=name,
        artifacts=[Artifact(filename=filename, data=data) for filename, data in (artifacts or [])],
        **kwargs,
    )

