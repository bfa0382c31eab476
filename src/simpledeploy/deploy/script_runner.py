"""Runs deployment scripts as child processes."""

from __future__ import annotations

import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from simpledeploy import __version__
from simpledeploy.deploy.job_log import JobLog

logger = structlog.get_logger()

POWERSHELL_EXTENSIONS = {".ps1", ".psm1", ".psd1"}
BATCH_EXTENSIONS = {".bat", ".cmd"}


@dataclass
class ScriptContext:
    job_id: str
    deployment_name: str
    domain: str
    job_path: Path
    destination_path: str


@dataclass
class ScriptResult:
    exit_code: Optional[int]
    timed_out: bool = False
    duration_seconds: float = 0.0


class ScriptRunner:
    """Runs a script to completion, streaming its output into a job log."""

    def __init__(
        self,
        powershell_executable: str = "powershell.exe",
        timeout: Optional[float] = None,
        kill_grace_seconds: float = 10.0,
    ):
        """Initialize script runner.

        Args:
            powershell_executable: Interpreter for PowerShell scripts
            timeout: Seconds before the script is terminated, None waits forever
            kill_grace_seconds: Seconds between terminate and kill on timeout
        """
        self.powershell_executable = powershell_executable
        self.timeout = timeout
        self.kill_grace_seconds = kill_grace_seconds

    def build_command(self, script_path: Path) -> List[str]:
        extension = script_path.suffix.lower()
        if extension in POWERSHELL_EXTENSIONS:
            return [
                self.powershell_executable,
                "-NoProfile",
                "-NonInteractive",
                "-ExecutionPolicy",
                "Bypass",
                "-File",
                str(script_path),
            ]
        if extension in BATCH_EXTENSIONS:
            return ["cmd.exe", "/c", str(script_path)]
        if extension == ".sh":
            return ["bash", str(script_path)]
        if extension == ".py":
            return [sys.executable, str(script_path)]
        return [str(script_path)]

    def build_environment(self, script_path: Path, context: ScriptContext) -> Dict[str, str]:
        env = {
            **os.environ,
            "Version": __version__,
            "JobId": context.job_id,
            "JobPath": str(script_path.parent),
            "DestinationPath": context.destination_path,
            "ScriptFilename": script_path.name,
            "DeploymentName": context.deployment_name,
            "Domain": context.domain,
        }
        revision = source_revision(context.job_path)
        if revision:
            env["SourceRevision"] = revision
        return env

    def run(self, script_path: Path, context: ScriptContext, log: JobLog) -> ScriptResult:
        """Run the script and block until it exits.

        Launch failures are logged and reported with exit code None; they are
        never raised.
        """
        cmd = self.build_command(script_path)
        env = self.build_environment(script_path, context)
        log.info(f"Running deployment script '{script_path}'...")
        logger.info("Running deployment script", job_id=context.job_id, command=" ".join(cmd))

        start = time.monotonic()
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(script_path.parent),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,  # Line buffered
            )
        except OSError as exc:
            log.error(f"Error running script '{script_path}': {exc}")
            logger.error("Failed to launch deployment script", job_id=context.job_id, error=str(exc))
            return ScriptResult(exit_code=None, duration_seconds=time.monotonic() - start)

        readers = [
            threading.Thread(
                target=self._forward_output, args=(process.stdout, log, False), name=f"script-out-{context.job_id}", daemon=True
            ),
            threading.Thread(
                target=self._forward_output, args=(process.stderr, log, True), name=f"script-err-{context.job_id}", daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            log.error(f"Deployment script exceeded {self.timeout} seconds, terminating")
            self._stop(process)

        for reader in readers:
            # a killed script can leave grandchildren holding the pipes open
            reader.join(timeout=self.kill_grace_seconds if timed_out else None)

        duration = time.monotonic() - start
        exit_code = None if timed_out else process.returncode
        log.info(f"Deployment script completed with exit code ({exit_code})")
        logger.info(
            "Deployment script completed",
            job_id=context.job_id,
            exit_code=exit_code,
            timed_out=timed_out,
            duration_seconds=round(duration, 3),
        )
        return ScriptResult(exit_code=exit_code, timed_out=timed_out, duration_seconds=duration)

    @staticmethod
    def _forward_output(stream, log: JobLog, is_error: bool) -> None:
        """Forward script output to the job log line by line."""
        try:
            for line in iter(stream.readline, ""):
                line = line.rstrip("\r\n")
                if line:
                    log.script_output(line, is_error=is_error)
        except (OSError, ValueError) as exc:
            log.warning(f"Stopped reading script output: {exc}")
        finally:
            stream.close()

    def _stop(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


def source_revision(folder: Path) -> Optional[str]:
    """Commit id of a git checkout at ``folder``, if there is one."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=str(folder),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
