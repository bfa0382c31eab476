"""Per-job log buffers and per-deployment log files."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from simpledeploy.utils.logging import deployment_file_handler

LOG_FILENAME = "deploy.log"
SCRIPT_TAG = "SCRIPT"


class JobLog:
    """Append-only log of a single job.

    Lines are kept in memory for interactive callers and mirrored to the
    deployment's log file when one is attached. Every line carries the job id
    and the stage that wrote it.
    """

    def __init__(self, job_id: str, file_logger: Optional[logging.Logger] = None):
        self.job_id = job_id
        self.stage = "queued"
        self._file_logger = file_logger
        self._lines: List[str] = []
        self._lock = threading.Lock()
        self.finished = False

    def _format(self, level: int, message: str) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        return f"{timestamp}|{logging.getLevelName(level)}|{self.job_id}|{self.stage}| {message}"

    def _mirror(self, level: int, message: str) -> None:
        if self._file_logger is not None:
            self._file_logger.log(level, "%s|%s| %s", self.job_id, self.stage, message)

    def _append(self, level: int, message: str) -> None:
        line = self._format(level, message)
        with self._lock:
            self._lines.append(line)
        self._mirror(level, message)

    def info(self, message: str) -> None:
        self._append(logging.INFO, message)

    def warning(self, message: str) -> None:
        self._append(logging.WARNING, message)

    def error(self, message: str) -> None:
        self._append(logging.ERROR, message)

    def script_output(self, line: str, is_error: bool = False) -> None:
        self._append(logging.ERROR if is_error else logging.INFO, f"{SCRIPT_TAG}| {line}")

    def finish(self, message: str) -> None:
        """Write the closing line of the job and mark the log finished."""
        line = self._format(logging.INFO, message)
        with self._lock:
            self._lines.append(line)
            self.finished = True
        self._mirror(logging.INFO, message)

    def warn_unless_finished(self, message: str) -> Optional[str]:
        """Append a warning and return the log text, unless the job already finished.

        Returns None when the closing line is already written.
        """
        line = self._format(logging.WARNING, message)
        with self._lock:
            if self.finished:
                return None
            self._lines.append(line)
            text = "\n".join(self._lines)
        self._mirror(logging.WARNING, message)
        return text

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class DeploymentLogManager:
    """Hands out one file logger per deployment name."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._loggers: Dict[str, logging.Logger] = {}
        self._lock = threading.Lock()

    def get_logger(self, deployment_name: str) -> logging.Logger:
        key = deployment_name.lower()
        with self._lock:
            existing = self._loggers.get(key)
            if existing is not None:
                return existing

            log_file = self.log_dir / deployment_name / LOG_FILENAME
            # Kept out of the logging registry so no two names share a logger.
            file_logger = logging.Logger(f"simpledeploy.deployments.{key}")
            file_logger.setLevel(logging.INFO)
            file_logger.propagate = False
            file_logger.handlers = [deployment_file_handler(log_file)]
            self._loggers[key] = file_logger
            return file_logger

    def close(self) -> None:
        with self._lock:
            for file_logger in self._loggers.values():
                for handler in file_logger.handlers:
                    handler.close()
                file_logger.handlers = []
            self._loggers.clear()
