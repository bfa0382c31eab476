"""Disk space and file size helpers."""

import math
import shutil
from pathlib import Path
from typing import Union

import structlog

logger = structlog.get_logger()

_SUFFIXES = ["B", "KB", "MB", "GB", "TB", "PB", "EB"]


def display_file_size(length: int) -> str:
    """Format a byte count for humans, e.g. ``1.5MB``."""
    if length == 0:
        return "0" + _SUFFIXES[0]
    size = abs(length)
    place = min(int(math.floor(math.log(size, 1024))), len(_SUFFIXES) - 1)
    num = round(size / (1024 ** place), 1)
    sign = -1 if length < 0 else 1
    return f"{sign * num:g}{_SUFFIXES[place]}"


def available_space(path: Union[str, Path]) -> int:
    """Free bytes on the volume holding ``path``.

    The path does not need to exist yet; the nearest existing ancestor is
    measured. Returns 0 when the volume cannot be inspected.
    """
    candidate = Path(path).absolute()
    while not candidate.exists():
        if candidate.parent == candidate:
            break
        candidate = candidate.parent
    try:
        return shutil.disk_usage(candidate).free
    except OSError as exc:
        logger.warning("Unable to determine free space", path=str(candidate), error=str(exc))
        return 0
