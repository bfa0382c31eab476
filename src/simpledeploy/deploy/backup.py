"""Backups of deployment destinations and their rotation."""

from __future__ import annotations

import os
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

BACKUP_SUFFIX = ".zip"
_PARTIAL_SUFFIX = ".partial"


@dataclass
class RotationResult:
    kept: List[Path] = field(default_factory=list)
    deleted: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)


def backup_filename(deployment_name: str, job_id: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{deployment_name}_{stamp}_{job_id}{BACKUP_SUFFIX}"


def create_backup(
    source_dir: Path,
    backup_dir: Path,
    deployment_name: str,
    job_id: str,
    now: Optional[datetime] = None,
) -> Path:
    """Compress ``source_dir`` into a dated, job-tagged zip under ``backup_dir``.

    The archive is written under a temporary name and renamed once complete,
    so a failed backup never shows up in the rotation set.
    """
    if not source_dir.is_dir():
        raise FileNotFoundError(f"Backup source '{source_dir}' is not a directory")
    backup_dir.mkdir(parents=True, exist_ok=True)
    archive = backup_dir / backup_filename(deployment_name, job_id, now)
    partial = archive.with_name(archive.name + _PARTIAL_SUFFIX)
    try:
        with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for root, dirs, files in os.walk(source_dir):
                dirs.sort()
                root_path = Path(root)
                relative_root = root_path.relative_to(source_dir)
                if not files and not dirs and relative_root != Path("."):
                    zf.writestr(relative_root.as_posix() + "/", b"")
                for name in sorted(files):
                    file_path = root_path / name
                    zf.write(file_path, (relative_root / name).as_posix())
        os.replace(partial, archive)
    except BaseException:
        try:
            partial.unlink()
        except OSError:
            pass
        raise
    return archive


def list_backups(backup_dir: Path) -> List[Path]:
    """Backups newest first; modification time stands in for creation time."""
    if not backup_dir.is_dir():
        return []
    archives = [p for p in backup_dir.iterdir() if p.is_file() and p.suffix.lower() == BACKUP_SUFFIX]
    return sorted(archives, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)


def rotate_backups(backup_dir: Path, max_files: int) -> RotationResult:
    """Delete the oldest backups so that at most ``max_files`` remain."""
    result = RotationResult()
    archives = list_backups(backup_dir)
    # the newest backup always survives
    keep = max(max_files, 1)
    result.kept = archives[:keep]
    for archive in archives[keep:]:
        try:
            archive.unlink()
            result.deleted.append(archive)
        except OSError as exc:
            result.failed.append((archive, str(exc)))
    return result
