"""Zip extraction for staged artifacts."""

from __future__ import annotations

import shutil
import zipfile
from pathlib import Path
from typing import List


class UnsafeArchiveError(ValueError):
    """Archive member would land outside the extraction folder."""


def find_zip_files(folder: Path) -> List[Path]:
    """All ``*.zip`` files below ``folder``, case-insensitive, in stable order."""
    return sorted(p for p in folder.rglob("*") if p.is_file() and p.suffix.lower() == ".zip")


def safe_extract_zip(zip_path: Path, dest_dir: Path) -> int:
    """Extract ``zip_path`` into ``dest_dir`` overwriting existing files.

    Raises UnsafeArchiveError on path traversal and zipfile.BadZipFile on a
    corrupt archive. Returns the number of files written.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    base = dest_dir.resolve()
    written = 0
    with zipfile.ZipFile(zip_path, "r") as zf:
        for member in zf.infolist():
            member_path = Path(member.filename.replace("\\", "/"))
            # Skip absolute paths and parent traversals
            if member_path.is_absolute() or ".." in member_path.parts:
                raise UnsafeArchiveError(f"Zip contains unsafe path '{member.filename}'")
            target = (base / member_path).resolve()
            if target != base and base not in target.parents:
                raise UnsafeArchiveError(f"Zip entry '{member.filename}' escapes the destination")
            if member.is_dir():
                target.mkdir(parents=True, exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(member, "r") as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                written += 1
    return written
