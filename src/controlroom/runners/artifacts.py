"""Artifact capture from a run's scratch directory."""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List

import aiofiles

from controlroom.core.models import Artifact

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"

MEDIA_TYPES: Dict[str, str] = {
    ".txt": "text/plain",
    ".log": "text/plain",
    ".json": "application/json",
    ".xml": "application/xml",
    ".html": "text/html",
    ".htm": "text/html",
    ".csv": "text/csv",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
}

_CHUNK_SIZE = 64 * 1024


def media_type_for(path: Path) -> str:
    return MEDIA_TYPES.get(path.suffix.lower(), DEFAULT_MEDIA_TYPE)


async def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(_CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


async def collect_artifacts(run_id: str, run_dir: Path) -> List[Artifact]:
    """
    Scan a run directory and describe every regular file in it.

    Files are visited in sorted path order so repeated scans of the same
    directory yield the same sequence.

    Args:
        run_id: Run owning the directory
        run_dir: Scratch directory the script wrote into

    Returns:
        One Artifact per file, with digest and media type
    """
    if not run_dir.is_dir():
        return []

    artifacts: List[Artifact] = []
    for path in sorted(p for p in run_dir.rglob("*") if p.is_file()):
        try:
            digest = await sha256_file(path)
            size = path.stat().st_size
        except OSError as exc:
            logger.warning("Skipping unreadable artifact %s: %s", path, exc)
            continue
        artifacts.append(
            Artifact(
                artifact_id=uuid.uuid4().hex,
                run_id=run_id,
                media_type=media_type_for(path),
                locator=str(path),
                sha256_hex=digest,
                size_bytes=size,
                created_at=datetime.now(UTC),
            )
        )
    return artifacts


__all__ = ["DEFAULT_MEDIA_TYPE", "MEDIA_TYPES", "collect_artifacts", "media_type_for", "sha256_file"]
