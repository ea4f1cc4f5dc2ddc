"""Common utility helpers (JSON, filesystem, identifiers)."""

from __future__ import annotations

import json
import os
import shutil
import time
from pathlib import Path
from typing import Any

from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "static-iiif/1.0 (+https://iiif.io)",
    "Accept": "*/*",
}


def sanitize_filename(label: str) -> str:
    """Return a filesystem-safe identifier derived from `label`."""
    safe = "".join([c for c in str(label) if c.isalnum() or c in (" ", ".", "_", "-")])
    return safe.strip().replace(" ", "_")


def join_uri(base: str, *parts: str) -> str:
    """Join URI/path segments with single slashes, keeping the scheme intact."""
    out = str(base).rstrip("/")
    for part in parts:
        piece = str(part).strip("/")
        if piece:
            out = f"{out}/{piece}"
    return out


def to_json(data: Any) -> str:
    """Serialize a IIIF document the way it is written to disk."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def save_json(path, data):
    """Saves data to a local JSON file."""
    p = Path(path)
    ensure_dir(p.parent)
    with p.open("w", encoding="utf-8") as f:
        f.write(to_json(data))


def ensure_dir(path: str | os.PathLike | None):
    """Ensures a directory exists."""
    if not path:
        return
    Path(path).mkdir(parents=True, exist_ok=True)


def clean_dir(path: str | os.PathLike):
    """Safely removes a directory."""
    p = Path(path)
    if p.exists():
        shutil.rmtree(p)


def cleanup_old_files(path: str | os.PathLike, *, older_than_days: int = 7) -> dict:
    """Delete files/dirs under `path` older than `older_than_days`.

    Returns stats like {"deleted": X, "errors": Y, "skipped": Z}.
    """
    stats = {"deleted": 0, "errors": 0, "skipped": 0}
    base_dir = Path(path)

    if not base_dir.is_dir():
        return stats

    cutoff = time.time() - (older_than_days * 24 * 60 * 60)

    for entry in base_dir.iterdir():
        try:
            if entry.stat().st_mtime >= cutoff:
                stats["skipped"] += 1
                continue

            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink(missing_ok=True)
            stats["deleted"] += 1
        except OSError:
            logger.debug("Failed to remove stale scratch entry %s", entry, exc_info=True)
            stats["errors"] += 1

    return stats
