"""
Artifact retention.

Every successful build leaves a file under <artifacts_dir>/<app_id>; without
pruning a frequently rebuilt app grows without bound.
"""

import logging
import time
from pathlib import Path

from buildqueue.constants import ARTIFACT_SUFFIXES

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def prune_artifacts(
    app_dir: Path,
    keep: int,
    retention_days: int,
    now: float | None = None,
) -> list[Path]:
    """
    Delete old build artifacts of one app.

    Artifacts are ranked newest first by modification time. Anything past
    the newest `keep`, or older than `retention_days`, is deleted. The newest
    artifact is always kept since it is the one the app currently serves.

    Args:
        app_dir: Per-app artifact directory.
        keep: Number of artifacts to keep.
        retention_days: Maximum age in days; 0 or less disables the age limit.
        now: Reference time as a Unix timestamp.

    Returns:
        The deleted paths.
    """
    if not app_dir.is_dir():
        return []

    now = time.time() if now is None else now
    cutoff = now - retention_days * SECONDS_PER_DAY if retention_days > 0 else None

    ranked = sorted(
        (
            (path.stat().st_mtime, path)
            for path in app_dir.iterdir()
            if path.is_file() and path.suffix in ARTIFACT_SUFFIXES
        ),
        reverse=True,
    )

    removed: list[Path] = []
    for index, (mtime, path) in enumerate(ranked):
        if index == 0:
            continue
        if index >= keep or (cutoff is not None and mtime < cutoff):
            path.unlink(missing_ok=True)
            removed.append(path)

    if removed:
        logger.info(
            "Pruned old artifacts",
            extra={
                "app_dir": str(app_dir),
                "removed": len(removed),
                "kept": len(ranked) - len(removed),
            },
        )
    return removed
