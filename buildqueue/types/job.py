"""
Build-related type definitions for internal use.
"""

from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel

from buildqueue.db.lease import Lease


class BuildResult(BaseModel):
    """
    Result of a build.
    Returned by build handlers after producing an artifact.
    """

    artifact_path: str
    artifact_size: int
    artifact_mime: str
    logs: str | None = None
    duration_ms: float | None = None


@dataclass
class BuildContext:
    """
    Context passed to build handlers during execution.
    Contains the job, the app configuration and where to put the artifact.
    """

    job_id: UUID
    app_id: UUID
    owner_id: UUID
    attempt: int
    max_attempts: int
    lease: Lease
    package_name: str
    version_code: int
    app_name: str
    platform: str
    artifacts_dir: Path

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def output_dir(self) -> Path:
        """Per-app directory the artifact is written to."""
        return self.artifacts_dir / str(self.app_id)
