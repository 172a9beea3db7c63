"""
App build-state synchronization.

The app record shows users what happened to their build. Every write here
follows a job transition, and is skipped when that transition did not
apply: a worker whose lease was reclaimed must not overwrite what the
current lease holder reports.
"""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.constants import BUILD_LOG_TAIL_CHARS, RETRYING_BUILD_ERROR, AppStatus
from buildqueue.db.apps import AppBuildPatch, AppRepository
from buildqueue.db.models import App, utcnow
from buildqueue.db.transitions import TransitionOutcome
from buildqueue.types.job import BuildResult

logger = logging.getLogger(__name__)


def tail_logs(logs: str | None) -> str | None:
    """Keep the last BUILD_LOG_TAIL_CHARS characters of a build log."""
    if logs is None:
        return None
    return logs[-BUILD_LOG_TAIL_CHARS:]


class BuildStateSync:
    """Mirrors build job outcomes onto the owning app."""

    def __init__(self, session: AsyncSession):
        self._apps = AppRepository(session)

    async def started(self, app_id: UUID, package_name: str, version_code: int) -> App | None:
        """Show the app as processing with the identity of the upcoming artifact."""
        return await self._apps.update_build_state(
            app_id,
            AppBuildPatch(
                status=AppStatus.PROCESSING,
                package_name=package_name,
                version_code=version_code,
                build_error=None,
                build_logs=None,
            ),
        )

    async def succeeded(
        self,
        outcome: TransitionOutcome,
        app_id: UUID,
        result: BuildResult,
        package_name: str,
        version_code: int,
    ) -> bool:
        """
        Publish the artifact after a successful completion.

        Returns:
            True if the app was updated.
        """
        if not self._should_write(outcome, app_id):
            return False

        await self._apps.update_build_state(
            app_id,
            AppBuildPatch(
                status=AppStatus.LIVE,
                artifact_path=result.artifact_path,
                artifact_mime=result.artifact_mime,
                artifact_size=result.artifact_size,
                build_error=None,
                build_logs=tail_logs(result.logs),
                last_build_at=utcnow(),
                package_name=package_name,
                version_code=version_code,
            ),
        )
        return True

    async def retrying(
        self,
        outcome: TransitionOutcome,
        app_id: UUID,
        logs: str | None,
    ) -> bool:
        """Keep the app processing while a failed build waits for its next attempt."""
        if not self._should_write(outcome, app_id):
            return False

        await self._apps.update_build_state(
            app_id,
            AppBuildPatch(
                status=AppStatus.PROCESSING,
                build_error=RETRYING_BUILD_ERROR,
                build_logs=tail_logs(logs),
                last_build_at=utcnow(),
            ),
        )
        return True

    async def failed(
        self,
        outcome: TransitionOutcome,
        app_id: UUID,
        error: str,
        logs: str | None,
    ) -> bool:
        """Show the final failure once the retry budget is spent."""
        if not self._should_write(outcome, app_id):
            return False

        await self._apps.update_build_state(
            app_id,
            AppBuildPatch(
                status=AppStatus.FAILED,
                build_error=error,
                build_logs=tail_logs(logs),
                last_build_at=utcnow(),
            ),
        )
        return True

    @staticmethod
    def _should_write(outcome: TransitionOutcome, app_id: UUID) -> bool:
        if outcome.applied:
            return True
        logger.info(
            "Skipped app update for superseded lease",
            extra={"app_id": str(app_id), "outcome": str(outcome)},
        )
        return False
