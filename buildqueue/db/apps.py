"""
App repository.
The queue only ever writes an app's build fields; everything else belongs to
the app-editing surface.
"""

import logging
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.constants import AppStatus
from buildqueue.db.models import App, utcnow

logger = logging.getLogger(__name__)


class AppBuildPatch(BaseModel):
    """
    Partial update of an app's build state.

    Only fields explicitly set are written, so an explicit None clears a
    column while an omitted field leaves it alone.
    """

    model_config = ConfigDict(extra="forbid")

    status: AppStatus | None = None
    package_name: str | None = None
    version_code: int | None = None
    artifact_path: str | None = None
    artifact_mime: str | None = None
    artifact_size: int | None = None
    build_logs: str | None = None
    build_error: str | None = None
    last_build_at: datetime | None = None

    def to_values(self) -> dict:
        return self.model_dump(exclude_unset=True)


class AppRepository:
    """Repository for app records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_app(
        self,
        owner_id: UUID,
        name: str,
        platform: str = "android",
    ) -> App:
        """
        Create a draft app.

        Args:
            owner_id: The owning user.
            name: Display name, also the source of the package name.
            platform: Target platform.

        Returns:
            The new App.
        """
        app = App(owner_id=owner_id, name=name, platform=platform, status=AppStatus.DRAFT)
        self._session.add(app)
        await self._session.flush()
        return app

    async def get_app(self, app_id: UUID) -> App | None:
        """Get an app by ID, reloading it from the database."""
        return await self._session.get(App, app_id, populate_existing=True)

    async def update_build_state(self, app_id: UUID, patch: AppBuildPatch) -> App | None:
        """
        Apply a partial build-state update to an app.

        Callers are expected to patch only after the job transition that
        justifies it actually applied.

        Args:
            app_id: The app identifier.
            patch: Fields to write.

        Returns:
            The updated App, or None if it does not exist.
        """
        values = patch.to_values()
        values["updated_at"] = utcnow()

        stmt = (
            update(App)
            .where(App.id == app_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            logger.warning("Build state update for unknown app", extra={"app_id": str(app_id)})
            return None

        logger.debug(
            "Updated app build state",
            extra={"app_id": str(app_id), "fields": sorted(values)},
        )
        return await self.get_app(app_id)
