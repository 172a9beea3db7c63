"""
Build job routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.api.auth import AuthenticatedUser, CurrentOperator, CurrentUser
from buildqueue.constants import API_V1_PREFIX, SPAN_ENQUEUE_JOB, AppStatus
from buildqueue.db import get_async_session
from buildqueue.db.apps import AppBuildPatch, AppRepository
from buildqueue.db.models import App, BuildJob
from buildqueue.db.repository import BuildJobRepository
from buildqueue.db.transitions import TransitionOutcome
from buildqueue.observability.metrics import get_metrics
from buildqueue.observability.tracing import create_span
from buildqueue.types.api import (
    BuildJobListResponse,
    BuildJobResponse,
    EnqueueBuildResponse,
    RetryBuildResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_V1_PREFIX, tags=["Builds"])


def _job_to_response(job: BuildJob, max_attempts: int) -> BuildJobResponse:
    """Convert a BuildJob model to a BuildJobResponse."""
    response = BuildJobResponse.model_validate(job)
    response.exhausted = job.is_exhausted(max_attempts)
    return response


async def _get_owned_app(session: AsyncSession, app_id: UUID, user: AuthenticatedUser) -> App:
    """
    Load an app the caller may build.

    Raises:
        HTTPException: 404 if the app does not exist, 403 if owned by someone else.
    """
    app = await AppRepository(session).get_app(app_id)
    if app is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="App not found",
        )
    if app.owner_id != user.owner_id and not user.is_operator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )
    return app


@router.post(
    "/apps/{app_id}/builds",
    response_model=EnqueueBuildResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request a build",
    description="Queue a build of the app and mark the app as processing.",
)
async def enqueue_build(
    app_id: UUID,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> EnqueueBuildResponse:
    """
    Queue a build for an app.

    Args:
        app_id: The app to build.
        current_user: Authenticated user context.
        session: Database session.

    Returns:
        EnqueueBuildResponse with the queued job.

    Raises:
        HTTPException: If the app is not found or not owned by the caller.
    """
    app = await _get_owned_app(session, app_id, current_user)

    with create_span(SPAN_ENQUEUE_JOB, app_id=app.id):
        job = await BuildJobRepository(session).enqueue(owner_id=app.owner_id, app_id=app.id)
        await AppRepository(session).update_build_state(
            app.id,
            AppBuildPatch(status=AppStatus.PROCESSING, build_error=None),
        )
        await session.commit()

    get_metrics().record_job_enqueued()

    return EnqueueBuildResponse(
        id=job.id,
        app_id=job.app_id,
        status=job.status,
        created_at=job.created_at,
    )


@router.get(
    "/apps/{app_id}/builds",
    response_model=BuildJobListResponse,
    summary="List builds",
    description="List every build job of an app, newest first.",
)
async def list_builds(
    app_id: UUID,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> BuildJobListResponse:
    """
    List an app's build jobs, including retry-exhausted ones.

    Args:
        app_id: The app identifier.
        current_user: Authenticated user context.
        session: Database session.

    Returns:
        BuildJobListResponse, newest first.
    """
    await _get_owned_app(session, app_id, current_user)

    repo = BuildJobRepository(session)
    jobs = await repo.list_for_app(app_id)

    return BuildJobListResponse(
        jobs=[_job_to_response(job, repo.max_attempts) for job in jobs],
        total=len(jobs),
    )


@router.get(
    "/build-jobs/stats",
    summary="Get build job statistics",
    description="Job counts by status and the number of retry-exhausted jobs.",
)
async def get_build_stats(
    current_operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """
    Get build job statistics.

    Args:
        current_operator: Authenticated operator context.
        session: Database session.

    Returns:
        Dictionary with counts by status and the exhausted count.
    """
    repo = BuildJobRepository(session)
    return {
        "stats": await repo.get_job_stats(),
        "exhausted": await repo.count_exhausted(),
    }


@router.get(
    "/build-jobs/{job_id}",
    response_model=BuildJobResponse,
    summary="Get build job details",
)
async def get_build_job(
    job_id: UUID,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> BuildJobResponse:
    """
    Get a build job by ID.

    Raises:
        HTTPException: If the job is not found or not owned by the caller.
    """
    repo = BuildJobRepository(session)
    job = await repo.get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Build job not found",
        )

    if job.owner_id != current_user.owner_id and not current_user.is_operator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )

    return _job_to_response(job, repo.max_attempts)


@router.post(
    "/build-jobs/{job_id}/retry",
    response_model=RetryBuildResponse,
    summary="Retry an exhausted build job",
    description="Reset the attempts of a job that spent its retry budget and queue it again.",
)
async def retry_build_job(
    job_id: UUID,
    current_operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> RetryBuildResponse:
    """
    Operator retry of a retry-exhausted build job.

    Args:
        job_id: The job UUID.
        current_operator: Authenticated operator context.
        session: Database session.

    Returns:
        RetryBuildResponse with the requeued job.

    Raises:
        HTTPException: 404 if unknown, 409 if the job is terminal or still has budget.
    """
    repo = BuildJobRepository(session)
    outcome = await repo.reset_exhausted(job_id)

    if outcome == TransitionOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Build job not found",
        )
    if outcome == TransitionOutcome.CONFLICT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Build job is not retry-exhausted",
        )

    job = await repo.get_job(job_id)
    await AppRepository(session).update_build_state(
        job.app_id,
        AppBuildPatch(status=AppStatus.PROCESSING, build_error=None),
    )
    await session.commit()

    logger.info(
        "Exhausted build job retried",
        extra={"job_id": str(job_id), "operator": str(current_operator.owner_id)},
    )

    return RetryBuildResponse(id=job.id, status=job.status, attempts=job.attempts)
