"""
Build job repository for database operations.
Implements the lease queue: enqueue, claim, complete, requeue and listing.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta
from uuid import UUID

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.config import get_settings
from buildqueue.constants import BuildJobStatus, TERMINAL_JOB_STATUSES
from buildqueue.db.lease import new_lock_token, stale_before
from buildqueue.db.models import BuildJob, utcnow
from buildqueue.db.transitions import TransitionFrom, TransitionOutcome, transition_once
from buildqueue.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

# Losing the compare-and-set means another claimant advanced the queue;
# look at the next candidate a bounded number of times.
CLAIM_ROUNDS = 3

_lease_held = TransitionFrom(BuildJob, BuildJobStatus.RUNNING)


class BuildJobRepository:
    """
    Repository for build job database operations.

    Implements atomic operations for:
    - Lease acquisition with SELECT ... FOR UPDATE SKIP LOCKED plus a
      guarded UPDATE, so no two claimants lease the same job
    - Reclaiming running jobs whose lease outlived the TTL
    - Token-checked completion and requeue
    """

    def __init__(
        self,
        session: AsyncSession,
        max_attempts: int | None = None,
        lease_ttl: timedelta | None = None,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            max_attempts: Retry cap. Defaults to MAX_BUILD_ATTEMPTS.
            lease_ttl: Lease lifetime. Defaults to BUILD_JOB_LOCK_TTL_MS.
        """
        settings = get_settings()
        self._session = session
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.max_build_attempts
        )
        self.lease_ttl = lease_ttl if lease_ttl is not None else settings.build_job_lock_ttl

    async def enqueue(self, owner_id: UUID, app_id: UUID) -> BuildJob:
        """
        Add a build job to the queue.

        Entitlement and concurrency policy are the caller's concern.

        Args:
            owner_id: The user requesting the build.
            app_id: The app to build.

        Returns:
            The new job in QUEUED status.
        """
        now = utcnow()
        job = BuildJob(
            owner_id=owner_id,
            app_id=app_id,
            status=BuildJobStatus.QUEUED,
            attempts=0,
            lock_token=None,
            locked_at=None,
            error=None,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Enqueued build job",
            extra={"job_id": str(job.id), "app_id": str(app_id)},
        )
        return job

    async def get_job(self, job_id: UUID) -> BuildJob | None:
        """
        Get a job by ID, reloading it from the database.

        Args:
            job_id: The job UUID.

        Returns:
            The BuildJob or None if not found.
        """
        return await self._session.get(BuildJob, job_id, populate_existing=True)

    async def list_for_app(self, app_id: UUID) -> Sequence[BuildJob]:
        """
        List every build job of an app, newest first.

        Args:
            app_id: The app identifier.

        Returns:
            The app's jobs, including terminal and retry-exhausted ones.
        """
        stmt = (
            select(BuildJob)
            .where(BuildJob.app_id == app_id)
            .order_by(BuildJob.created_at.desc(), BuildJob.id.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    def _claimable(self, cutoff) -> ColumnElement[bool]:
        return and_(
            or_(
                BuildJob.status == BuildJobStatus.QUEUED,
                and_(
                    BuildJob.status == BuildJobStatus.RUNNING,
                    BuildJob.locked_at < cutoff,
                ),
            ),
            BuildJob.attempts < self.max_attempts,
        )

    async def claim_next(self, worker_id: str) -> BuildJob | None:
        """
        Lease the oldest eligible job to a worker.

        Eligible jobs are QUEUED ones and RUNNING ones whose lease is
        stale, in both cases with attempts below the cap. The candidate row
        is locked with FOR UPDATE SKIP LOCKED where the dialect supports it,
        and the UPDATE repeats the eligibility predicate, so a claimant that
        loses a race updates nothing instead of stealing a fresh lease.

        Args:
            worker_id: The worker identifier, used to namespace the token.

        Returns:
            The leased job carrying its new lock_token, or None.
        """
        for _ in range(CLAIM_ROUNDS):
            now = utcnow()
            cutoff = stale_before(self.lease_ttl, now)

            candidate_stmt = (
                select(BuildJob.id, BuildJob.status, BuildJob.lock_token)
                .where(self._claimable(cutoff))
                .order_by(BuildJob.created_at.asc(), BuildJob.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            candidate = (await self._session.execute(candidate_stmt)).first()
            if candidate is None:
                return None

            lock_token = new_lock_token(worker_id)
            stmt = (
                update(BuildJob)
                .where(BuildJob.id == candidate.id, self._claimable(cutoff))
                .values(
                    status=BuildJobStatus.RUNNING,
                    attempts=BuildJob.attempts + 1,
                    lock_token=lock_token,
                    locked_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount != 1:
                logger.debug(
                    "Lost claim race",
                    extra={"job_id": str(candidate.id), "worker_id": worker_id},
                )
                continue

            job = await self.get_job(candidate.id)
            if candidate.status == BuildJobStatus.RUNNING:
                get_metrics().record_lease_reclaimed()
                logger.warning(
                    "Reclaimed stale lease",
                    extra={
                        "job_id": str(job.id),
                        "worker_id": worker_id,
                        "previous_token": candidate.lock_token,
                        "attempts": job.attempts,
                    },
                )
            else:
                logger.info(
                    "Claimed build job",
                    extra={
                        "job_id": str(job.id),
                        "worker_id": worker_id,
                        "attempts": job.attempts,
                    },
                )
            return job

        return None

    async def complete(
        self,
        job_id: UUID,
        lock_token: str,
        status: BuildJobStatus,
        error: str | None = None,
    ) -> TransitionOutcome:
        """
        Record the terminal outcome of a leased job.

        Only the current lease holder can complete. A worker whose lease was
        reclaimed gets CONFLICT and leaves the newer holder's state intact.
        The token stays on the row for audit; it is inert once terminal.

        Args:
            job_id: The job UUID.
            lock_token: The token returned by claim_next.
            status: SUCCEEDED or FAILED.
            error: Failure description, stored as given.

        Returns:
            The transition outcome.

        Raises:
            ValueError: If status is not terminal.
        """
        if status not in TERMINAL_JOB_STATUSES:
            raise ValueError(f"complete() requires a terminal status, got {status!r}")

        outcome = await _lease_held(
            self._session,
            job_id,
            {"status": status, "error": error},
            BuildJob.lock_token == lock_token,
        )

        if outcome.applied:
            logger.info(
                "Completed build job",
                extra={"job_id": str(job_id), "status": str(status)},
            )
        else:
            logger.warning(
                "Ignored completion without current lease",
                extra={"job_id": str(job_id), "outcome": str(outcome)},
            )
        return outcome

    async def requeue(self, job_id: UUID, lock_token: str) -> TransitionOutcome:
        """
        Return a leased job to the queue immediately.

        attempts is preserved, so explicit requeues spend the retry budget
        just like lease expiry does.

        Args:
            job_id: The job UUID.
            lock_token: The token returned by claim_next.

        Returns:
            The transition outcome.
        """
        outcome = await _lease_held(
            self._session,
            job_id,
            {
                "status": BuildJobStatus.QUEUED,
                "lock_token": None,
                "locked_at": None,
                "error": None,
            },
            BuildJob.lock_token == lock_token,
        )

        if outcome.applied:
            logger.info("Requeued build job", extra={"job_id": str(job_id)})
        else:
            logger.warning(
                "Ignored requeue without current lease",
                extra={"job_id": str(job_id), "outcome": str(outcome)},
            )
        return outcome

    async def extend_lease(self, job_id: UUID, lock_token: str) -> TransitionOutcome:
        """
        Refresh locked_at so a long build is not reclaimed (heartbeat).

        Args:
            job_id: The job UUID.
            lock_token: The token returned by claim_next.

        Returns:
            The transition outcome.
        """
        return await _lease_held(
            self._session,
            job_id,
            {"locked_at": utcnow()},
            BuildJob.lock_token == lock_token,
        )

    async def reset_exhausted(self, job_id: UUID) -> TransitionOutcome:
        """
        Operator retry of a job whose retry budget is spent.

        Resets attempts and returns the job to the queue. Terminal jobs, jobs
        with budget left and running jobs whose lease is still live are not
        touched, so a worker finishing its last attempt keeps its token.

        Args:
            job_id: The job UUID.

        Returns:
            The transition outcome.
        """
        outcome = await transition_once(
            self._session,
            BuildJob,
            job_id,
            guard=[
                or_(
                    BuildJob.status == BuildJobStatus.QUEUED,
                    and_(
                        BuildJob.status == BuildJobStatus.RUNNING,
                        BuildJob.locked_at < stale_before(self.lease_ttl),
                    ),
                ),
                BuildJob.attempts >= self.max_attempts,
            ],
            values={
                "status": BuildJobStatus.QUEUED,
                "attempts": 0,
                "lock_token": None,
                "locked_at": None,
                "error": None,
            },
        )

        if outcome.applied:
            logger.info("Reset exhausted build job", extra={"job_id": str(job_id)})
        return outcome

    async def list_exhausted(self, limit: int = 100) -> Sequence[BuildJob]:
        """
        List non-terminal jobs that can no longer be claimed.

        Args:
            limit: Maximum number of jobs to return.

        Returns:
            Oldest exhausted jobs first.
        """
        stmt = (
            select(BuildJob)
            .where(
                BuildJob.status.in_([BuildJobStatus.QUEUED, BuildJobStatus.RUNNING]),
                BuildJob.attempts >= self.max_attempts,
            )
            .order_by(BuildJob.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_exhausted(self) -> int:
        """Count non-terminal jobs that can no longer be claimed."""
        stmt = (
            select(func.count())
            .select_from(BuildJob)
            .where(
                BuildJob.status.in_([BuildJobStatus.QUEUED, BuildJobStatus.RUNNING]),
                BuildJob.attempts >= self.max_attempts,
            )
        )
        return (await self._session.scalar(stmt)) or 0

    async def get_job_stats(self, app_id: UUID | None = None) -> dict[str, int]:
        """
        Get job counts by status.

        Args:
            app_id: Optional app filter.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(BuildJob.status, func.count()).group_by(BuildJob.status)
        if app_id is not None:
            stmt = stmt.where(BuildJob.app_id == app_id)

        result = await self._session.execute(stmt)
        return {str(status): count for status, count in result.all()}
