"""
Worker process for executing build jobs.

The worker leases one job at a time, checks the owner's subscription, runs
the build handler for the app's platform, and reports the outcome back to
the queue and the owning app.
"""

import asyncio
import logging
import os
import signal
import time
from contextlib import suppress
from datetime import timedelta
from pathlib import Path
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.config import get_settings
from buildqueue.constants import (
    APP_NOT_FOUND_ERROR,
    IOS_NOT_CONFIGURED_APP_ERROR,
    IOS_NOT_CONFIGURED_ERROR,
    IOS_PLAN_REQUIRED_ERROR,
    MAX_ATTEMPTS_ERROR,
    PLAN_INELIGIBLE_ERROR,
    SPAN_CLAIM_JOB,
    SPAN_COMPLETE_JOB,
    SPAN_EXECUTE_BUILD,
    BuildJobStatus,
    Platform,
)
from buildqueue.db import close_db, get_session_context, init_db
from buildqueue.db.apps import AppRepository
from buildqueue.db.lease import Lease
from buildqueue.db.models import BuildJob, User
from buildqueue.db.repository import BuildJobRepository
from buildqueue.db.transitions import TransitionOutcome
from buildqueue.entitlements import build_eligibility
from buildqueue.observability.logging import (
    bind_job_context,
    clear_context,
    setup_logging,
    unbind_job_context,
)
from buildqueue.observability.metrics import get_metrics
from buildqueue.observability.tracing import create_span, setup_tracing
from buildqueue.types.job import BuildContext, BuildResult
from buildqueue.worker.artifacts import prune_artifacts
from buildqueue.worker.handlers import BuildError, BuildHandler, get_handler, safe_package_name
from buildqueue.worker.sync import BuildStateSync

logger = logging.getLogger(__name__)


class Worker:
    """
    Build worker that polls for and executes jobs.

    Features:
    - Atomic lease acquisition through BuildJobRepository.claim_next
    - Subscription and platform checks before any build runs
    - Heartbeat extending the lease while a build runs
    - Bounded retry with linear backoff, fail-stop at the attempt cap
    - App build state written only after the job transition applied
    - Pruning of old artifacts after a successful build
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        worker_id: str | None = None,
        handler_name: str | None = None,
        ios_handler_name: str | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
        build_timeout: float | None = None,
        retry_backoff: float | None = None,
        max_attempts: int | None = None,
        lease_ttl: timedelta | None = None,
        artifacts_dir: str | Path | None = None,
        artifact_max_per_app: int | None = None,
        artifact_retention_days: int | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            handler_name: Registered handler for Android builds.
            ios_handler_name: Registered handler for iOS builds, if any.
            poll_interval: Seconds between polls when the queue is empty.
            heartbeat_interval: Seconds between lease extensions.
            build_timeout: Seconds a single build may run.
            retry_backoff: Base of the linear delay before a requeue.
            max_attempts: Retry cap.
            lease_ttl: Lease lifetime.
            artifacts_dir: Root directory for build artifacts.
            artifact_max_per_app: Artifacts kept per app after a build.
            artifact_retention_days: Age limit for kept artifacts.

        Raises:
            ValueError: If a handler name is not registered.
        """
        settings = get_settings()

        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.handler_name = handler_name or settings.build_handler
        self.ios_handler_name = ios_handler_name or settings.ios_build_handler
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds
        self.build_timeout = build_timeout or settings.build_timeout_seconds
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.build_retry_backoff_seconds
        )
        self.max_attempts = max_attempts or settings.max_build_attempts
        self.lease_ttl = lease_ttl or settings.build_job_lock_ttl
        self.artifacts_dir = Path(artifacts_dir or settings.artifacts_dir)
        self.artifact_max_per_app = (
            artifact_max_per_app
            if artifact_max_per_app is not None
            else settings.artifact_max_per_app
        )
        self.artifact_retention_days = (
            artifact_retention_days
            if artifact_retention_days is not None
            else settings.artifact_retention_days
        )

        self._handler = self._resolve_handler(self.handler_name)
        self._ios_handler = (
            self._resolve_handler(self.ios_handler_name) if self.ios_handler_name else None
        )

        self._running = False
        self._metrics = get_metrics()

    @staticmethod
    def _resolve_handler(name: str) -> BuildHandler:
        handler = get_handler(name)
        if handler is None:
            raise ValueError(f"No build handler registered as {name!r}")
        return handler

    def _handler_for(self, platform: str) -> BuildHandler | None:
        """
        Pick the handler for an app's platform.

        Dual-platform apps publish their Android build here.
        """
        if platform == Platform.IOS:
            return self._ios_handler
        return self._handler

    def _jobs(self, session: AsyncSession) -> BuildJobRepository:
        return BuildJobRepository(session, self.max_attempts, self.lease_ttl)

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "handler": self.handler_name,
                "ios_handler": self.ios_handler_name,
            },
        )

        self._running = True

        while self._running:
            try:
                processed = await self.process_next()

                if not processed:
                    await asyncio.sleep(self.poll_interval)

            except Exception:
                logger.exception("Error in worker loop", extra={"worker_id": self.worker_id})
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully after the current build."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def drain(self, limit: int = 100) -> int:
        """
        Process jobs until the queue has nothing claimable.

        Args:
            limit: Upper bound on jobs processed.

        Returns:
            Number of jobs processed.
        """
        processed = 0
        while processed < limit and await self.process_next():
            processed += 1
        return processed

    async def process_next(self) -> bool:
        """
        Claim and process a single job.

        Returns:
            True if a job was claimed.
        """
        with create_span(SPAN_CLAIM_JOB, worker_id=self.worker_id):
            async with get_session_context() as session:
                job = await self._jobs(session).claim_next(self.worker_id)

        if job is None:
            return False

        self._metrics.record_lease_acquired(self.worker_id)
        lease = Lease(
            job_id=job.id,
            lock_token=job.lock_token,
            locked_at=job.locked_at,
            ttl=self.lease_ttl,
        )

        bind_job_context(job.id, job.app_id, job.attempts)
        try:
            await self._process(job, lease)
        finally:
            unbind_job_context()
        return True

    async def _process(self, job: BuildJob, lease: Lease) -> None:
        """
        Run one leased job end to end.

        Args:
            job: The claimed job.
            lease: The lease returned by the claim.
        """
        async with get_session_context() as session:
            app = await AppRepository(session).get_app(job.app_id)

            if app is None:
                logger.warning("App not found for build job", extra={"job_id": str(job.id)})
                outcome = await self._jobs(session).complete(
                    job.id, lease.lock_token, BuildJobStatus.FAILED, APP_NOT_FOUND_ERROR
                )
                self._record_outcome("complete", outcome, BuildJobStatus.FAILED, 0.0)
                return

            eligibility = build_eligibility(await session.get(User, app.owner_id))
            if not eligibility.can_build:
                await self._reject(session, job, lease, PLAN_INELIGIBLE_ERROR)
                return

            if app.platform in (Platform.IOS, Platform.BOTH) and not eligibility.can_build_ios:
                await self._reject(session, job, lease, IOS_PLAN_REQUIRED_ERROR)
                return

            handler = self._handler_for(app.platform)
            if handler is None:
                await self._reject(
                    session, job, lease, IOS_NOT_CONFIGURED_ERROR, IOS_NOT_CONFIGURED_APP_ERROR
                )
                return

            package_name = app.package_name or safe_package_name(app.id)
            version_code = (app.version_code or 0) + 1
            await BuildStateSync(session).started(app.id, package_name, version_code)

            context = BuildContext(
                job_id=job.id,
                app_id=app.id,
                owner_id=job.owner_id,
                attempt=job.attempts,
                max_attempts=self.max_attempts,
                lease=lease,
                package_name=package_name,
                version_code=version_code,
                app_name=app.name,
                platform=app.platform,
                artifacts_dir=self.artifacts_dir,
            )

        logger.info(
            "Executing build",
            extra={
                "job_id": str(job.id),
                "platform": context.platform,
                "package_name": package_name,
                "version_code": version_code,
                "attempt": job.attempts,
            },
        )

        started = time.monotonic()
        result, error, logs = await self._run_build(handler, context)
        duration = time.monotonic() - started

        with create_span(SPAN_COMPLETE_JOB, job_id=job.id, success=result is not None):
            if result is not None:
                await self._finish_success(context, result, duration)
            else:
                await self._finish_failure(context, error, logs, duration)

    async def _reject(
        self,
        session: AsyncSession,
        job: BuildJob,
        lease: Lease,
        reason: str,
        app_error: str | None = None,
    ) -> None:
        """Fail a job that may not be built at all; no retry is scheduled."""
        logger.warning(
            "Build rejected",
            extra={"job_id": str(job.id), "app_id": str(job.app_id), "reason": reason},
        )
        outcome = await self._jobs(session).complete(
            job.id, lease.lock_token, BuildJobStatus.FAILED, reason
        )
        await BuildStateSync(session).failed(outcome, job.app_id, app_error or reason, None)
        self._record_outcome("complete", outcome, BuildJobStatus.FAILED, 0.0)

    async def _run_build(
        self, handler: BuildHandler, context: BuildContext
    ) -> tuple[BuildResult | None, str | None, str | None]:
        """
        Run the handler under the build timeout while heartbeating the lease.

        Returns:
            Tuple of (result, error, logs); result is None on failure.
        """
        heartbeat = asyncio.create_task(self._heartbeat_loop(context.lease))
        try:
            with create_span(
                SPAN_EXECUTE_BUILD,
                job_id=context.job_id,
                app_id=context.app_id,
                attempt=context.attempt,
            ):
                result = await asyncio.wait_for(handler(context), timeout=self.build_timeout)
            return result, None, result.logs
        except BuildError as e:
            return None, str(e), e.logs
        except asyncio.TimeoutError:
            return None, f"Build timed out after {self.build_timeout:.0f}s", None
        except Exception as e:
            logger.exception("Build handler raised", extra={"job_id": str(context.job_id)})
            return None, f"Handler exception: {e}", None
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

    async def _finish_success(
        self,
        context: BuildContext,
        result: BuildResult,
        duration: float,
    ) -> None:
        async with get_session_context() as session:
            outcome = await self._jobs(session).complete(
                context.job_id, context.lease.lock_token, BuildJobStatus.SUCCEEDED
            )
            await BuildStateSync(session).succeeded(
                outcome, context.app_id, result, context.package_name, context.version_code
            )

        self._record_outcome("complete", outcome, BuildJobStatus.SUCCEEDED, duration)
        if not outcome.applied:
            return

        logger.info(
            "Build succeeded",
            extra={
                "job_id": str(context.job_id),
                "artifact": result.artifact_path,
                "duration": f"{duration:.2f}s",
            },
        )
        await self._prune_artifacts(context.app_id, context.output_dir)

    async def _prune_artifacts(self, app_id: UUID, app_dir: Path) -> None:
        """Best-effort cleanup; the build already succeeded."""
        try:
            await asyncio.to_thread(
                prune_artifacts,
                app_dir,
                self.artifact_max_per_app,
                self.artifact_retention_days,
            )
        except OSError:
            logger.exception("Artifact cleanup failed", extra={"app_id": str(app_id)})

    async def _finish_failure(
        self,
        context: BuildContext,
        error: str,
        logs: str | None,
        duration: float,
    ) -> None:
        logger.warning(
            "Build failed",
            extra={
                "job_id": str(context.job_id),
                "error": error,
                "attempt": context.attempt,
                "max_attempts": context.max_attempts,
            },
        )

        if context.is_last_attempt:
            async with get_session_context() as session:
                outcome = await self._jobs(session).complete(
                    context.job_id,
                    context.lease.lock_token,
                    BuildJobStatus.FAILED,
                    f"{MAX_ATTEMPTS_ERROR}: {error}",
                )
                await BuildStateSync(session).failed(outcome, context.app_id, error, logs)
            self._record_outcome("complete", outcome, BuildJobStatus.FAILED, duration)
            return

        delay = self.retry_backoff * max(1, context.attempt)
        if delay > 0:
            await asyncio.sleep(delay)

        async with get_session_context() as session:
            outcome = await self._jobs(session).requeue(context.job_id, context.lease.lock_token)
            await BuildStateSync(session).retrying(outcome, context.app_id, logs)

        self._record_outcome("requeue", outcome, None, duration)
        if outcome.applied:
            logger.info(
                "Build retry scheduled",
                extra={"job_id": str(context.job_id), "next_attempt": context.attempt + 1},
            )

    def _record_outcome(
        self,
        operation: str,
        outcome: TransitionOutcome,
        status: BuildJobStatus | None,
        duration: float,
    ) -> None:
        if not outcome.applied:
            self._metrics.record_lease_conflict(operation)
        elif status is not None:
            self._metrics.record_job_completed(str(status), duration)
        else:
            self._metrics.record_job_requeued()

    async def _heartbeat_loop(self, lease: Lease) -> None:
        """
        Periodically extend the lease of the running build.

        Stops once the lease is lost; the build itself is left to finish and
        its completion will be rejected.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with get_session_context() as session:
                    outcome = await self._jobs(session).extend_lease(
                        lease.job_id, lease.lock_token
                    )
            except Exception:
                logger.exception("Error in heartbeat loop", extra={"job_id": str(lease.job_id)})
                continue

            if not outcome.applied:
                self._metrics.record_lease_conflict("heartbeat")
                logger.warning(
                    "Lease lost while building",
                    extra={"job_id": str(lease.job_id), "outcome": str(outcome)},
                )
                return

            logger.debug("Extended lease", extra={"job_id": str(lease.job_id)})


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging(component="worker")
    setup_tracing()
    await init_db()

    worker = Worker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()
        clear_context()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
