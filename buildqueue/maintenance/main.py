"""
Maintenance loop.

Runs periodically to:
- settle pending payments the provider captured although the callback
  never arrived (optional, needs provider API credentials)
- grant entitlements for completed payments whose grant never happened
  (e.g. the callback process died between settling and granting)
- report build jobs that exhausted their retry budget without a terminal
  outcome; those are left for an operator to retry
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import timedelta

from buildqueue.config import get_settings
from buildqueue.constants import PaymentStatus
from buildqueue.db import close_db, get_session_context, init_db
from buildqueue.db.models import utcnow
from buildqueue.db.payments import PaymentRepository
from buildqueue.db.repository import BuildJobRepository
from buildqueue.maintenance.provider import OrderLookup, build_order_lookup
from buildqueue.observability.logging import clear_context, setup_logging
from buildqueue.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

# More recoveries than this in one pass suggests callbacks are failing
RECONCILE_ANOMALY_THRESHOLD = 10


@dataclass
class MaintenanceReport:
    """What a single maintenance pass did."""

    payments_reconciled: int = 0
    reconciliation_errors: int = 0
    entitlements_repaired: int = 0
    entitlement_errors: int = 0
    exhausted_jobs: int = 0


class Maintenance:
    """
    Periodic repair and reporting pass.

    Stale leases need no sweeper: claim_next reclaims them directly.
    """

    def __init__(
        self,
        interval_seconds: int | None = None,
        enable_entitlement_repair: bool | None = None,
        batch_size: int | None = None,
        max_attempts: int | None = None,
        enable_payment_reconciliation: bool | None = None,
        order_lookup: OrderLookup | None = None,
        reconciliation_min_age: int | None = None,
        reconciliation_batch_size: int | None = None,
    ):
        """
        Initialize the maintenance loop.

        Args:
            interval_seconds: Seconds between passes.
            enable_entitlement_repair: Whether to repair missed grants.
            batch_size: Payments examined per pass.
            max_attempts: Retry cap used to recognise exhausted jobs.
            enable_payment_reconciliation: Whether to settle captured orders
                whose callback was lost.
            order_lookup: Provider lookup; built from settings when omitted.
            reconciliation_min_age: Seconds a payment stays pending before
                the provider is asked about it.
            reconciliation_batch_size: Payments looked up per pass.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.maintenance_interval_seconds
        self.enable_entitlement_repair = (
            enable_entitlement_repair
            if enable_entitlement_repair is not None
            else settings.enable_entitlement_repair
        )
        self.batch_size = batch_size or settings.entitlement_repair_batch_size
        self.max_attempts = max_attempts or settings.max_build_attempts
        self.enable_payment_reconciliation = (
            enable_payment_reconciliation
            if enable_payment_reconciliation is not None
            else settings.enable_payment_reconciliation
        )
        self.reconciliation_min_age = (
            reconciliation_min_age
            if reconciliation_min_age is not None
            else settings.payment_reconciliation_min_age_seconds
        )
        self.reconciliation_batch_size = (
            reconciliation_batch_size or settings.payment_reconciliation_batch_size
        )
        self._order_lookup = order_lookup
        if self.enable_payment_reconciliation and self._order_lookup is None:
            self._order_lookup = build_order_lookup(settings)
            if self._order_lookup is None:
                logger.warning("Payment reconciliation enabled without provider credentials")
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the maintenance loop."""
        logger.info("Maintenance starting", extra={"interval": self.interval})
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in maintenance loop")

            await asyncio.sleep(self.interval)

        logger.info("Maintenance stopped")

    async def stop(self) -> None:
        """Stop the maintenance loop."""
        logger.info("Maintenance stopping")
        self._running = False

    async def run_once(self) -> MaintenanceReport:
        """
        Run a single pass (for testing or cron-style execution).

        Returns:
            MaintenanceReport with what was done.
        """
        report = MaintenanceReport()
        if self.enable_payment_reconciliation and self._order_lookup is not None:
            await self._reconcile_payments(report)
        if self.enable_entitlement_repair:
            await self._repair_entitlements(report)
        await self._report_exhausted(report)
        return report

    async def _repair_entitlements(self, report: MaintenanceReport) -> None:
        async with get_session_context() as session:
            pending = await PaymentRepository(session).list_unapplied_completed(self.batch_size)
            payment_ids = [(payment.id, payment.plan) for payment in pending]

        # One transaction per payment, so a failing grant does not hold back the rest
        for payment_id, plan in payment_ids:
            try:
                async with get_session_context() as session:
                    applied = await PaymentRepository(session).apply_entitlements_if_needed(
                        payment_id
                    )
            except Exception:
                report.entitlement_errors += 1
                logger.exception(
                    "Entitlement repair failed", extra={"payment_id": str(payment_id)}
                )
                continue

            if applied:
                report.entitlements_repaired += 1
                self._metrics.record_entitlements_applied(plan)
                logger.info(
                    "Repaired missing entitlements",
                    extra={"payment_id": str(payment_id), "plan": plan},
                )

    async def _reconcile_payments(self, report: MaintenanceReport) -> None:
        """
        Settle pending payments the provider captured but never called back for.

        Settlement goes through the same pending-only transition as the
        callback, so a callback arriving meanwhile wins and nothing is
        granted twice.
        """
        lookup = self._order_lookup
        created_before = utcnow() - timedelta(seconds=self.reconciliation_min_age)
        async with get_session_context() as session:
            pending = await PaymentRepository(session).list_pending_before(
                lookup.provider, created_before, self.reconciliation_batch_size
            )
            candidates = [(p.id, p.provider_order_id, p.plan) for p in pending]

        for payment_id, order_id, plan in candidates:
            try:
                provider_payment_id = await lookup.find_captured_payment(order_id)
            except Exception as e:
                report.reconciliation_errors += 1
                logger.warning(
                    "Payment provider lookup failed",
                    extra={"payment_id": str(payment_id), "order_id": order_id, "error": str(e)},
                )
                continue

            if provider_payment_id is None:
                continue

            async with get_session_context() as session:
                repo = PaymentRepository(session)
                _, updated = await repo.update_payment_status(
                    payment_id, PaymentStatus.COMPLETED, provider_payment_id
                )
                applied = updated and await repo.apply_entitlements_if_needed(payment_id)

            if not updated:
                continue

            report.payments_reconciled += 1
            self._metrics.record_payment_reconciled()
            if applied:
                self._metrics.record_entitlements_applied(plan)
            logger.info(
                "Recovered captured payment",
                extra={"payment_id": str(payment_id), "order_id": order_id},
            )

        if report.payments_reconciled > RECONCILE_ANOMALY_THRESHOLD:
            logger.warning(
                "Unusually many payments recovered in one pass",
                extra={"recovered": report.payments_reconciled},
            )

    async def _report_exhausted(self, report: MaintenanceReport) -> None:
        async with get_session_context() as session:
            repo = BuildJobRepository(session, max_attempts=self.max_attempts)
            report.exhausted_jobs = await repo.count_exhausted()
            stuck = await repo.list_exhausted(limit=20) if report.exhausted_jobs else []

        self._metrics.update_exhausted_jobs(report.exhausted_jobs)
        for job in stuck:
            logger.warning(
                "Build job exhausted its retry budget",
                extra={
                    "job_id": str(job.id),
                    "app_id": str(job.app_id),
                    "status": str(job.status),
                    "attempts": job.attempts,
                },
            )


async def run_async() -> None:
    """Run the maintenance loop asynchronously."""
    setup_logging(component="maintenance")
    await init_db()

    maintenance = Maintenance()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(maintenance.stop())
        )

    try:
        await maintenance.start()
    finally:
        await close_db()
        clear_context()


def run() -> None:
    """Run the maintenance loop."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
