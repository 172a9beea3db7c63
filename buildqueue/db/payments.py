"""
Payment repository.
Settles payments exactly once and grants their entitlements exactly once.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.constants import PaymentStatus
from buildqueue.db.models import Payment, utcnow
from buildqueue.db.transitions import TransitionFrom, transition_once
from buildqueue.entitlements import grant_entitlements

logger = logging.getLogger(__name__)

_settle = TransitionFrom(Payment, PaymentStatus.PENDING)


class PaymentRepository:
    """
    Repository for payment records.

    Settlement and entitlement granting are separate guarded transitions so
    either can be retried safely: a duplicate provider callback never
    re-settles, and a repair pass never re-grants.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_payment(
        self,
        user_id: UUID,
        amount: int,
        plan: str,
        app_id: UUID | None = None,
        provider: str = "razorpay",
        provider_order_id: str | None = None,
    ) -> Payment:
        """
        Record a checkout as a pending payment.

        Args:
            user_id: The paying user.
            amount: Amount in minor currency units.
            plan: Plan or add-on being bought.
            app_id: App the purchase is for, if any.
            provider: Payment provider name.
            provider_order_id: Provider-side order reference.

        Returns:
            The new Payment in PENDING status.
        """
        payment = Payment(
            user_id=user_id,
            app_id=app_id,
            amount=amount,
            plan=plan,
            provider=provider,
            provider_order_id=provider_order_id,
            status=PaymentStatus.PENDING,
        )
        self._session.add(payment)
        await self._session.flush()
        return payment

    async def get_payment(self, payment_id: UUID) -> Payment | None:
        """Get a payment by ID, reloading it from the database."""
        return await self._session.get(Payment, payment_id, populate_existing=True)

    async def update_payment_status(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        provider_payment_id: str | None = None,
    ) -> tuple[Payment | None, bool]:
        """
        Move a pending payment to its final status.

        Only a PENDING payment is mutated. Any later call, including a
        duplicate callback racing the first one, gets the stored payment
        back with updated=False.

        Args:
            payment_id: The payment UUID.
            status: New status.
            provider_payment_id: Provider-side payment reference, if known.

        Returns:
            Tuple of (payment, updated). Payment is None for an unknown id.
        """
        values: dict = {"status": status}
        if provider_payment_id is not None:
            values["provider_payment_id"] = provider_payment_id

        outcome = await _settle(self._session, payment_id, values)
        payment = await self.get_payment(payment_id)

        if outcome.applied:
            logger.info(
                "Payment settled",
                extra={"payment_id": str(payment_id), "status": str(status)},
            )
        elif payment is not None:
            logger.info(
                "Ignored duplicate payment transition",
                extra={
                    "payment_id": str(payment_id),
                    "requested": str(status),
                    "current": str(payment.status),
                },
            )
        return payment, outcome.applied

    async def apply_entitlements_if_needed(self, payment_id: UUID) -> bool:
        """
        Grant a completed payment's entitlements exactly once.

        The entitlements_applied_at marker is claimed with a guarded UPDATE
        and the grant runs in the same transaction, so a rollback releases
        the marker and concurrent callers cannot both grant.

        Args:
            payment_id: The payment UUID.

        Returns:
            True only for the call that claimed the marker.
        """
        outcome = await transition_once(
            self._session,
            Payment,
            payment_id,
            guard=[
                Payment.status == PaymentStatus.COMPLETED,
                Payment.entitlements_applied_at.is_(None),
            ],
            values={"entitlements_applied_at": utcnow()},
        )
        if not outcome.applied:
            return False

        payment = await self.get_payment(payment_id)
        await grant_entitlements(self._session, payment.user_id, payment.plan)

        logger.info(
            "Entitlements applied",
            extra={"payment_id": str(payment_id), "plan": payment.plan},
        )
        return True

    async def list_unapplied_completed(self, limit: int = 100) -> Sequence[Payment]:
        """
        List completed payments whose entitlements were never granted.

        Args:
            limit: Maximum number of payments to return.

        Returns:
            Oldest payments first.
        """
        stmt = (
            select(Payment)
            .where(
                Payment.status == PaymentStatus.COMPLETED,
                Payment.entitlements_applied_at.is_(None),
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_pending_before(
        self,
        provider: str,
        created_before: datetime,
        limit: int = 50,
    ) -> Sequence[Payment]:
        """
        List pending payments old enough that their callback looks lost.

        Only payments with a provider order reference can be looked up.

        Args:
            provider: Payment provider name.
            created_before: Only payments created before this instant.
            limit: Maximum number of payments to return.

        Returns:
            Oldest payments first.
        """
        stmt = (
            select(Payment)
            .where(
                Payment.provider == provider,
                Payment.status == PaymentStatus.PENDING,
                Payment.provider_order_id.is_not(None),
                Payment.created_at < created_before,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
