"""
Payment provider callback routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.api.auth import verify_payment_signature
from buildqueue.constants import API_V1_PREFIX, SPAN_SETTLE_PAYMENT, PaymentStatus
from buildqueue.db import get_async_session
from buildqueue.db.payments import PaymentRepository
from buildqueue.observability.metrics import get_metrics
from buildqueue.observability.tracing import create_span
from buildqueue.types.api import PaymentCallbackRequest, PaymentCallbackResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/payments", tags=["Payments"])


@router.post(
    "/{payment_id}/callback",
    response_model=PaymentCallbackResponse,
    summary="Payment provider callback",
    description=(
        "Settle a pending payment and grant its entitlements. "
        "Duplicate callbacks are acknowledged without effect."
    ),
)
async def payment_callback(
    payment_id: UUID,
    request: PaymentCallbackRequest,
    session: AsyncSession = Depends(get_async_session),
) -> PaymentCallbackResponse:
    """
    Handle a provider callback for a payment.

    The callback is authenticated by its signature rather than a bearer
    token. Entitlements are applied whenever the stored payment is
    completed, so a retried callback also finishes a grant that an earlier
    attempt did not get to.

    Args:
        payment_id: The payment UUID.
        request: Callback body.
        session: Database session.

    Returns:
        PaymentCallbackResponse; updated is False for duplicates.

    Raises:
        HTTPException: 404 for an unknown payment, 400 for a bad signature.
    """
    repo = PaymentRepository(session)
    metrics = get_metrics()

    payment = await repo.get_payment(payment_id)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found",
        )

    if not verify_payment_signature(
        payment.provider_order_id, request.provider_payment_id, request.signature
    ):
        logger.warning("Payment signature mismatch", extra={"payment_id": str(payment_id)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment verification failed",
        )

    with create_span(SPAN_SETTLE_PAYMENT, payment_id=payment_id, status=request.status):
        payment, updated = await repo.update_payment_status(
            payment_id, request.status, request.provider_payment_id
        )
        metrics.record_payment_transition(
            str(request.status), "applied" if updated else "duplicate"
        )

        entitlements_applied = False
        if payment.status == PaymentStatus.COMPLETED:
            entitlements_applied = await repo.apply_entitlements_if_needed(payment_id)

        await session.commit()

    if entitlements_applied:
        metrics.record_entitlements_applied(payment.plan)

    return PaymentCallbackResponse(
        payment_id=payment.id,
        status=payment.status,
        updated=updated,
        entitlements_applied=entitlements_applied,
    )
