"""
Entitlement grants for settled payments.

A completed payment either activates/extends a subscription or adds a one-off
allowance (rebuilds or app slots) to the paying user. Callers must guarantee
that a payment is granted at most once; see
PaymentRepository.apply_entitlements_if_needed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.constants import (
    EXTRA_REBUILD_PACK_SIZE,
    IOS_PLANS,
    PLAN_MAX_APPS,
    PLAN_REBUILDS,
    SUBSCRIPTION_PLANS,
    Plan,
)
from buildqueue.db.models import User, utcnow

logger = logging.getLogger(__name__)

ACTIVE_PLAN_STATUS = "active"


def add_one_year(moment: datetime) -> datetime:
    """Same calendar date next year; Feb 29 rolls over to Mar 1."""
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        return moment.replace(year=moment.year + 1, month=3, day=1)


def subscription_expiry(user: User, now: datetime) -> datetime:
    """
    Compute the expiry of a newly bought subscription year.

    An active subscription that has not expired yet is extended from its
    current expiry; otherwise the year starts now.
    """
    base = now
    if (
        user.plan_status == ACTIVE_PLAN_STATUS
        and user.plan_expires_at is not None
        and user.plan_expires_at > now
    ):
        base = user.plan_expires_at
    return add_one_year(base)


@dataclass(frozen=True)
class BuildEligibility:
    """What the owner's subscription allows the worker to build."""

    can_build: bool
    can_build_ios: bool


def build_eligibility(user: User | None) -> BuildEligibility:
    """
    Check whether a user may have builds run.

    Any active, unexpired subscription allows Android builds; iOS builds
    additionally need one of IOS_PLANS. Add-on purchases never make a user
    eligible on their own.
    """
    if user is None or not user.has_active_plan:
        return BuildEligibility(can_build=False, can_build_ios=False)
    return BuildEligibility(can_build=True, can_build_ios=user.plan in IOS_PLANS)


async def _add_counter(session: AsyncSession, user_id: UUID, column, amount: int) -> bool:
    stmt = (
        update(User)
        .where(User.id == user_id)
        .values({column: column + amount, User.updated_at: utcnow()})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def grant_entitlements(
    session: AsyncSession,
    user_id: UUID,
    plan: str,
    now: datetime | None = None,
) -> bool:
    """
    Apply what a payment for `plan` buys to the user.

    Args:
        session: The async database session; the grant joins its transaction.
        user_id: The paying user.
        plan: Plan or add-on identifier stored on the payment.
        now: Reference time for subscription dates.

    Returns:
        True if the user row was changed, False for an unknown user or plan.
    """
    now = now or utcnow()

    try:
        product = Plan(plan)
    except ValueError:
        logger.error(
            "Payment for unknown plan, nothing granted",
            extra={"user_id": str(user_id), "plan": plan},
        )
        return False

    if product in SUBSCRIPTION_PLANS:
        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            granted = False
        else:
            expires_at = subscription_expiry(user, now)
            user.plan = product.value
            user.plan_status = ACTIVE_PLAN_STATUS
            user.plan_started_at = now
            user.plan_expires_at = expires_at
            user.remaining_rebuilds = PLAN_REBUILDS[product]
            user.max_apps_allowed = PLAN_MAX_APPS[product]
            user.updated_at = now
            await session.flush()
            granted = True
    elif product == Plan.EXTRA_REBUILD:
        granted = await _add_counter(session, user_id, User.remaining_rebuilds, 1)
    elif product == Plan.EXTRA_REBUILD_PACK:
        granted = await _add_counter(
            session, user_id, User.remaining_rebuilds, EXTRA_REBUILD_PACK_SIZE
        )
    else:
        granted = await _add_counter(session, user_id, User.extra_app_slots, 1)

    if granted:
        logger.info(
            "Granted entitlements",
            extra={"user_id": str(user_id), "plan": plan},
        )
    else:
        logger.warning(
            "Entitlement grant found no user",
            extra={"user_id": str(user_id), "plan": plan},
        )
    return granted
