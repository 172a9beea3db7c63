"""
Guarded single-row state transitions.

Completing a build job and settling a payment are the same shape: one
conditional UPDATE that only matches while the row is still in the expected
state. Losing the race is an expected outcome, reported as a value.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.db.models import Base, utcnow


class TransitionOutcome(StrEnum):
    """Result of a guarded transition."""

    APPLIED = "applied"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"

    @property
    def applied(self) -> bool:
        return self is TransitionOutcome.APPLIED


async def transition_once(
    session: AsyncSession,
    model: type[Base],
    row_id: UUID,
    *,
    guard: list[ColumnElement[bool]],
    values: Mapping[str, Any],
) -> TransitionOutcome:
    """
    Apply values to a row only while every guard holds.

    The guard is evaluated by the database inside the UPDATE itself, so
    concurrent callers racing on the same row see at most one APPLIED.

    Args:
        session: The async database session.
        model: Mapped class with an ``id`` primary key.
        row_id: Primary key of the row to transition.
        guard: Conditions the row must satisfy for the update to apply.
        values: Column values to set; ``updated_at`` is bumped when present.

    Returns:
        APPLIED, CONFLICT (row exists but a guard failed) or NOT_FOUND.
    """
    new_values = dict(values)
    if "updated_at" in model.__table__.c and "updated_at" not in new_values:
        new_values["updated_at"] = utcnow()

    stmt = (
        update(model)
        .where(model.id == row_id, *guard)
        .values(**new_values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 1:
        return TransitionOutcome.APPLIED

    exists = await session.scalar(select(model.id).where(model.id == row_id))
    if exists is None:
        return TransitionOutcome.NOT_FOUND
    return TransitionOutcome.CONFLICT


@dataclass(frozen=True)
class TransitionFrom:
    """
    A transition permitted only out of one expected status.

    Example:
        settle = TransitionFrom(Payment, PaymentStatus.PENDING)
        outcome = await settle(session, payment_id, {"status": PaymentStatus.COMPLETED})
    """

    model: type[Base]
    expected: StrEnum

    async def __call__(
        self,
        session: AsyncSession,
        row_id: UUID,
        values: Mapping[str, Any],
        *guard: ColumnElement[bool],
    ) -> TransitionOutcome:
        return await transition_once(
            session,
            self.model,
            row_id,
            guard=[self.model.status == self.expected, *guard],
            values=values,
        )
