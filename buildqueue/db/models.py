"""
SQLAlchemy database models.
Defines the build job table and the app, payment and user records it touches.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from buildqueue.constants import (
    AppStatus,
    BuildJobStatus,
    PaymentStatus,
    TERMINAL_JOB_STATUSES,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BuildJob(Base):
    """
    A request to turn an app's stored configuration into an installable binary.

    This is the authoritative source of truth for build job state.
    Rows are only mutated through the claim/complete/requeue operations of
    BuildJobRepository and are never deleted.

    Key constraints:
    - lock_token identifies the current lease; it is only live while RUNNING
    - attempts is incremented once per successful claim
    - locked_at + lease TTL is the lease expiry used for stale reclaim
    """

    __tablename__ = "build_jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )

    # Foreign references, immutable
    app_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    status: Mapped[BuildJobStatus] = mapped_column(
        Enum(
            BuildJobStatus,
            name="build_job_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=BuildJobStatus.QUEUED,
        index=True,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lease management
    lock_token: Mapped[str | None] = mapped_column(String(320), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        # Claim path: FIFO scan over claimable rows
        Index("ix_build_jobs_claim", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached succeeded or failed."""
        return self.status in TERMINAL_JOB_STATUSES

    def is_exhausted(self, max_attempts: int) -> bool:
        """Check if the retry budget is spent without a terminal outcome."""
        return not self.is_terminal and self.attempts >= max_attempts

    def __repr__(self) -> str:
        return (
            f"BuildJob(id={self.id}, app={self.app_id}, "
            f"status={self.status}, attempts={self.attempts})"
        )


class App(Base):
    """
    The app record whose visible build status mirrors terminal job outcomes.

    Owned by the app-editing surface; the queue only writes the build fields.
    """

    __tablename__ = "apps"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False, default="android")

    status: Mapped[AppStatus] = mapped_column(
        Enum(
            AppStatus,
            name="app_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AppStatus.DRAFT,
    )

    # Build metadata
    package_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    artifact_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_mime: Mapped[str | None] = mapped_column(String(128), nullable=True)
    artifact_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    build_logs: Mapped[str | None] = mapped_column(Text, nullable=True)
    build_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_build_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"App(id={self.id}, status={self.status}, version={self.version_code})"


class Payment(Base):
    """
    A single economic event from a payment provider.

    status leaves PENDING at most once. entitlements_applied_at is a separate
    monotonic marker so settling and granting can be retried independently.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    app_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    provider: Mapped[str] = mapped_column(String(16), nullable=False, default="razorpay")
    provider_order_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    provider_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Minor currency units
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    plan: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(
            PaymentStatus,
            name="payment_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    entitlements_applied_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"Payment(id={self.id}, plan={self.plan}, status={self.status})"


class User(Base):
    """Account-level entitlements granted by settled payments."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    plan_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    plan_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    plan_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    remaining_rebuilds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_apps_allowed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    extra_app_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    @property
    def has_active_plan(self) -> bool:
        """Check if a subscription is set, active and not past its expiry."""
        if self.plan is None or self.plan_status != "active" or self.plan_expires_at is None:
            return False
        return self.plan_expires_at > utcnow()

    def __repr__(self) -> str:
        return f"User(id={self.id}, plan={self.plan}, status={self.plan_status})"
