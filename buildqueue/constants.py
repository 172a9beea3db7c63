"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class BuildJobStatus(StrEnum):
    """
    Build job lifecycle states.

    State transitions:
    - QUEUED -> RUNNING (lease acquired)
    - RUNNING -> RUNNING (stale lease reclaimed by another worker)
    - RUNNING -> QUEUED (explicit requeue)
    - RUNNING -> SUCCEEDED | FAILED (completion by the lease holder)
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_JOB_STATUSES: frozenset[BuildJobStatus] = frozenset(
    {BuildJobStatus.SUCCEEDED, BuildJobStatus.FAILED}
)


class AppStatus(StrEnum):
    """Externally visible build state of an app."""

    DRAFT = "draft"
    PROCESSING = "processing"
    LIVE = "live"
    FAILED = "failed"


class PaymentStatus(StrEnum):
    """
    Payment states.

    Only PENDING may transition; COMPLETED and FAILED are final.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Platform(StrEnum):
    """Targets an app can be built for."""

    ANDROID = "android"
    IOS = "ios"
    BOTH = "both"


class Plan(StrEnum):
    """Purchasable products. Subscriptions and one-off add-ons."""

    STARTER = "starter"
    STANDARD = "standard"
    PRO = "pro"
    AGENCY = "agency"
    EXTRA_REBUILD = "extra_rebuild"
    EXTRA_REBUILD_PACK = "extra_rebuild_pack"
    EXTRA_APP_SLOT = "extra_app_slot"


SUBSCRIPTION_PLANS: frozenset[Plan] = frozenset(
    {Plan.STARTER, Plan.STANDARD, Plan.PRO, Plan.AGENCY}
)

# Subscriptions that include iOS builds
IOS_PLANS: frozenset[Plan] = frozenset({Plan.PRO, Plan.AGENCY})

# Rebuild allowance granted with each subscription year
PLAN_REBUILDS: dict[Plan, int] = {
    Plan.STARTER: 1,
    Plan.STANDARD: 2,
    Plan.PRO: 3,
    Plan.AGENCY: 20,
}

PLAN_MAX_APPS: dict[Plan, int] = {
    Plan.STARTER: 1,
    Plan.STANDARD: 1,
    Plan.PRO: 2,
    Plan.AGENCY: 10,
}

EXTRA_REBUILD_PACK_SIZE = 10

# Default values
DEFAULT_MAX_BUILD_ATTEMPTS = 3
DEFAULT_LOCK_TTL_MS = 30 * 60 * 1000
DEFAULT_ARTIFACTS_PER_APP = 10
DEFAULT_ARTIFACT_RETENTION_DAYS = 30
BUILD_LOG_TAIL_CHARS = 20_000
RETRYING_BUILD_ERROR = "Build failed. Retrying..."
APP_NOT_FOUND_ERROR = "App not found"
MAX_ATTEMPTS_ERROR = "Max retry attempts exceeded"
PLAN_INELIGIBLE_ERROR = "Subscription inactive or plan not eligible"
IOS_PLAN_REQUIRED_ERROR = "iOS builds require eligible plan"
IOS_NOT_CONFIGURED_ERROR = "iOS builds not configured"
IOS_NOT_CONFIGURED_APP_ERROR = "iOS builds not configured. Please contact support."

# Artifacts
APK_MIME_TYPE = "application/vnd.android.package-archive"
IPA_MIME_TYPE = "application/octet-stream"
ARTIFACT_SUFFIXES = (".apk", ".ipa")
DEFAULT_PACKAGE_PREFIX = "com.buildqueue"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_JOBS_ENQUEUED = "build_jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "build_jobs_completed_total"
METRIC_JOBS_REQUEUED = "build_jobs_requeued_total"
METRIC_JOBS_EXHAUSTED = "build_jobs_exhausted"
METRIC_BUILD_DURATION = "build_duration_seconds"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_LEASE_RECLAIMED = "lease_reclaimed_total"
METRIC_LEASE_CONFLICTS = "lease_conflicts_total"
METRIC_PAYMENT_TRANSITIONS = "payment_transitions_total"
METRIC_ENTITLEMENTS_APPLIED = "entitlements_applied_total"
METRIC_PAYMENTS_RECONCILED = "payments_reconciled_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_build_job"
SPAN_CLAIM_JOB = "claim_build_job"
SPAN_EXECUTE_BUILD = "execute_build"
SPAN_COMPLETE_JOB = "complete_build_job"
SPAN_SETTLE_PAYMENT = "settle_payment"
