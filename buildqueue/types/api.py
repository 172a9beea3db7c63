"""
API request and response type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from buildqueue.constants import BuildJobStatus, PaymentStatus


class BuildJobResponse(BaseModel):
    """Build job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    app_id: UUID
    owner_id: UUID
    status: BuildJobStatus
    attempts: int
    locked_at: datetime | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    exhausted: bool = Field(
        default=False, description="Retry budget spent without a terminal outcome"
    )


class EnqueueBuildResponse(BaseModel):
    """Response body after requesting a build."""

    id: UUID
    app_id: UUID
    status: BuildJobStatus
    created_at: datetime
    message: str = "Build queued"


class BuildJobListResponse(BaseModel):
    """All build jobs of an app, newest first."""

    jobs: list[BuildJobResponse]
    total: int


class RetryBuildResponse(BaseModel):
    """Response body after an operator retry of an exhausted job."""

    id: UUID
    status: BuildJobStatus
    attempts: int
    message: str = "Build job queued for retry"


class PaymentCallbackRequest(BaseModel):
    """Payment provider callback body."""

    status: PaymentStatus
    provider_payment_id: str = Field(..., min_length=1, max_length=128)
    signature: str = Field(..., description="Provider HMAC over order and payment ids")

    @field_validator("status")
    @classmethod
    def status_must_be_final(cls, value: PaymentStatus) -> PaymentStatus:
        if value == PaymentStatus.PENDING:
            raise ValueError("callback status must be completed or failed")
        return value


class PaymentCallbackResponse(BaseModel):
    """Outcome of a provider callback. Duplicates report updated=False."""

    payment_id: UUID
    status: PaymentStatus
    updated: bool
    entitlements_applied: bool


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="API key for authentication")
    owner_id: UUID = Field(..., description="User the token is issued for")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
    request_id: str | None = None
