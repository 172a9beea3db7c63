"""
Type definitions for the build queue.
Contains API request/response models and the build handler contract.
"""

from buildqueue.types.api import (
    AuthRequest,
    BuildJobListResponse,
    BuildJobResponse,
    EnqueueBuildResponse,
    ErrorResponse,
    HealthResponse,
    PaymentCallbackRequest,
    PaymentCallbackResponse,
    RetryBuildResponse,
    TokenResponse,
)
from buildqueue.types.job import BuildContext, BuildResult

__all__ = [
    # API types
    "BuildJobResponse",
    "BuildJobListResponse",
    "EnqueueBuildResponse",
    "RetryBuildResponse",
    "PaymentCallbackRequest",
    "PaymentCallbackResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    "ErrorResponse",
    # Build types
    "BuildContext",
    "BuildResult",
]
