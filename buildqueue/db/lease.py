"""
Lease primitives for build jobs.

A lease is identified by its token and expires at locked_at + TTL.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from buildqueue.db.models import utcnow

# 128 bits of randomness per lease
TOKEN_BYTES = 16


def new_lock_token(worker_id: str) -> str:
    """
    Generate an unguessable lease token.

    The worker id prefix is only for debuggability; uniqueness comes
    from the random part.

    Args:
        worker_id: The claiming worker's identifier.

    Returns:
        A token of the form "<worker_id>:<random>".
    """
    return f"{worker_id}:{secrets.token_urlsafe(TOKEN_BYTES)}"


def worker_of(lock_token: str | None) -> str | None:
    """Extract the worker id a token was issued to."""
    if not lock_token or ":" not in lock_token:
        return None
    return lock_token.rsplit(":", 1)[0]


def stale_before(ttl: timedelta, now: datetime | None = None) -> datetime:
    """Leases taken before the returned instant are expired."""
    return (now or utcnow()) - ttl


def is_stale(locked_at: datetime | None, ttl: timedelta, now: datetime | None = None) -> bool:
    """Check if a lease taken at locked_at has outlived ttl."""
    if locked_at is None:
        return True
    return locked_at < stale_before(ttl, now)


@dataclass(frozen=True)
class Lease:
    """
    A worker's handle on a claimed job.

    Holds everything needed to complete, requeue or extend the lease.
    """

    job_id: UUID
    lock_token: str
    locked_at: datetime
    ttl: timedelta

    @property
    def expires_at(self) -> datetime:
        return self.locked_at + self.ttl

    @property
    def worker_id(self) -> str | None:
        return worker_of(self.lock_token)

    @property
    def time_remaining_seconds(self) -> float:
        """Get remaining time on the lease in seconds."""
        return max(0.0, (self.expires_at - utcnow()).total_seconds())
