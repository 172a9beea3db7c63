"""
Build Queue

Lease-based build job queue with bounded retry, stale-lease reclaim and
app build-state synchronization, plus idempotent payment settlement that
grants entitlements exactly once.
"""

__version__ = "0.1.0"
