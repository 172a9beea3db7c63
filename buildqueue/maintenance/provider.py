"""
Payment provider lookups used by reconciliation.

A lookup answers one question for a pending payment whose callback never
arrived: did the provider capture money for this order?
"""

import logging
from typing import Protocol

import httpx

from buildqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)

CAPTURED_STATUS = "captured"


class OrderLookup(Protocol):
    """Provider-side lookup of an order's payments."""

    provider: str

    async def find_captured_payment(self, order_id: str) -> str | None:
        """Return the provider payment id that captured the order, if any."""
        ...


class RazorpayOrderLookup:
    """
    Razorpay order lookup over its REST API.

    Raises httpx.HTTPError for transport failures and non-2xx answers.
    """

    provider = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._auth = (key_id, key_secret)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def find_captured_payment(self, order_id: str) -> str | None:
        async with httpx.AsyncClient(
            auth=self._auth,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = await client.get(
                f"{self._base_url}/orders/{order_id}/payments",
                headers={"accept": "application/json"},
            )
            response.raise_for_status()

        items = response.json().get("items") or []
        for item in items:
            if str(item.get("status", "")).lower() == CAPTURED_STATUS:
                return item.get("id")
        return None


def build_order_lookup(settings: Settings | None = None) -> OrderLookup | None:
    """Create the configured provider lookup, or None without API credentials."""
    settings = settings or get_settings()
    if not (settings.razorpay_key_id and settings.razorpay_key_secret):
        return None
    return RazorpayOrderLookup(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        base_url=settings.razorpay_api_url,
        timeout=settings.payment_provider_timeout_seconds,
    )
