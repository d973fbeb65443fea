"""
Razorpay order client for the hosted payments REST API.

Only order creation is needed here; the customer pays on the hosted page and
the gateway reports back through the payments webhook.
"""

from __future__ import annotations
from typing import Any, Optional, Protocol
import httpx
import structlog

from database import settings
from errors import PaymentGatewayError, PaymentsDisabled

logger = structlog.get_logger(__name__)


class PaymentGateway(Protocol):
    key_id: str

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> dict[str, Any]: ...


class RazorpayGateway:
    def __init__(self, key_id: str, key_secret: str, base_url: str = "https://api.razorpay.com/v1",
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.key_id = key_id
        self._auth = (key_id, key_secret)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> dict[str, Any]:
        """Create a gateway order. `amount` is in minor units (paise)."""
        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        try:
            async with httpx.AsyncClient(auth=self._auth, timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(f"{self._base_url}/orders", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error("gateway_order_rejected", status=e.response.status_code, receipt=receipt)
            raise PaymentGatewayError(f"Payment gateway rejected the order ({e.response.status_code})") from e
        except httpx.HTTPError as e:
            logger.error("gateway_unreachable", error=str(e)[:200], receipt=receipt)
            raise PaymentGatewayError("Payment gateway unavailable") from e
        if "id" not in data:
            raise PaymentGatewayError("Payment gateway returned no order id")
        logger.info("gateway_order_created", gateway_order_id=data["id"], amount=amount, receipt=receipt)
        return data


def get_gateway() -> PaymentGateway:
    if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
        raise PaymentsDisabled()
    return RazorpayGateway(
        settings.RAZORPAY_KEY_ID,
        settings.RAZORPAY_KEY_SECRET,
        base_url=settings.RAZORPAY_BASE_URL,
        timeout=settings.PAYMENT_TIMEOUT,
    )
