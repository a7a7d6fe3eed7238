# payments/zenopay.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — ZENOPAY CLIENT
# ============================================================================
# Thin async client for the ZenoPay mobile money API (Tanzania).
#
# ENDPOINTS:
# - POST {base}/mobile_money_tanzania   push a USSD payment prompt (30s)
# - GET  {base}/order-status?order_id=  poll an order (20s)
#
# FAILURE HANDLING:
# - Non-2xx responses and timeouts raise ZenoPayError
# - A 2xx body that is not JSON comes back as {"raw": <text>}
# ============================================================================

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from errors import ZenoPayError

logger = structlog.get_logger().bind(component="zenopay")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

@dataclass
class ZenoPayConfig:
    """Configuration for the ZenoPay connection."""
    base_url: str
    api_key: str
    create_timeout_seconds: float = 30.0
    status_timeout_seconds: float = 20.0

    @classmethod
    def from_env(cls) -> "ZenoPayConfig":
        return cls(
            base_url=os.getenv("ZENOPAY_BASE_URL", "https://zenoapi.com/api/payments"),
            api_key=os.getenv("ZENOPAY_API_KEY", ""),
        )


# ============================================================================
# SECTION 2: CLIENT
# ============================================================================

class ZenoPayClient:
    """
    ZenoPay API client.

    The order_id we send is our session's transaction_reference, so the same
    database order can be retried under a fresh gateway order.
    """

    def __init__(
        self,
        config: Optional[ZenoPayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ZenoPayConfig.from_env()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                headers={
                    "Accept": "application/json",
                    "x-api-key": self.config.api_key,
                },
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def create_order(
        self,
        order_id: str,
        buyer_name: str,
        buyer_phone: str,
        buyer_email: str,
        amount: int,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a mobile money payment order (pushes the prompt to the phone)"""
        payload: Dict[str, Any] = {
            "order_id": order_id,
            "buyer_name": buyer_name,
            "buyer_phone": buyer_phone,
            "buyer_email": buyer_email,
            "amount": amount,
        }
        if webhook_url:
            payload["webhook_url"] = webhook_url
        # channel is not part of the documented API; ZenoPay may ignore it
        if channel:
            payload["channel"] = channel

        timeout = self.config.create_timeout_seconds
        try:
            response = await self._get_client().post(
                f"{self.base_url}/mobile_money_tanzania",
                json=payload,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            logger.error("zenopay_create_timeout", order_id=order_id, timeout=timeout)
            raise ZenoPayError(f"ZenoPay request timed out after {int(timeout)} seconds")

        if response.is_error:
            logger.warning("zenopay_create_failed", order_id=order_id, status_code=response.status_code)
            raise ZenoPayError(
                f"ZenoPay create order failed ({response.status_code}): {response.text}",
                details={"status_code": response.status_code},
            )

        return self._decode(response)

    async def get_order_status(self, order_id: str) -> Dict[str, Any]:
        """Check the status of a payment order"""
        timeout = self.config.status_timeout_seconds
        try:
            response = await self._get_client().get(
                f"{self.base_url}/order-status",
                params={"order_id": order_id},
                timeout=timeout,
            )
        except httpx.TimeoutException:
            logger.error("zenopay_status_timeout", order_id=order_id, timeout=timeout)
            raise ZenoPayError(f"ZenoPay status request timed out after {int(timeout)} seconds")

        if response.is_error:
            raise ZenoPayError(
                f"ZenoPay status check failed ({response.status_code}): {response.text}",
                details={"status_code": response.status_code},
            )

        return self._decode(response)
