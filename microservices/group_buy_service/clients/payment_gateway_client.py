"""
Payment Gateway Client

Charges buyers through the payment gateway HTTP API.

A 2xx response with status "succeeded" is a successful charge. A 402 or 422
response, or a 2xx body with any other status, is a declined charge. Anything
else (timeouts, 5xx) leaves the outcome unknown and is raised so the attempt
can be replayed with the same idempotency key.
"""

import logging
from typing import Optional

import httpx

from core.config.service_config import ServiceConfig

from ..models import ChargeResult, PaymentIntent

logger = logging.getLogger(__name__)

# Gateway responses that settle the attempt as declined
DECLINED_STATUS_CODES = frozenset({402, 422})


class PaymentGatewayClient:
    """Client for the payment gateway"""

    def __init__(self, config: Optional[ServiceConfig] = None, transport=None):
        config = config or ServiceConfig.from_env()
        self.base_url = config.payment_gateway_url.rstrip("/")
        self.timeout = config.http_timeout_seconds
        self.api_key = config.payment_gateway_api_key
        self._transport = transport

    def _headers(self, idempotency_key: str) -> dict:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def charge(self, intent: PaymentIntent, idempotency_key: str) -> ChargeResult:
        request_data = {
            "intent_id": intent.intent_id,
            "customer_id": intent.buyer_id,
            "amount": str(intent.amount),
            "metadata": {
                "campaign_id": intent.campaign_id,
                "pledge_id": intent.pledge_id,
            },
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/api/v1/charges",
                json=request_data,
                headers=self._headers(idempotency_key),
            )

        if response.status_code in DECLINED_STATUS_CODES:
            body = response.json()
            return ChargeResult(
                success=False,
                gateway_reference=body.get("charge_id"),
                failure_reason=body.get("failure_reason") or "declined",
            )

        response.raise_for_status()
        body = response.json()
        if body.get("status") == "succeeded":
            return ChargeResult(success=True, gateway_reference=body.get("charge_id"))

        logger.debug(f"Charge for intent {intent.intent_id} returned status {body.get('status')}")
        return ChargeResult(
            success=False,
            gateway_reference=body.get("charge_id"),
            failure_reason=body.get("failure_reason") or body.get("status") or "declined",
        )
