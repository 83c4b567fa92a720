"""
Unit Tests for PaymentGatewayClient

HTTP response mapping, exercised through an httpx mock transport.
"""

import json
from decimal import Decimal

import httpx
import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config.service_config import ServiceConfig
from microservices.group_buy_service.clients.payment_gateway_client import PaymentGatewayClient
from tests.contracts.group_buy.data_contract import GroupBuyTestDataFactory, PledgeStatus


def _intent():
    pledge = GroupBuyTestDataFactory.make_pledge("cmp_1", 10, PledgeStatus.COMMITTED, buyer_id="buyer_a")
    return GroupBuyTestDataFactory.make_intent(pledge, amount="220.00")


def _client(handler, api_key=""):
    config = ServiceConfig(payment_gateway_url="http://gateway.test/", payment_gateway_api_key=api_key)
    return PaymentGatewayClient(config, transport=httpx.MockTransport(handler))


class TestPaymentGatewayClient:

    @pytest.mark.asyncio
    async def test_successful_charge(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "succeeded", "charge_id": "ch_123"})

        intent = _intent()
        result = await _client(handler, api_key="sk_test").charge(intent, "key-1")

        assert result.success is True
        assert result.gateway_reference == "ch_123"
        assert seen["url"] == "http://gateway.test/api/v1/charges"
        assert seen["headers"]["Idempotency-Key"] == "key-1"
        assert seen["headers"]["Authorization"] == "Bearer sk_test"
        assert seen["body"]["amount"] == "220.00"
        assert seen["body"]["customer_id"] == "buyer_a"

    @pytest.mark.asyncio
    async def test_declined_charge(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"charge_id": "ch_9", "failure_reason": "insufficient_funds"})

        result = await _client(handler).charge(_intent(), "key-1")

        assert result.success is False
        assert result.failure_reason == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_unprocessable_charge_is_a_decline(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"charge_id": "ch_10", "failure_reason": "amount_too_small"})

        result = await _client(handler).charge(_intent(), "key-1")

        assert result.success is False
        assert result.gateway_reference == "ch_10"
        assert result.failure_reason == "amount_too_small"

    @pytest.mark.asyncio
    async def test_failed_status_in_ok_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "failed"})

        result = await _client(handler).charge(_intent(), "key-1")

        assert result.success is False
        assert result.failure_reason == "failed"

    @pytest.mark.asyncio
    async def test_server_error_is_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"detail": "maintenance"})

        with pytest.raises(httpx.HTTPStatusError):
            await _client(handler).charge(_intent(), "key-1")

    @pytest.mark.asyncio
    async def test_no_authorization_header_without_api_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            return httpx.Response(200, json={"status": "succeeded"})

        await _client(handler).charge(_intent(), "key-1")

        assert "Authorization" not in seen["headers"]
