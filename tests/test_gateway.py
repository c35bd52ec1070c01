"""Tests for the Paystack gateway client."""

import json
import re
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from fakes import SECRET_KEY, sign
from shared.config import Settings

from services.payment_service.errors import GatewayError, GatewayRejected, GatewayUnavailable
from services.payment_service.gateway import (
    ChargeOutcome,
    GatewayTransaction,
    PaystackClient,
    WebhookEvent,
    calculate_transaction_fee,
    from_minor_units,
    generate_payment_reference,
    outcome_from_gateway_status,
    outcome_from_webhook_event,
    to_minor_units,
    to_naive_utc,
    validate_gateway_config,
)


def client_for(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PaystackClient(http_client, kwargs.pop("secret_key", SECRET_KEY), retry_wait=0, **kwargs)


class TestWebhookSignature:
    def test_valid_signature(self, gateway):
        body = b'{"event":"charge.success","data":{"reference":"REF-1"}}'
        assert gateway.verify_webhook_signature(body, sign(body)) is True

    def test_tampered_body_rejected(self, gateway):
        body = b'{"event":"charge.success","data":{"reference":"REF-1","amount":100}}'
        signature = sign(body)
        tampered = body.replace(b"100", b"900")
        assert gateway.verify_webhook_signature(tampered, signature) is False

    def test_signature_over_reserialized_body_rejected(self, gateway):
        """The HMAC covers the exact bytes received, not a re-encoding of them."""
        body = b'{"event": "charge.success",  "data": {"reference": "REF-1"}}'
        reencoded = json.dumps(json.loads(body)).encode()
        assert gateway.verify_webhook_signature(body, sign(reencoded)) is False

    def test_missing_signature_rejected(self, gateway):
        assert gateway.verify_webhook_signature(b"{}", None) is False
        assert gateway.verify_webhook_signature(b"{}", "") is False

    def test_wrong_secret_rejected(self, gateway):
        body = b"{}"
        assert gateway.verify_webhook_signature(body, sign(body, "sk_test_other")) is False

    def test_separate_webhook_secret(self, http_client):
        gateway = PaystackClient(http_client, SECRET_KEY, webhook_secret="whsec_1")
        body = b"{}"
        assert gateway.verify_webhook_signature(body, sign(body, "whsec_1")) is True
        assert gateway.verify_webhook_signature(body, sign(body)) is False

    def test_no_secret_configured_rejects_everything(self, http_client):
        gateway = PaystackClient(http_client, "")
        assert gateway.verify_webhook_signature(b"{}", sign(b"{}", "")) is False


class TestOutcomeMapping:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ("success", ChargeOutcome.SUCCESS),
            ("failed", ChargeOutcome.FAILED),
            ("reversed", ChargeOutcome.FAILED),
            ("abandoned", ChargeOutcome.PENDING),
            ("ongoing", ChargeOutcome.PENDING),
            ("pending", ChargeOutcome.PENDING),
            ("queued", ChargeOutcome.PENDING),
            ("processing", ChargeOutcome.PROCESSING),
            ("SUCCESS", ChargeOutcome.SUCCESS),
        ],
    )
    def test_gateway_statuses(self, status, expected):
        assert outcome_from_gateway_status(status) == expected

    def test_unknown_status_is_pending(self):
        assert outcome_from_gateway_status("send_otp") == ChargeOutcome.PENDING
        assert outcome_from_gateway_status(None) == ChargeOutcome.PENDING

    def test_webhook_events(self):
        assert outcome_from_webhook_event("charge.success") == ChargeOutcome.SUCCESS
        assert outcome_from_webhook_event("charge.failed") == ChargeOutcome.FAILED
        assert outcome_from_webhook_event("charge.pending") == ChargeOutcome.PROCESSING
        assert outcome_from_webhook_event("transfer.success") is None

    def test_terminal_outcomes(self):
        assert ChargeOutcome.SUCCESS.is_terminal
        assert ChargeOutcome.FAILED.is_terminal
        assert not ChargeOutcome.PENDING.is_terminal
        assert not ChargeOutcome.PROCESSING.is_terminal


class TestGatewayModels:
    def test_webhook_event_parses_card_authorization(self):
        event = WebhookEvent.model_validate({
            "event": "charge.success",
            "data": {
                "id": 302961,
                "reference": "REF-1",
                "status": "success",
                "amount": 1000000,
                "currency": "NGN",
                "channel": "card",
                "paid_at": "2024-05-01T10:00:00.000Z",
                "authorization": {
                    "authorization_code": "AUTH_abc",
                    "last4": 4081,
                    "exp_month": 12,
                    "exp_year": 2030,
                    "card_type": "visa",
                    "bank": "TEST BANK",
                    "reusable": True,
                },
            },
        })

        assert event.outcome == ChargeOutcome.SUCCESS
        assert event.data.amount == 1000000
        assert event.data.authorization.last4 == "4081"
        assert event.data.authorization.exp_month == "12"
        assert event.data.authorization.is_saveable
        assert event.data.raw["id"] == 302961

    def test_non_reusable_card_is_not_saveable(self):
        tx = GatewayTransaction.model_validate({
            "reference": "REF-1",
            "authorization": {"authorization_code": "AUTH_abc", "reusable": False},
        })
        assert not tx.authorization.is_saveable

    def test_to_naive_utc(self):
        aware = datetime(2024, 5, 1, 11, 0, tzinfo=timezone(timedelta(hours=1)))
        assert to_naive_utc(aware) == datetime(2024, 5, 1, 10, 0)
        assert to_naive_utc(None) is None


class TestRequests:
    async def test_verify_transaction(self, gateway, paystack):
        paystack.transactions["REF-1"] = {"status": "success", "amount": 1000000, "gateway_response": "Approved"}

        tx = await gateway.verify_transaction("REF-1")

        assert tx.reference == "REF-1"
        assert tx.outcome == ChargeOutcome.SUCCESS
        request = paystack.requests[0]
        assert request.headers["Authorization"] == f"Bearer {SECRET_KEY}"
        assert request.url.path == "/transaction/verify/REF-1"

    async def test_initialize_sends_amount_and_custom_fields(self, gateway, paystack):
        result = await gateway.initialize_transaction(
            email="ada@example.com",
            amount_minor=1000000,
            reference="REF-1",
            metadata={"order_number": "ORD-1", "customer_name": "Ada Obi"},
            channels=["card"],
            callback_url="https://shop.test/payment/verify?reference=REF-1",
        )

        assert result.access_code == "AC_REF-1"
        body = json.loads(paystack.requests[0].content)
        assert body["amount"] == 1000000
        assert body["channels"] == ["card"]
        assert body["callback_url"].endswith("reference=REF-1")
        fields = {f["variable_name"]: f["value"] for f in body["metadata"]["custom_fields"]}
        assert fields == {"order_number": "ORD-1", "customer_name": "Ada Obi"}

    @pytest.mark.parametrize("amount", [0, -100, 100.5, True])
    async def test_initialize_rejects_bad_amounts(self, gateway, paystack, amount):
        with pytest.raises(ValueError):
            await gateway.initialize_transaction("ada@example.com", amount, "REF-1")
        assert paystack.requests == []

    async def test_unknown_reference_is_rejected_without_retry(self, gateway, paystack):
        with pytest.raises(GatewayRejected) as exc_info:
            await gateway.verify_transaction("REF-missing")

        assert exc_info.value.status_code == 400
        assert paystack.calls_to("/transaction/verify") == 1

    async def test_server_errors_are_retried_then_raised(self, gateway, paystack):
        paystack.fail_with = 503

        with pytest.raises(GatewayUnavailable):
            await gateway.verify_transaction("REF-1")

        assert paystack.calls_to("/transaction/verify") == 3

    async def test_rate_limit_is_retryable(self, gateway, paystack):
        paystack.fail_with = 429
        with pytest.raises(GatewayUnavailable):
            await gateway.verify_transaction("REF-1")

    async def test_recovers_after_transient_failure(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(502, text="Bad Gateway")
            return httpx.Response(200, json={"status": True, "data": {"reference": "REF-1", "status": "failed"}})

        tx = await client_for(handler).verify_transaction("REF-1")

        assert tx.outcome == ChargeOutcome.FAILED
        assert len(calls) == 2

    async def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayUnavailable):
            await client_for(handler, max_attempts=2).verify_transaction("REF-1")

    async def test_false_status_in_body_is_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"status": False, "message": "Invalid key"})

        with pytest.raises(GatewayRejected, match="Invalid key"):
            await client_for(handler).verify_transaction("REF-1")

    async def test_missing_secret_key(self, paystack):
        with pytest.raises(GatewayError, match="not configured"):
            await client_for(paystack, secret_key="").verify_transaction("REF-1")
        assert paystack.requests == []

    async def test_charge_authorization(self, gateway, paystack):
        paystack.charge_result = {"status": "success", "authorization": {"authorization_code": "AUTH_abc"}}

        tx = await gateway.charge_authorization("ada@example.com", 500000, "AUTH_abc", "REF-2")

        assert tx.outcome == ChargeOutcome.SUCCESS
        body = json.loads(paystack.requests[0].content)
        assert body["authorization_code"] == "AUTH_abc"
        assert body["amount"] == 500000


class TestHelpers:
    def test_local_fee(self):
        assert calculate_transaction_fee(1000000) == 15000

    def test_local_fee_is_capped(self):
        assert calculate_transaction_fee(50000000) == 200000

    def test_international_fee(self):
        assert calculate_transaction_fee(1000000, international=True) == 49000

    def test_minor_unit_conversion(self):
        assert to_minor_units(10000) == 1000000
        assert to_minor_units(19.99) == 1999
        assert from_minor_units(1000000) == 10000.0

    def test_reference_format(self):
        first = generate_payment_reference()
        second = generate_payment_reference("SHOP")

        assert re.fullmatch(r"FS-\d{13}-[A-Z0-9]{7}", first)
        assert second.startswith("SHOP-")
        assert first != generate_payment_reference()

    def test_validate_gateway_config(self):
        valid = validate_gateway_config(
            Settings(paystack_secret_key="sk_test_x", paystack_public_key="pk_test_x")
        )
        invalid = validate_gateway_config(
            Settings(paystack_secret_key="wrong", paystack_public_key="")
        )

        assert valid == {"is_valid": True, "errors": [], "environment": "test"}
        assert invalid["is_valid"] is False
        assert "Invalid PAYSTACK_SECRET_KEY format" in invalid["errors"]
        assert "PAYSTACK_PUBLIC_KEY is not configured" in invalid["errors"]
