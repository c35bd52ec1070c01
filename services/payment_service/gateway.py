"""
Paystack gateway client.

All outbound calls to Paystack and inbound webhook signature checks go
through this module. Gateway vocabulary (transaction statuses, webhook
event names) is mapped to ChargeOutcome here and nowhere else.
"""
import hashlib
import hmac
import logging
import secrets
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import Settings

from .errors import GatewayError, GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)

# Local cards: 1.5% capped at NGN 2,000; international: 3.9% + NGN 100 (kobo)
LOCAL_FEE_RATE = 0.015
LOCAL_FEE_CAP = 200000
INTERNATIONAL_FEE_RATE = 0.039
INTERNATIONAL_FEE_FLAT = 10000

RETRYABLE_STATUS_CODES = {401, 403, 408, 429}


class ChargeOutcome(str, Enum):
    """Internal vocabulary for what the gateway says happened to a charge."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    PROCESSING = "processing"

    @property
    def is_terminal(self) -> bool:
        return self in (ChargeOutcome.SUCCESS, ChargeOutcome.FAILED)


GATEWAY_STATUS_MAP: Dict[str, ChargeOutcome] = {
    "success": ChargeOutcome.SUCCESS,
    "failed": ChargeOutcome.FAILED,
    "reversed": ChargeOutcome.FAILED,
    "pending": ChargeOutcome.PENDING,
    "abandoned": ChargeOutcome.PENDING,
    "ongoing": ChargeOutcome.PENDING,
    "queued": ChargeOutcome.PENDING,
    "processing": ChargeOutcome.PROCESSING,
}

WEBHOOK_EVENT_MAP: Dict[str, ChargeOutcome] = {
    "charge.success": ChargeOutcome.SUCCESS,
    "charge.failed": ChargeOutcome.FAILED,
    "charge.pending": ChargeOutcome.PROCESSING,
}


def outcome_from_gateway_status(status: Optional[str]) -> ChargeOutcome:
    """Map a Paystack transaction status to a ChargeOutcome."""
    outcome = GATEWAY_STATUS_MAP.get((status or "").lower())
    if outcome is None:
        logger.warning(f"Unknown gateway status {status!r}, treating as pending")
        return ChargeOutcome.PENDING
    return outcome


def outcome_from_webhook_event(event: str) -> Optional[ChargeOutcome]:
    """Map a webhook event name to a ChargeOutcome; None if we do not handle it."""
    return WEBHOOK_EVENT_MAP.get(event)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize gateway timestamps to the naive UTC datetimes stored in the database."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CardAuthorization(BaseModel):
    """Card authorization returned with a successful charge."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    authorization_code: Optional[str] = None
    card_type: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    bank: Optional[str] = None
    brand: Optional[str] = None
    channel: Optional[str] = None
    reusable: bool = False

    @property
    def is_saveable(self) -> bool:
        return bool(self.reusable and self.authorization_code)


class GatewayTransaction(BaseModel):
    """Transaction data as reported by verify, charge or a webhook."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    reference: str
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_response: Optional[str] = None
    message: Optional[str] = None
    authorization: Optional[CardAuthorization] = None
    customer: Optional[Dict[str, Any]] = None

    @property
    def outcome(self) -> ChargeOutcome:
        return outcome_from_gateway_status(self.status)

    @property
    def raw(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class InitializedTransaction(BaseModel):
    authorization_url: str
    access_code: str
    reference: str


class WebhookEvent(BaseModel):
    """Parsed webhook body: {"event": ..., "data": {...}}."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    event: str
    data: GatewayTransaction

    @property
    def outcome(self) -> Optional[ChargeOutcome]:
        return outcome_from_webhook_event(self.event)


class PaystackClient:
    """Authenticated client for the Paystack REST API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        base_url: str = "https://api.paystack.co",
        max_attempts: int = 3,
        retry_wait: float = 1.0,
    ):
        """
        Args:
            http_client: Shared httpx client, owned by the caller
            secret_key: Paystack secret key (sk_...)
            webhook_secret: HMAC secret for webhooks; Paystack uses the secret key
            base_url: Paystack API base URL
            max_attempts: Attempts for calls failing with GatewayUnavailable
            retry_wait: Multiplier for the exponential backoff, in seconds
        """
        self.http_client = http_client
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret or secret_key
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> "PaystackClient":
        return cls(
            http_client=http_client,
            secret_key=settings.paystack_secret_key,
            webhook_secret=settings.webhook_secret,
            base_url=settings.paystack_base_url,
            max_attempts=settings.gateway_max_attempts,
        )

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        channels: Optional[list[str]] = None,
        callback_url: Optional[str] = None,
    ) -> InitializedTransaction:
        """
        Initialize a transaction and get the hosted checkout URL.

        Args:
            email: Customer email
            amount_minor: Amount in kobo; conversion is the caller's job
            reference: Our unique reference for this attempt
            metadata: Extra data echoed back by the gateway
            channels: Payment channels to offer
            callback_url: Where the gateway redirects after payment
        """
        _check_amount(amount_minor)
        metadata = dict(metadata or {})
        metadata["custom_fields"] = [
            {
                "display_name": "Order Number",
                "variable_name": "order_number",
                "value": metadata.get("order_number"),
            },
            {
                "display_name": "Customer Name",
                "variable_name": "customer_name",
                "value": metadata.get("customer_name"),
            },
        ]

        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "metadata": metadata,
            "channels": channels or ["card", "bank", "bank_transfer"],
        }
        if callback_url:
            payload["callback_url"] = callback_url

        data = await self._request("POST", "/transaction/initialize", json=payload)
        return _parse(InitializedTransaction, data)

    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        """Verify a transaction; pending or abandoned results are returned, not raised."""
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return _parse(GatewayTransaction, data)

    async def charge_authorization(
        self,
        email: str,
        amount_minor: int,
        authorization_code: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayTransaction:
        """Charge a saved card authorization."""
        _check_amount(amount_minor)
        payload = {
            "email": email,
            "amount": amount_minor,
            "authorization_code": authorization_code,
            "reference": reference,
            "metadata": metadata or {},
        }
        data = await self._request("POST", "/transaction/charge_authorization", json=payload)
        return _parse(GatewayTransaction, data)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Check X-Paystack-Signature: hex HMAC-SHA512 of the exact request body."""
        if not signature or not self.webhook_secret:
            return False

        expected = hmac.new(
            self.webhook_secret.encode(),
            raw_body,
            hashlib.sha512,
        ).hexdigest()
        return hmac.compare_digest(expected.encode(), signature.strip().encode())

    async def _request(self, method: str, endpoint: str, json: Optional[dict] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise GatewayError("Paystack secret key not configured")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying Paystack {method} {endpoint} "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.max_attempts})"
                    )
                return await self._send(method, endpoint, json)

        raise GatewayUnavailable(f"Paystack {method} {endpoint} was not attempted")

    async def _send(self, method: str, endpoint: str, json: Optional[dict]) -> Dict[str, Any]:
        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{endpoint}",
                json=json,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"Paystack {method} {endpoint} transport error: {e!r}")
            raise GatewayUnavailable(f"Paystack unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        message = body.get("message") or f"Paystack returned HTTP {response.status_code}"

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            logger.warning(f"Paystack {method} {endpoint} failed: {response.status_code} {message}")
            raise GatewayUnavailable(message, status_code=response.status_code)

        if response.status_code >= 400 or not body.get("status"):
            logger.warning(f"Paystack {method} {endpoint} rejected: {response.status_code} {message}")
            raise GatewayRejected(message, status_code=response.status_code)

        return body.get("data") or {}


def _parse(model: type[BaseModel], data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise GatewayUnavailable(f"Unexpected Paystack response: {e}") from e


def _check_amount(amount_minor: int):
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
        raise ValueError(f"amount_minor must be a positive integer, got {amount_minor!r}")


def calculate_transaction_fee(amount_minor: int, international: bool = False) -> int:
    """Paystack fee in kobo for an amount in kobo."""
    if international:
        return round(amount_minor * INTERNATIONAL_FEE_RATE) + INTERNATIONAL_FEE_FLAT
    return min(round(amount_minor * LOCAL_FEE_RATE), LOCAL_FEE_CAP)


def to_minor_units(amount: float) -> int:
    """Naira to kobo."""
    return int(round(amount * 100))


def from_minor_units(amount_minor: int) -> float:
    """Kobo to Naira."""
    return amount_minor / 100


def generate_payment_reference(prefix: str = "FS") -> str:
    """Unique reference like FS-1718000000000-K3J9Q2Z."""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def validate_gateway_config(settings: Settings) -> Dict[str, Any]:
    """Check Paystack keys; returns {"is_valid", "errors", "environment"}."""
    errors = []
    secret_key = settings.paystack_secret_key
    public_key = settings.paystack_public_key

    if not secret_key:
        errors.append("PAYSTACK_SECRET_KEY is not configured")
    elif not secret_key.startswith("sk_"):
        errors.append("Invalid PAYSTACK_SECRET_KEY format")

    if not public_key:
        errors.append("PAYSTACK_PUBLIC_KEY is not configured")
    elif not public_key.startswith("pk_"):
        errors.append("Invalid PAYSTACK_PUBLIC_KEY format")

    return {
        "is_valid": not errors,
        "errors": errors,
        "environment": "test" if "test" in secret_key else "live",
    }
