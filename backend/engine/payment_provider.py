"""
PAYMENT PROVIDER INTEGRATION

Implements:
- PayMongo checkout sessions (amount in centavos, currency PHP)
- Mock provider for local development (ids prefixed mock_)
- Webhook signature verification (Paymongo-Signature: t=..,te=..,li=..)
- Webhook payload normalization into WebhookEvent

RULES:
- Provider calls never touch the ledger or application status; the
  disbursement orchestrator owns all state changes
- Use mock provider if PAYMENT_MOCK_ENABLED or no secret key configured
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import hashlib
import hmac
import logging
import os
import uuid

import httpx

from engine.exceptions import PaymentProviderError, WebhookSignatureError
from engine.financial_precision import from_minor_units, to_float, to_minor_units

logger = logging.getLogger(__name__)

PAYMONGO_BASE_URL = "https://api.paymongo.com/v1"
DEFAULT_FRONTEND_URL = "http://localhost:5173"

SUCCESS_EVENTS = ("payment.paid", "checkout_session.payment.paid")
FAILURE_EVENTS = ("payment.failed", "checkout_session.payment.failed")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CheckoutSession:
    session_id: str
    checkout_url: str
    reference_number: str
    amount: float
    provider: str
    status: str = "pending"


@dataclass
class WebhookEvent:
    event_type: str
    payment_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    application_id: Optional[str] = None
    transaction_reference: Optional[str] = None
    amount: Optional[float] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.event_type in SUCCESS_EVENTS

    @property
    def is_failure(self) -> bool:
        return self.event_type in FAILURE_EVENTS

    def identifiers(self) -> Dict[str, Optional[str]]:
        return {
            "application_id": self.application_id,
            "checkout_session_id": self.checkout_session_id,
            "transaction_reference": self.transaction_reference,
        }


# =============================================================================
# PROVIDER ABSTRACTION
# =============================================================================

class PaymentProvider(ABC):
    """Abstract base class for payment providers"""

    name = "abstract"

    @abstractmethod
    async def create_checkout_session(
        self,
        application: Dict[str, Any],
        amount,
        transaction_reference: str,
        payment_method: str
    ) -> CheckoutSession:
        """Open a hosted checkout for the grant amount"""
        pass


class MockPaymentProvider(PaymentProvider):
    """Mock provider for local development and tests"""

    name = "mock"

    def __init__(self, frontend_url: Optional[str] = None, fail_with: Optional[str] = None):
        self.frontend_url = frontend_url or os.environ.get("FRONTEND_URL", DEFAULT_FRONTEND_URL)
        self.fail_with = fail_with
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def create_checkout_session(self, application, amount, transaction_reference, payment_method):
        if self.fail_with:
            logger.warning(f"[PAYMENT:MOCK] Simulated failure: {self.fail_with}")
            raise PaymentProviderError(self.fail_with, {"provider": self.name})

        session_id = f"mock_{uuid.uuid4().hex[:14]}"
        application_number = application.get("application_number", str(application.get("_id")))
        self.sessions[session_id] = {
            "application_id": str(application["_id"]),
            "amount": to_float(amount),
            "transaction_reference": transaction_reference,
        }
        logger.info(f"[PAYMENT:MOCK] Created checkout {session_id} for {application_number}")
        return CheckoutSession(
            session_id=session_id,
            checkout_url=f"{self.frontend_url}/payment/mock-checkout/{session_id}",
            reference_number=f"MOCK-{application_number}",
            amount=to_float(amount),
            provider=self.name
        )


class PayMongoProvider(PaymentProvider):
    """PayMongo checkout sessions over the REST API"""

    name = "paymongo"

    def __init__(
        self,
        secret_key: str,
        base_url: Optional[str] = None,
        frontend_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.secret_key = secret_key
        self.base_url = (base_url or os.environ.get("PAYMONGO_BASE_URL", PAYMONGO_BASE_URL)).rstrip("/")
        self.frontend_url = (frontend_url or os.environ.get("FRONTEND_URL", DEFAULT_FRONTEND_URL)).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @staticmethod
    def payment_method_types(payment_method: str):
        methods = ["card"]
        method = (payment_method or "").lower()
        if method == "gcash":
            methods.append("gcash")
        elif method in ("paymaya", "maya"):
            methods.append("paymaya")
        elif method == "grab_pay":
            methods.append("grab_pay")
        return methods

    def build_checkout_payload(self, application, amount, transaction_reference, payment_method) -> Dict[str, Any]:
        application_id = str(application["_id"])
        application_number = application.get("application_number", application_id)
        centavos = to_minor_units(amount)
        return {
            "data": {
                "attributes": {
                    "amount": centavos,
                    "currency": "PHP",
                    "description": f"Scholarship Grant - Application #{application_number}",
                    "reference_number": transaction_reference,
                    "line_items": [{
                        "name": f"Scholarship Grant - {application_number}",
                        "quantity": 1,
                        "amount": centavos,
                        "currency": "PHP",
                    }],
                    "payment_method_types": self.payment_method_types(payment_method),
                    "success_url": f"{self.frontend_url}/admin/school-aid/payment/success?application_id={application_id}",
                    "cancel_url": f"{self.frontend_url}/admin/school-aid/payment/cancel?application_id={application_id}",
                    "metadata": {
                        "application_id": application_id,
                        "application_number": application_number,
                        "student_id": str(application.get("student_id")),
                        "transaction_reference": transaction_reference,
                    },
                }
            }
        }

    async def create_checkout_session(self, application, amount, transaction_reference, payment_method):
        payload = self.build_checkout_payload(application, amount, transaction_reference, payment_method)
        logger.info(
            f"[PAYMENT] Creating PayMongo checkout for application {application['_id']} "
            f"amount={to_float(amount)}"
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                auth=(self.secret_key, ""),
                transport=self.transport
            ) as client:
                response = await client.post(f"{self.base_url}/checkout_sessions", json=payload)
        except httpx.TimeoutException:
            logger.error("[PAYMENT] PayMongo checkout timeout")
            raise PaymentProviderError("Payment provider timed out", {"provider": self.name})
        except httpx.HTTPError as e:
            logger.error(f"[PAYMENT] PayMongo request failed: {e}")
            raise PaymentProviderError(f"Payment provider unreachable: {e}", {"provider": self.name})

        if response.status_code >= 400:
            logger.error(f"[PAYMENT] PayMongo error: {response.status_code} - {response.text}")
            raise PaymentProviderError(
                f"Payment provider rejected checkout ({response.status_code})",
                {"provider": self.name, "status_code": response.status_code}
            )

        data = response.json()["data"]
        attributes = data.get("attributes", {})
        return CheckoutSession(
            session_id=data["id"],
            checkout_url=attributes.get("checkout_url", ""),
            reference_number=attributes.get("reference_number") or transaction_reference,
            amount=to_float(amount),
            provider=self.name
        )


def create_payment_provider() -> PaymentProvider:
    """Select the provider from PAYMENT_PROVIDER / PAYMENT_MOCK_ENABLED / PAYMONGO_SECRET_KEY."""
    provider = os.environ.get("PAYMENT_PROVIDER", "paymongo").lower()
    secret_key = os.environ.get("PAYMONGO_SECRET_KEY")

    if provider == "mock" or _env_flag("PAYMENT_MOCK_ENABLED"):
        logger.info("[PAYMENT] Using mock payment provider")
        return MockPaymentProvider()
    if not secret_key:
        logger.warning("[PAYMENT] PAYMONGO_SECRET_KEY not set, falling back to mock provider")
        return MockPaymentProvider()
    return PayMongoProvider(secret_key)


# =============================================================================
# WEBHOOKS
# =============================================================================

def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(header: Optional[str], body: bytes, secret: Optional[str]) -> bool:
    """
    Verify a Paymongo-Signature header against the raw request body.

    Returns True when no webhook secret is configured (verification disabled).

    Raises:
        WebhookSignatureError: header missing, malformed or not matching
    """
    if not secret:
        logger.warning("[PAYMENT] PAYMONGO_WEBHOOK_SECRET not set, skipping signature verification")
        return True
    if not header:
        raise WebhookSignatureError("Missing Paymongo-Signature header")

    parts = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key:
            parts[key] = value

    timestamp = parts.get("t")
    if not timestamp:
        raise WebhookSignatureError("Malformed Paymongo-Signature header")

    expected = compute_signature(secret, timestamp, body)
    for key in ("te", "li"):
        candidate = parts.get(key)
        if candidate and hmac.compare_digest(candidate, expected):
            return True

    logger.warning("[PAYMENT] Webhook signature mismatch")
    raise WebhookSignatureError("Webhook signature does not match")


def parse_webhook_event(payload: Dict[str, Any]) -> WebhookEvent:
    """
    Normalize the nested PayMongo event structure:
        {data: {attributes: {type, data: {id, attributes: {...}}}}}
    """
    event = payload.get("data", payload) if isinstance(payload, dict) else {}
    event_attributes = event.get("attributes", {}) or {}

    event_type = (
        event_attributes.get("type")
        or event.get("type")
        or payload.get("type")
        or "unknown"
    )

    resource = event_attributes.get("data") or event.get("data") or {}
    resource_id = resource.get("id")
    attributes = resource.get("attributes", {}) or {}
    metadata = attributes.get("metadata") or {}

    checkout_session_id = attributes.get("checkout_session_id")
    payment_id = None
    if resource_id and (event_type.startswith("checkout_session") or str(resource_id).startswith("cs_")):
        checkout_session_id = checkout_session_id or resource_id
        payments = attributes.get("payments") or []
        if payments:
            payment_id = payments[0].get("id")
    else:
        payment_id = resource_id

    amount = attributes.get("amount")
    failure_reason = (
        attributes.get("failed_message")
        or (attributes.get("last_payment_error") or {}).get("failed_message")
        or attributes.get("failed_code")
    )

    return WebhookEvent(
        event_type=event_type,
        payment_id=payment_id,
        checkout_session_id=checkout_session_id,
        application_id=metadata.get("application_id"),
        transaction_reference=metadata.get("transaction_reference") or attributes.get("reference_number"),
        amount=to_float(from_minor_units(amount)) if isinstance(amount, (int, float)) else None,
        failure_reason=failure_reason,
        raw=payload
    )
