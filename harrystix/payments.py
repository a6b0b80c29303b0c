from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, TypedDict
import os
import uuid
import hmac
import hashlib
import base64
import json

import stripe
import structlog

from .errors import GatewayError

logger = structlog.get_logger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class SetupIntentResult(TypedDict):
    client_secret: str


class ChargeResult(TypedDict):
    intent_id: str
    status: str


class PaymentAdapter(ABC):
    """Everything the pre-order core needs from a card gateway.

    Implementations raise GatewayError for declines, invalid payment
    methods, timeouts and transport failures alike.
    """

    @abstractmethod
    async def create_customer(
        self, email: str, name: str, metadata: Dict[str, str]
    ) -> str: ...

    @abstractmethod
    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> None: ...

    @abstractmethod
    async def create_setup_intent(
        self, customer_id: str
    ) -> SetupIntentResult: ...

    @abstractmethod
    async def charge_off_session(
        self, *, customer_id: str, payment_method_id: str,
        amount_minor_units: int, currency: str, metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | anything else is ignored
    def event_kind(self, event: dict) -> str:
        etype = event.get("type", "")
        if etype == "payment_intent.succeeded":
            return "succeeded"
        if etype == "payment_intent.payment_failed":
            return "failed"
        return etype

    # (pre_order_id, payment_intent_id)
    def event_ids(self, event: dict) -> Tuple[Optional[str], Optional[str]]:
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        return metadata.get("pre_order_id"), obj.get("id")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """In-process gateway for development and tests.

    Payment methods whose id contains "Declined" are refused, mirroring
    Stripe's pm_card_chargeDeclined test card.
    """

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.attached: Dict[str, str] = {}
        self.charges: List[Dict[str, Any]] = []
        self._by_idem: Dict[str, ChargeResult] = {}

    async def create_customer(
        self, email: str, name: str, metadata: Dict[str, str]
    ) -> str:
        cid = f"mock_cus_{uuid.uuid4().hex[:16]}"
        self.customers[cid] = {
            "email": email, "name": name, "metadata": dict(metadata)
        }
        return cid

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> None:
        if customer_id not in self.customers:
            raise GatewayError("No such customer", code="resource_missing")
        self.attached[payment_method_id] = customer_id

    async def create_setup_intent(self, customer_id: str) -> SetupIntentResult:
        seti = f"mock_seti_{uuid.uuid4().hex[:16]}"
        return {"client_secret": f"{seti}_secret_{uuid.uuid4().hex[:8]}"}

    async def charge_off_session(
        self, *, customer_id: str, payment_method_id: str,
        amount_minor_units: int, currency: str, metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        if idempotency_key and idempotency_key in self._by_idem:
            return self._by_idem[idempotency_key]
        if "Declined" in payment_method_id:
            raise GatewayError("Your card was declined.", code="card_declined")
        if amount_minor_units <= 0:
            raise GatewayError("Invalid amount", code="amount_too_small")
        result: ChargeResult = {
            "intent_id": f"mock_pi_{uuid.uuid4().hex[:16]}",
            "status": "processing",
        }
        self.charges.append({
            "intent_id": result["intent_id"],
            "customer_id": customer_id,
            "payment_method_id": payment_method_id,
            "amount": amount_minor_units,
            "currency": currency,
            "metadata": dict(metadata),
        })
        if idempotency_key:
            self._by_idem[idempotency_key] = result
        return result

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, kind: str, intent_id: str,
                    metadata: Dict[str, str]) -> Tuple[bytes, Dict[str, str]]:
        etype = {
            "succeeded": "payment_intent.succeeded",
            "failed": "payment_intent.payment_failed",
        }[kind]
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": etype,
            "data": {"object": {"id": intent_id, "metadata": metadata}},
        }
        payload = json.dumps(event).encode()
        headers = {
            "x-mockpay-signature": self.sign(payload),
            "content-type": "application/json",
        }
        return payload, headers

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise GatewayError("Invalid signature", code="bad_signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise GatewayError("Invalid JSON", code="bad_payload")


# ----------------------------
# Stripe implementation
# ----------------------------
def _gateway_error(e: stripe.StripeError) -> GatewayError:
    code = getattr(e, "code", None) or type(e).__name__
    message = getattr(e, "user_message", None) or str(e)
    return GatewayError(message, code=code)


class StripePay(PaymentAdapter):

    def __init__(self, api_key: str, webhook_secret: str,
                 timeout: float = 10.0) -> None:
        stripe.api_key = api_key
        # timeouts surface as stripe.APIConnectionError
        stripe.default_http_client = stripe.HTTPXClient(timeout=timeout)
        self.webhook_secret = webhook_secret

    async def create_customer(
        self, email: str, name: str, metadata: Dict[str, str]
    ) -> str:
        try:
            customer = await stripe.Customer.create_async(
                email=email, name=name, metadata=metadata
            )
        except stripe.StripeError as e:
            raise _gateway_error(e) from e
        return customer.id

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> None:
        try:
            await stripe.PaymentMethod.attach_async(
                payment_method_id, customer=customer_id
            )
        except stripe.StripeError as e:
            raise _gateway_error(e) from e

    async def create_setup_intent(self, customer_id: str) -> SetupIntentResult:
        try:
            intent = await stripe.SetupIntent.create_async(
                customer=customer_id, usage="off_session"
            )
        except stripe.StripeError as e:
            raise _gateway_error(e) from e
        return {"client_secret": intent.client_secret}

    async def charge_off_session(
        self, *, customer_id: str, payment_method_id: str,
        amount_minor_units: int, currency: str, metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        params: Dict[str, Any] = dict(
            amount=amount_minor_units,
            currency=currency,
            customer=customer_id,
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            metadata=metadata,
        )
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = await stripe.PaymentIntent.create_async(**params)
        except stripe.StripeError as e:
            raise _gateway_error(e) from e
        return {"intent_id": intent.id, "status": intent.status}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise GatewayError("Missing signature", code="bad_signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode(), sig, self.webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            raise GatewayError(str(e), code="bad_signature") from e
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise GatewayError("Invalid JSON", code="bad_payload")


def new_adapter(provider: Optional[str] = None) -> PaymentAdapter:
    provider = (provider or os.getenv("PAYMENT_PROVIDER", "mock")).lower()
    if provider == "stripe":
        api_key = os.environ.get("STRIPE_SECRET_KEY")
        if not api_key:
            raise RuntimeError("PAYMENT_PROVIDER=stripe needs STRIPE_SECRET_KEY")
        return StripePay(
            api_key=api_key,
            webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            timeout=float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
        )
    logger.info("payment_adapter_mock")
    return MockPay()
