"""Payment gateway adapters.

All Razorpay wire details live here: the create-order call, the minor-unit
amount encoding and the callback signature scheme. The rest of the service
only sees ``RemoteOrder`` and a boolean signature check.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import httpx

from shared.utils import settings, to_minor_units
from checkout_service.errors import GatewayUnavailable, GatewayRejected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteOrder:
    """Order handle registered with the gateway."""

    intent_id: str
    gateway_order_ref: Optional[str]
    amount: Decimal
    currency: str


def callback_payload(gateway_order_id: str, gateway_payment_id: str) -> str:
    return f"{gateway_order_id}|{gateway_payment_id}"


def sign_payload(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload, signature, secret: str) -> bool:
    """Constant-time HMAC-SHA256 check; any malformed input is simply False."""
    if not isinstance(payload, str) or not isinstance(signature, str):
        return False
    expected = sign_payload(payload, secret)
    if len(signature) != len(expected):
        return False
    try:
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii"))
    except UnicodeEncodeError:
        return False


class PaymentGateway(ABC):
    """Contract every gateway adapter implements."""

    key_id: str

    @abstractmethod
    async def create_remote_order(self, amount: Decimal, currency: str, receipt: Optional[str] = None) -> RemoteOrder:
        """Register an order for ``amount``; no money moves yet."""
        ...

    @abstractmethod
    def verify_callback(self, payload: str, signature: str) -> bool:
        """True only if ``signature`` authenticates ``payload``."""
        ...


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str = settings.RAZORPAY_KEY_ID,
                 key_secret: str = settings.RAZORPAY_KEY_SECRET,
                 base_url: str = settings.RAZORPAY_BASE_URL,
                 timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    async def create_remote_order(self, amount: Decimal, currency: str, receipt: Optional[str] = None) -> RemoteOrder:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt or f"rcpt_{uuid4().hex[:20]}",
        }
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                     auth=(self.key_id, self._key_secret),
                                     transport=self.transport) as client:
            try:
                response = await client.post("/v1/orders", json=payload)
                response.raise_for_status()
                body = response.json()
            except httpx.TimeoutException:
                logger.error("Gateway create-order timed out")
                raise GatewayUnavailable("Payment gateway timed out")
            except httpx.RequestError as e:
                logger.error(f"Gateway unreachable: {e}")
                raise GatewayUnavailable()
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500:
                    logger.error(f"Gateway server error {e.response.status_code}")
                    raise GatewayUnavailable()
                logger.warning(f"Gateway rejected create-order with {e.response.status_code}")
                raise GatewayRejected()
            except ValueError:
                logger.error("Gateway returned a non-JSON body")
                raise GatewayUnavailable()

        order_id = body.get("id") if isinstance(body, dict) else None
        if not order_id:
            logger.error("Gateway response is missing the order id")
            raise GatewayUnavailable()

        return RemoteOrder(
            intent_id=order_id,
            gateway_order_ref=body.get("receipt"),
            amount=amount,
            currency=body.get("currency", currency),
        )

    def verify_callback(self, payload: str, signature: str) -> bool:
        return verify_signature(payload, signature, self._key_secret)


class FakeGateway(PaymentGateway):
    """In-process gateway for development and tests.

    Issues ``order_fake_*`` ids and signs callbacks with the same HMAC scheme
    as Razorpay, so the verification path is exercised for real.
    """

    def __init__(self, key_id: str = "rzp_fake_key", key_secret: str = settings.RAZORPAY_KEY_SECRET):
        self.key_id = key_id
        self._key_secret = key_secret
        self.failure: Optional[Exception] = None
        self.calls: list = []

    def configure(self, failure: Optional[Exception] = None) -> None:
        """Make the next create-order calls raise ``failure`` (None to succeed)."""
        self.failure = failure

    async def create_remote_order(self, amount: Decimal, currency: str, receipt: Optional[str] = None) -> RemoteOrder:
        self.calls.append({"method": "create_remote_order", "amount": amount, "currency": currency})
        if self.failure is not None:
            raise self.failure
        return RemoteOrder(
            intent_id=f"order_fake_{uuid4().hex[:14]}",
            gateway_order_ref=receipt,
            amount=amount,
            currency=currency,
        )

    def sign(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        return sign_payload(callback_payload(gateway_order_id, gateway_payment_id), self._key_secret)

    def verify_callback(self, payload: str, signature: str) -> bool:
        return verify_signature(payload, signature, self._key_secret)


def build_gateway(name: str = settings.PAYMENT_GATEWAY) -> PaymentGateway:
    if name == "fake":
        return FakeGateway()
    if name == "razorpay":
        return RazorpayGateway()
    raise ValueError(f"Unknown payment gateway '{name}'")
