"""
Payment gateway adapter.

``PaymentGateway`` is the contract the reconciliation engine and the booking
flow depend on. ``CashfreeGateway`` implements it against the Cashfree
Payments PG API. The engine receives an instance through its constructor,
so tests swap in an in-memory gateway without touching the network.
"""
import base64
import datetime
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx

from .exceptions import GatewayRejected, GatewayUnavailable, OrderNotFound

logger = logging.getLogger("booking_service")

CASHFREE_BASE_URLS = {
    "PRODUCTION": "https://api.cashfree.com/pg",
    "SANDBOX": "https://sandbox.cashfree.com/pg",
}


@dataclass(frozen=True)
class Customer:
    customer_id: str
    name: str
    email: str
    phone: str


@dataclass(frozen=True)
class CallbackUrls:
    return_url: str
    notify_url: str


@dataclass(frozen=True)
class OrderSession:
    session_id: str
    initial_status: str


@dataclass(frozen=True)
class OrderStatusReport:
    gateway_status: str
    payment_method: Optional[str] = None
    paid_at: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class WebhookEvidence:
    """Raw webhook material, exactly as received."""
    payload: bytes
    signature: Optional[str]
    timestamp: str = field(default="")


class PaymentGateway(ABC):

    @abstractmethod
    def create_order(
            self,
            order_id: str,
            amount: Decimal,
            currency: str,
            customer: Customer,
            callback_urls: CallbackUrls,
    ) -> OrderSession:
        """Creates the remote order. Raises GatewayUnavailable or GatewayRejected."""

    @abstractmethod
    def verify_order(self, order_id: str) -> OrderStatusReport:
        """Read-only status query. Raises GatewayUnavailable, OrderNotFound or GatewayRejected."""

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str, timestamp: str = "") -> bool:
        """Pure check of a webhook signature, no network."""


def parse_gateway_time(value) -> Optional[datetime.datetime]:
    """Parses an ISO-8601 gateway timestamp into naive UTC, or None."""
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable gateway timestamp: {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return parsed


class CashfreeGateway(PaymentGateway):

    def __init__(
            self,
            client_id: str,
            client_secret: str,
            environment: str = "SANDBOX",
            api_version: str = "2023-08-01",
            timeout: float = 10.0,
            http_client: Optional[httpx.Client] = None,
    ):
        self._client_secret = client_secret
        self._client = http_client or httpx.Client(
            base_url=CASHFREE_BASE_URLS.get(environment.upper(), CASHFREE_BASE_URLS["SANDBOX"]),
            timeout=timeout,
        )
        self._headers = {
            "x-api-version": api_version,
            "x-client-id": client_id,
            "x-client-secret": client_secret,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @classmethod
    def from_settings(cls, settings) -> "CashfreeGateway":
        return cls(
            client_id=settings.CASHFREE_CLIENT_ID,
            client_secret=settings.CASHFREE_CLIENT_SECRET,
            environment=settings.CASHFREE_ENVIRONMENT,
            api_version=settings.CASHFREE_API_VERSION,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"Cashfree timed out on {method} {path}") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"Cashfree unreachable on {method} {path}: {e}") from e

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Cashfree returned {response.status_code} on {method} {path}",
                details={"status_code": response.status_code},
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            return response.json().get("message") or default
        except (ValueError, AttributeError):
            return default

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnavailable("Invalid response from Cashfree API") from e
        if not isinstance(data, dict):
            raise GatewayUnavailable("Invalid response format from Cashfree")
        return data

    def create_order(self, order_id, amount, currency, customer, callback_urls) -> OrderSession:
        body = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone,
            },
            "order_meta": {
                "return_url": callback_urls.return_url,
                "notify_url": callback_urls.notify_url,
            },
            "order_note": "Consultation booking",
        }
        response = self._request("POST", "/orders", json=body)
        if response.status_code >= 400:
            raise GatewayRejected(
                f"Failed to create order: {self._error_message(response, 'rejected by gateway')}",
                details={"status_code": response.status_code, "order_id": order_id},
            )
        data = self._json(response)
        if not data.get("payment_session_id"):
            raise GatewayUnavailable("Cashfree response is missing payment_session_id", details={"order_id": order_id})

        logger.info(f"Created Cashfree order {order_id} ({data.get('order_status')})")
        return OrderSession(
            session_id=data["payment_session_id"],
            initial_status=data.get("order_status") or "PENDING",
        )

    def verify_order(self, order_id: str) -> OrderStatusReport:
        response = self._request("GET", f"/orders/{order_id}")
        if response.status_code == 404:
            raise OrderNotFound(f"Cashfree has no order {order_id}", details={"order_id": order_id})
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Failed to verify order"),
                details={"status_code": response.status_code, "order_id": order_id},
            )
        data = self._json(response)
        if not data.get("order_status"):
            raise GatewayUnavailable("Invalid response format from Cashfree", details={"order_id": order_id})

        return OrderStatusReport(
            gateway_status=data["order_status"],
            payment_method=data.get("payment_method") or None,
            paid_at=parse_gateway_time(data.get("payment_time")),
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str, timestamp: str = "") -> bool:
        if not signature_header or not self._client_secret:
            return False
        expected = sign_webhook_payload(self._client_secret, raw_payload, timestamp)
        return hmac.compare_digest(expected.encode("ascii"), signature_header.encode("utf-8"))


def sign_webhook_payload(secret: str, raw_payload: bytes, timestamp: str = "") -> str:
    """Produces the signature Cashfree would send for this payload."""
    digest = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + raw_payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")
