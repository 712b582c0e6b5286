"""Client for the external payment API (Stripe-compatible REST API).

Only the calls the fulfillment queue needs are implemented:
- create a subscription for a customer/price
- fetch a payment intent (amount, currency, backing charge)
- fetch a price (unit amount, recurring interval)
- create a refund against a charge

Request bodies are form-encoded with bracket notation for nested values
(metadata[license_key]=..., items[0][price]=...). Every mutating call takes
an idempotency key so that blind retries are safe on the provider side.

Errors:
- PaymentAPIConnectionError: timeouts and transport failures (transient)
- PaymentAPIResponseError: HTTP error responses; 429 and 5xx are transient,
  other 4xx are permanent (see .permanent)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

if TYPE_CHECKING:
    from fulfillq.core.config import PaymentAPISettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Provider recurring interval -> stored billing period
BILLING_PERIODS = {
    "day": "daily",
    "week": "weekly",
    "month": "monthly",
    "year": "yearly",
}


@dataclass(frozen=True)
class PaymentAPIConfig:
    """Configuration for the payment API client."""

    base_url: str
    secret_key: str
    timeout: float = DEFAULT_TIMEOUT
    api_version: str | None = None

    @classmethod
    def from_settings(cls, settings: PaymentAPISettings) -> PaymentAPIConfig:
        """Build client config from application settings."""
        return cls(
            base_url=settings.base_url,
            secret_key=settings.secret_key.get_secret_value(),
            timeout=settings.timeout,
            api_version=settings.api_version,
        )


@dataclass(frozen=True)
class CreatedSubscription:
    """Subscription returned by the provider."""

    id: str
    item_id: str | None
    status: str
    current_period_start: int | None
    current_period_end: int | None
    billing_period: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntent:
    """Payment intent that funded a purchase."""

    id: str
    amount: int
    currency: str
    status: str
    latest_charge: str | None
    customer: str | None = None


@dataclass(frozen=True)
class Price:
    """A recurring price."""

    id: str
    unit_amount: int | None
    currency: str
    billing_period: str | None = None


@dataclass(frozen=True)
class CreatedRefund:
    """Refund returned by the provider."""

    id: str
    status: str
    amount: int
    currency: str


class PaymentAPIError(Exception):
    """Base exception for payment API errors."""

    permanent = False


class PaymentAPIConnectionError(PaymentAPIError):
    """The payment API could not be reached or timed out."""

    pass


class PaymentAPIResponseError(PaymentAPIError):
    """The payment API answered with an error status."""

    def __init__(self, status_code: int, message: str, code: str | None = None) -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(f"Payment API error ({status_code}): {message}")

    @property
    def permanent(self) -> bool:  # type: ignore[override]
        """4xx responses other than rate limiting will not succeed on retry."""
        return 400 <= self.status_code < 500 and self.status_code != 429


def encode_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into bracket-notation form fields.

    Example:
        {"items": [{"price": "p"}], "metadata": {"k": "v"}}
        -> [("items[0][price]", "p"), ("metadata[k]", "v")]
    """
    fields: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            fields.extend(encode_form(value, name))
        elif isinstance(value, list | tuple):
            for index, element in enumerate(value):
                element_name = f"{name}[{index}]"
                if isinstance(element, dict):
                    fields.extend(encode_form(element, element_name))
                else:
                    fields.append((element_name, _form_value(element)))
        else:
            fields.append((name, _form_value(value)))
    return fields


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _billing_period(price: dict[str, Any] | None) -> str | None:
    recurring = (price or {}).get("recurring") or {}
    return BILLING_PERIODS.get(recurring.get("interval", ""))


class PaymentClient:
    """Async client for the payment API.

    Example usage:
        config = PaymentAPIConfig(base_url="https://api.stripe.com", secret_key="sk_test_...")
        async with PaymentClient(config) as client:
            sub = await client.create_subscription(
                customer="cus_123",
                price="price_123",
                quantity=1,
                trial_end=None,
                metadata={"license_key": "KEY-..."},
                idempotency_key="fulfill-q_abc-0",
            )
    """

    def __init__(
        self,
        config: PaymentAPIConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> PaymentClient:
        headers = {"Authorization": f"Bearer {self._config.secret_key}"}
        if self._config.api_version:
            headers["Stripe-Version"] = self._config.api_version
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "PaymentClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        form: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            PaymentAPIConnectionError: On timeout or transport failure.
            PaymentAPIResponseError: On an HTTP error status.
        """
        client = self._get_client()
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        logger.debug("Payment API %s %s", method, path)
        try:
            response = await client.request(
                method,
                path,
                data=dict(encode_form(form)) if form else None,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise PaymentAPIConnectionError(f"Payment API timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise PaymentAPIConnectionError(f"Cannot reach payment API: {e}") from e

        if response.status_code >= 400:
            message, code = self._error_details(response)
            logger.warning(
                "Payment API error: method=%s, path=%s, status=%d, code=%s, message=%s",
                method,
                path,
                response.status_code,
                code,
                message,
            )
            raise PaymentAPIResponseError(response.status_code, message, code)

        try:
            return response.json()
        except ValueError as e:
            raise PaymentAPIResponseError(
                response.status_code, "response body is not valid JSON"
            ) from e

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str | None]:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            return response.text[:200], None
        return error.get("message", "unknown error"), error.get("code")

    async def create_subscription(
        self,
        customer: str,
        price: str,
        quantity: int,
        trial_end: int | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> CreatedSubscription:
        """Create a subscription with a single item.

        Args:
            customer: Provider customer ID.
            price: Provider price ID.
            quantity: Item quantity.
            trial_end: Optional trial end (epoch seconds).
            metadata: Metadata stored on the subscription and its item.
            idempotency_key: Provider-side idempotency key.

        Returns:
            The created (or idempotently replayed) subscription.
        """
        form: dict[str, Any] = {
            "customer": customer,
            "items": [{"price": price, "quantity": quantity, "metadata": metadata}],
            "metadata": metadata,
            "expand": ["items.data.price"],
        }
        if trial_end:
            form["trial_end"] = trial_end

        body = await self._request("POST", "/v1/subscriptions", form, idempotency_key)

        items = (body.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        # Newer API versions moved the period boundaries onto the items
        period_start = body.get("current_period_start", first_item.get("current_period_start"))
        period_end = body.get("current_period_end", first_item.get("current_period_end"))

        subscription = CreatedSubscription(
            id=body["id"],
            item_id=first_item.get("id"),
            status=body.get("status", "active"),
            current_period_start=period_start,
            current_period_end=period_end,
            billing_period=_billing_period(first_item.get("price")),
            metadata=dict(body.get("metadata") or {}),
        )
        logger.info(
            "Subscription created: subscription_id=%s, customer=%s, price=%s, status=%s",
            subscription.id,
            customer,
            price,
            subscription.status,
        )
        return subscription

    async def fetch_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Fetch a payment intent."""
        body = await self._request("GET", f"/v1/payment_intents/{quote(payment_intent_id)}")
        latest_charge = body.get("latest_charge")
        if isinstance(latest_charge, dict):
            latest_charge = latest_charge.get("id")
        return PaymentIntent(
            id=body["id"],
            amount=int(body.get("amount_received") or body.get("amount") or 0),
            currency=body.get("currency", "usd"),
            status=body.get("status", "unknown"),
            latest_charge=latest_charge,
            customer=body.get("customer"),
        )

    async def fetch_price(self, price_id: str) -> Price:
        """Fetch a price."""
        body = await self._request("GET", f"/v1/prices/{quote(price_id)}")
        return Price(
            id=body["id"],
            unit_amount=body.get("unit_amount"),
            currency=body.get("currency", "usd"),
            billing_period=_billing_period(body),
        )

    async def create_refund(
        self,
        charge: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> CreatedRefund:
        """Refund part of a charge.

        Args:
            charge: Provider charge ID.
            amount: Amount in the smallest currency unit.
            metadata: Metadata stored on the refund.
            idempotency_key: Provider-side idempotency key.
        """
        form = {"charge": charge, "amount": amount, "metadata": metadata}
        body = await self._request("POST", "/v1/refunds", form, idempotency_key)
        refund = CreatedRefund(
            id=body["id"],
            status=body.get("status", "pending"),
            amount=int(body.get("amount", amount)),
            currency=body.get("currency", "usd"),
        )
        logger.info(
            "Refund created: refund_id=%s, charge=%s, amount=%d, status=%s",
            refund.id,
            charge,
            refund.amount,
            refund.status,
        )
        return refund
