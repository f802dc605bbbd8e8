"""Provider adapters behind the uniform gateway contract.

Each adapter performs outbound HTTP only. Status words are translated by
`normalize_provider_status`; applying the result is the ledger's job.
"""

import re
import time
from typing import Any, Callable, Protocol

import httpx
import jwt

from paylink.common.config import settings
from paylink.common.errors import InvalidRequest, NotSupported, ProviderRejected, ProviderUnavailable
from paylink.common.logging import logger
from paylink.common.metrics import provider_errors_total, provider_request_seconds, retries_total
from paylink.common.tracing import get_tracer
from paylink.services.gateways.schemas import (
    CheckoutSession,
    Outcome,
    PayoutRequest,
    ProviderCheckout,
    ProviderStatus,
    ReturnUrls,
    normalize_provider_status,
)

tracer = get_tracer(__name__)

SANTIMPAY_PRODUCTION_URL = "https://services.santimpay.com/api/v1/gateway"
SANTIMPAY_TEST_URL = "https://testnet.santimpay.com/api/v1/gateway"


class GatewayAdapter(Protocol):
    """Capability contract every provider variant satisfies."""

    name: str

    def initialize(self, checkout: ProviderCheckout, urls: ReturnUrls) -> CheckoutSession: ...

    def fetch_status(self, reference: str) -> ProviderStatus: ...

    def payout(self, request: PayoutRequest) -> dict[str, Any]: ...


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw_text": response.text}
    return body if isinstance(body, dict) else {"data": body}


def send_request(
    client: httpx.Client | None,
    provider: str,
    operation: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send one provider request, mapping transport failures and 5xx to `ProviderUnavailable`.

    Without an injected client a short-lived one is opened and closed around
    the call.
    """

    with tracer.start_as_current_span(f"gateway.{provider}.{operation}"):
        start = time.perf_counter()
        try:
            if client is not None:
                response = client.request(method, url, **kwargs)
            else:
                with httpx.Client(timeout=settings.provider_timeout_seconds) as owned:
                    response = owned.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            provider_errors_total.labels(
                service=settings.service_name, provider=provider, operation=operation, error_type="transport"
            ).inc()
            raise ProviderUnavailable(f"{provider} {operation} failed: {exc}", provider=provider) from exc
        finally:
            provider_request_seconds.labels(
                service=settings.service_name, provider=provider, operation=operation
            ).observe(max(0.0, time.perf_counter() - start))
    if response.status_code >= 500:
        provider_errors_total.labels(
            service=settings.service_name, provider=provider, operation=operation, error_type="server"
        ).inc()
        raise ProviderUnavailable(
            f"{provider} {operation} returned HTTP {response.status_code}", provider=provider
        )
    return response


def poll_with_retries(
    provider: str,
    reference: str,
    fetch_once: Callable[[], ProviderStatus],
    retries: int,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> ProviderStatus:
    """Retry transient status failures, then degrade to an explicit unknown outcome."""

    last_error = "no attempt made"
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            return fetch_once()
        except ProviderUnavailable as exc:
            last_error = exc.message
            if attempt == attempts:
                break
            retries_total.labels(service=settings.service_name, dependency=provider).inc()
            # Exponential backoff: base, 2x base, 4x base.
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "provider status retry provider=%s reference=%s attempt=%s backoff_s=%s",
                provider,
                reference,
                attempt,
                delay,
            )
            sleep(delay)
        except ProviderRejected as exc:
            return ProviderStatus(reference=reference, outcome=Outcome.UNKNOWN, raw=exc.raw or {}, error=exc.message)
    logger.warning("provider status unreachable provider=%s reference=%s error=%s", provider, reference, last_error)
    return ProviderStatus(reference=reference, outcome=Outcome.UNKNOWN, error=last_error)


class SantimPayAdapter:
    """SantimPay hosted checkout using platform-owned ES256 credentials."""

    name = "santimpay"

    def __init__(
        self,
        merchant_id: str,
        private_key: str,
        testbed: bool = True,
        client: httpx.Client | None = None,
        status_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ) -> None:
        self.merchant_id = merchant_id
        # Keys injected through env files often carry literal "\n" sequences.
        self.private_key = private_key.replace("\\n", "\n")
        self.base_url = SANTIMPAY_TEST_URL if testbed else SANTIMPAY_PRODUCTION_URL
        # Injected clients belong to the caller; otherwise each request opens its own.
        self.client = client
        self.status_retries = settings.provider_status_retries if status_retries is None else status_retries
        self.retry_backoff_seconds = (
            settings.provider_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )

    def _signed_token(self, claims: dict[str, Any]) -> str:
        return jwt.encode({**claims, "generated": int(time.time())}, self.private_key, algorithm="ES256")

    def initialize(self, checkout: ProviderCheckout, urls: ReturnUrls) -> CheckoutSession:
        reason = f"Payment for link {checkout.link_id}"
        token = self._signed_token(
            {"amount": checkout.amount, "paymentReason": reason, "merchantId": self.merchant_id}
        )
        payload = {
            "id": checkout.reference,
            "amount": checkout.amount,
            "reason": reason,
            "merchantId": self.merchant_id,
            "signedToken": token,
            "successRedirectUrl": str(urls.success_url),
            "failureRedirectUrl": str(urls.failure_url),
            "cancelRedirectUrl": str(urls.cancel_url),
            "notifyUrl": str(urls.notify_url),
        }
        if checkout.customer_phone:
            payload["phoneNumber"] = checkout.customer_phone
        response = send_request(
            self.client,
            self.name,
            "initialize",
            "POST",
            f"{self.base_url}/initiate-payment",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        body = _json_body(response)
        checkout_url = body.get("url")
        if response.status_code >= 400 or not checkout_url:
            raise ProviderRejected("SantimPay payment initialization failed", raw=body)
        logger.info("santimpay checkout created reference=%s", checkout.reference)
        return CheckoutSession(checkout_url=checkout_url, raw=body)

    def _fetch_once(self, reference: str) -> ProviderStatus:
        token = self._signed_token({"id": reference, "merId": self.merchant_id})
        response = send_request(
            self.client,
            self.name,
            "fetch_status",
            "POST",
            f"{self.base_url}/fetch-transaction-status",
            json={"id": reference, "merchantId": self.merchant_id, "signedToken": token},
            headers={"Authorization": f"Bearer {token}"},
        )
        body = _json_body(response)
        if response.status_code >= 400:
            raise ProviderRejected(f"SantimPay status lookup rejected HTTP {response.status_code}", raw=body)
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        status_word = data.get("Status") or data.get("status")
        provider_txn_id = data.get("txnId") or data.get("id")
        return ProviderStatus(
            reference=reference,
            outcome=normalize_provider_status(status_word),
            provider_status=status_word,
            provider_transaction_id=str(provider_txn_id) if provider_txn_id else None,
            raw=body,
        )

    def fetch_status(self, reference: str) -> ProviderStatus:
        if not reference:
            raise InvalidRequest("reference is required")
        return poll_with_retries(
            self.name,
            reference,
            lambda: self._fetch_once(reference),
            self.status_retries,
            self.retry_backoff_seconds,
        )

    def payout(self, request: PayoutRequest) -> dict[str, Any]:
        """B2C transfer to a customer wallet."""

        if not request.reference:
            raise InvalidRequest("reference is required")
        if request.amount_cents <= 0:
            raise InvalidRequest("Invalid amount")
        if not request.reason:
            raise InvalidRequest("reason is required")
        if not request.phone_number:
            raise InvalidRequest("phoneNumber is required")
        if not request.payment_method:
            raise InvalidRequest("paymentMethod is required")

        amount = round(request.amount_cents / 100, 2)
        token = self._signed_token(
            {
                "amount": amount,
                "paymentReason": request.reason,
                "paymentMethod": request.payment_method,
                "phoneNumber": request.phone_number,
                "merchantId": self.merchant_id,
            }
        )
        response = send_request(
            self.client,
            self.name,
            "payout",
            "POST",
            f"{self.base_url}/payout-transfer",
            json={
                "id": request.reference,
                "clientReference": self.merchant_id,
                "amount": amount,
                "reason": request.reason,
                "merchantId": self.merchant_id,
                "signedToken": token,
                "receiverAccountNumber": request.phone_number,
                "notifyUrl": request.notify_url,
                "paymentMethod": request.payment_method,
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        body = _json_body(response)
        if response.status_code >= 400:
            raise ProviderRejected("SantimPay payout rejected", raw=body)
        return body


class ChapaAdapter:
    """Chapa hosted checkout authenticated with the merchant's own secret key."""

    name = "chapa"

    def __init__(
        self,
        secret_key: str,
        client: httpx.Client | None = None,
        base_url: str | None = None,
        status_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ) -> None:
        if not secret_key or not secret_key.strip():
            raise ValueError("Chapa secret missing")
        self.secret_key = secret_key.strip()
        self.base_url = (base_url or settings.chapa_base_url).rstrip("/")
        # Injected clients belong to the caller; otherwise each request opens its own.
        self.client = client
        self.status_retries = settings.provider_status_retries if status_retries is None else status_retries
        self.retry_backoff_seconds = (
            settings.provider_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    @staticmethod
    def test_email(reference: str) -> str:
        prefix = re.sub(r"[^a-z0-9]", "", reference.lower())
        return f"test_{prefix}@test.chapa.co"

    def initialize(self, checkout: ProviderCheckout, urls: ReturnUrls) -> CheckoutSession:
        names = (checkout.customer_name.strip() or "Customer").split()
        payload = {
            "amount": checkout.amount_text,
            "currency": (checkout.currency or "ETB").upper(),
            "email": checkout.customer_email or self.test_email(checkout.reference),
            "first_name": names[0],
            "last_name": " ".join(names[1:]) or "Customer",
            "tx_ref": checkout.reference,
            "callback_url": str(urls.notify_url),
            "return_url": str(urls.success_url),
            "customization[title]": "Payment",
            "customization[description]": f"Payment for link {checkout.link_id}",
        }
        response = send_request(
            self.client,
            self.name,
            "initialize",
            "POST",
            f"{self.base_url}/transaction/initialize",
            json=payload,
            headers=self._headers,
        )
        body = _json_body(response)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        if body.get("status") != "success" or not data.get("checkout_url"):
            raise ProviderRejected("Chapa payment initialization failed", raw=body)
        logger.info("chapa checkout created reference=%s", checkout.reference)
        return CheckoutSession(checkout_url=data["checkout_url"], raw=body)

    def _fetch_once(self, reference: str) -> ProviderStatus:
        response = send_request(
            self.client,
            self.name,
            "fetch_status",
            "GET",
            f"{self.base_url}/transaction/verify/{reference}",
            headers=self._headers,
        )
        body = _json_body(response)
        data = body.get("data") if isinstance(body.get("data"), dict) else None
        if body.get("status") != "success" or data is None:
            raise ProviderRejected(body.get("message") or "Chapa verification rejected", raw=body)
        status_word = data.get("status")
        return ProviderStatus(
            reference=reference,
            outcome=normalize_provider_status(status_word),
            provider_status=status_word,
            provider_transaction_id=data.get("reference"),
            raw=body,
        )

    def fetch_status(self, reference: str) -> ProviderStatus:
        if not reference:
            raise InvalidRequest("reference is required")
        return poll_with_retries(
            self.name,
            reference,
            lambda: self._fetch_once(reference),
            self.status_retries,
            self.retry_backoff_seconds,
        )

    def payout(self, request: PayoutRequest) -> dict[str, Any]:
        raise NotSupported("chapa does not support payouts", provider=self.name)
