"""
Razorpay refund client using httpx sync client.
The provider is opaque to the ledger: each call either returns ProviderRefund data or raises ProviderError.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
import pybreaker

from billing.core.config import settings
from billing.models.refund import RefundSpeed
from billing.services.circuit_breaker import get_circuit_breaker
from billing.utils.metrics import provider_request_duration_seconds, provider_requests_total

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Refund call failed: rejected by the provider, timed out, or circuit open."""

    def __init__(self, message: str, code: str = "PROVIDER_ERROR", status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.description = message
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderRefund:
    provider_refund_id: str
    status: str  # pending, processed, failed
    amount: int
    speed_processed: RefundSpeed | None = None
    created_at: datetime | None = None
    reference: str | None = None  # our refund id, echoed back in notes


class RefundProvider(Protocol):
    def create_refund(
        self,
        provider_payment_id: str,
        amount: int,
        speed: RefundSpeed,
        notes: str | None = None,
        receipt: str | None = None,
        reference: str | None = None,
    ) -> ProviderRefund: ...

    def fetch_refunds(self, provider_payment_id: str) -> list[ProviderRefund]: ...


def parse_speed_processed(value: str | None) -> RefundSpeed | None:
    value = (value or "").lower()
    if value in ("instant", "optimum"):
        return RefundSpeed.OPTIMUM
    if value == "normal":
        return RefundSpeed.NORMAL
    return None


def parse_refund_entity(data: dict[str, Any]) -> ProviderRefund:
    """Map a Razorpay refund entity to ProviderRefund."""
    created = data.get("created_at")
    # Razorpay sends an empty list instead of an object when there are no notes
    notes = data.get("notes") if isinstance(data.get("notes"), dict) else {}
    return ProviderRefund(
        provider_refund_id=data["id"],
        status=str(data.get("status", "pending")).lower(),
        amount=int(data.get("amount") or 0),
        speed_processed=parse_speed_processed(data.get("speed_processed")),
        created_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        reference=notes.get("refund_id"),
    )


def _parse_error(resp: httpx.Response) -> tuple[str, str]:
    """Extract (code, user-friendly description) from a Razorpay error body."""
    try:
        body = resp.json()
    except ValueError:
        return "PROVIDER_ERROR", f"Razorpay API error: {resp.text[:200]}"
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return "PROVIDER_ERROR", "Razorpay API error"
    code = error.get("code") or "PROVIDER_ERROR"
    description = error.get("description")
    field = error.get("field")
    if description and field:
        return code, f"{description} (Field: {field})"
    if description:
        return code, description
    return code, f"Razorpay error: {code}"


def _is_business_rejection(exc: BaseException) -> bool:
    # 4xx answers mean the provider is healthy; they must not open the breaker
    return isinstance(exc, ProviderError) and exc.status_code is not None and exc.status_code < 500


class RazorpayRefundClient:
    """Sync Razorpay client for refunds, guarded by a circuit breaker."""

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._key_id = key_id if key_id is not None else settings.razorpay_key_id
        self._key_secret = key_secret if key_secret is not None else settings.razorpay_key_secret
        self._base_url = (base_url or settings.razorpay_api_base).rstrip("/")
        self._timeout = timeout or settings.provider_timeout_seconds
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._base_url,
                auth=(self._key_id, self._key_secret),
                timeout=self._timeout,
            )
        return self._client

    @property
    def breaker(self) -> pybreaker.CircuitBreaker:
        return get_circuit_breaker("refund_provider", exclude=[_is_business_rejection])

    def _record_request(self, method: str, status: str, duration: float) -> None:
        provider_requests_total.labels(method=method, status=status).inc()
        provider_request_duration_seconds.labels(method=method).observe(duration)

    def _request(self, method: str, path: str, provider_payment_id: str, body: dict[str, Any] | None = None) -> Any:
        try:
            resp = self.client.request(method, path, json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Razorpay request timed out: {e}", code="TIMEOUT") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to call Razorpay API: {e}", code="NETWORK_ERROR") from e
        if resp.is_success:
            return resp.json()
        code, description = _parse_error(resp)
        logger.error(
            "provider_request_rejected",
            extra={"payment_id": provider_payment_id, "path": path, "status_code": resp.status_code, "error": code},
        )
        raise ProviderError(description, code=code, status_code=resp.status_code)

    def _call(self, operation: str, method: str, path: str, provider_payment_id: str,
              body: dict[str, Any] | None = None) -> Any:
        start = time.time()
        try:
            data = self.breaker.call(self._request, method, path, provider_payment_id, body)
        except pybreaker.CircuitBreakerError as e:
            self._record_request(operation, "circuit_open", time.time() - start)
            raise ProviderError("Refund provider temporarily unavailable", code="CIRCUIT_OPEN") from e
        except ProviderError:
            self._record_request(operation, "error", time.time() - start)
            raise
        self._record_request(operation, "success", time.time() - start)
        return data

    def create_refund(
        self,
        provider_payment_id: str,
        amount: int,
        speed: RefundSpeed,
        notes: str | None = None,
        receipt: str | None = None,
        reference: str | None = None,
    ) -> ProviderRefund:
        # Razorpay wants the amount even for full refunds
        body: dict[str, Any] = {"amount": amount, "speed": speed.value.lower()}
        body_notes = {}
        if notes:
            body_notes["comment"] = notes
        if reference:
            body_notes["refund_id"] = reference
        if body_notes:
            body["notes"] = body_notes
        if receipt:
            body["receipt"] = receipt
        data = self._call("create_refund", "POST", f"/payments/{provider_payment_id}/refund", provider_payment_id, body)
        return parse_refund_entity(data)

    def fetch_refunds(self, provider_payment_id: str) -> list[ProviderRefund]:
        """Every refund Razorpay holds for the payment, whatever created it."""
        data = self._call("fetch_refunds", "GET", f"/payments/{provider_payment_id}/refunds", provider_payment_id)
        items = data.get("items") if isinstance(data, dict) else None
        return [parse_refund_entity(item) for item in items or []]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
