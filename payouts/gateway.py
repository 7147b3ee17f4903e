"""
Payment gateway adapters.

A gateway moves ``net_amount`` from the platform account to the payout's
destination bank account. Every call carries the payout's idempotency key so
a retried request after a timeout can never produce a second transfer.

Outcomes:
- ``Approved``: the provider settled the transfer
- ``Rejected``: the provider declined it; the payout fails immediately
- ``TransientGatewayError``: unknown outcome (timeout, 5xx, rate limit);
  the payout stays in processing until reconciliation resolves it
- ``FatalGatewayError``: unusable response or credentials; treated like a
  rejection
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

import requests

from ledger.errors import FatalGatewayError, TransientGatewayError
from ledger.models import BankAccount

logger = logging.getLogger(__name__)

APPROVED_STATUSES = {"approved", "succeeded", "completed", "paid"}
IN_FLIGHT_STATUSES = {"pending", "processing", "in_transit"}
REJECTED_STATUSES = {"rejected", "declined", "failed", "reversed"}


@dataclass(frozen=True)
class Approved:
    transaction_id: str
    settled_amount: int


@dataclass(frozen=True)
class Rejected:
    code: str
    message: str


GatewayResult = Union[Approved, Rejected]


class PaymentGateway(ABC):
    @abstractmethod
    def transfer(self, amount: int, destination: BankAccount, idempotency_key: str) -> GatewayResult:
        """Request a transfer of ``amount`` minor units to ``destination``."""

    @abstractmethod
    def transfer_status(self, idempotency_key: str) -> Optional[GatewayResult]:
        """Final outcome of an earlier transfer, or None while it has none."""


class HttpPaymentGateway(PaymentGateway):
    """JSON/HTTP transfer provider client."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 30.0,
        currency: str = "CLP",
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    def transfer(self, amount: int, destination: BankAccount, idempotency_key: str) -> GatewayResult:
        payload = {
            "amount": amount,
            "currency": self.currency,
            "reference": idempotency_key,
            "destination": destination.model_dump(mode="json"),
        }
        try:
            res = self.session.post(
                f"{self.base_url}/transfers",
                json=payload,
                headers={**self.headers, "Idempotency-Key": idempotency_key},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientGatewayError(f"Transfer {idempotency_key}: {exc}") from exc

        result = self._normalize(res, idempotency_key, amount)
        if result is None:
            raise TransientGatewayError(f"Transfer {idempotency_key} accepted, not yet settled")
        return result

    def transfer_status(self, idempotency_key: str) -> Optional[GatewayResult]:
        try:
            res = self.session.get(
                f"{self.base_url}/transfers/{idempotency_key}",
                headers=self.headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientGatewayError(f"Status of {idempotency_key}: {exc}") from exc

        if res.status_code == 404:
            return None
        return self._normalize(res, idempotency_key, amount=None)

    def _normalize(self, res: requests.Response, idempotency_key: str, amount: Optional[int]) -> Optional[GatewayResult]:
        if res.status_code == 429 or res.status_code >= 500:
            raise TransientGatewayError(f"Gateway returned HTTP {res.status_code} for {idempotency_key}")
        if res.status_code in (401, 403):
            raise FatalGatewayError(f"Gateway refused credentials (HTTP {res.status_code})")

        try:
            data = res.json()
        except ValueError as exc:
            # The provider may still have acted on the request
            raise TransientGatewayError(f"Unreadable gateway response for {idempotency_key}") from exc
        if not isinstance(data, dict):
            raise TransientGatewayError(f"Unreadable gateway response for {idempotency_key}")

        if res.status_code >= 400:
            error = data.get("error") or {}
            return Rejected(
                code=str(error.get("code") or res.status_code),
                message=str(error.get("message") or "Transfer declined"),
            )

        status = str(data.get("status", "")).lower()
        if status in APPROVED_STATUSES:
            transaction_id = data.get("id") or data.get("transaction_id")
            if not transaction_id:
                raise FatalGatewayError(f"Approved transfer {idempotency_key} has no transaction id")
            settled = data.get("amount", amount)
            return Approved(transaction_id=str(transaction_id), settled_amount=int(settled or 0))
        if status in REJECTED_STATUSES:
            return Rejected(
                code=str(data.get("failure_code") or status),
                message=str(data.get("failure_message") or "Transfer declined"),
            )
        if status in IN_FLIGHT_STATUSES:
            return None

        logger.error("Unexpected transfer status %r for %s", status, idempotency_key)
        raise FatalGatewayError(f"Unexpected transfer status {status!r}")
