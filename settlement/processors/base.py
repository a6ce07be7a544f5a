"""
Uniform payment processor contract.

Every provider adapter answers expected outcomes with ``Success`` or
``Decline`` and raises ``ProcessorUnavailable`` / ``ProcessorTimeout`` for
infrastructure faults. Operations a provider does not offer raise
``OperationNotSupported`` instead of silently doing nothing.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from ..errors import OperationNotSupported, ProcessorTimeout, ProcessorUnavailable
from ..models import (
    BillingAccount,
    BillingDetails,
    CaptureRequest,
    PaymentRequest,
    RefundRequest,
    VaultChargeRequest,
    VoidRequest,
)
from ..results import Decline, ProcessorResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0

# HTTP statuses that mean the provider (not the payment) is the problem
INFRASTRUCTURE_STATUSES = {401, 403, 408, 429}


class ProcessorAdapter(ABC):
    """Base class for provider adapters."""

    name: str = ""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    def get_processor_name(self) -> str:
        return self.name

    def _unsupported(self, operation: str):
        return OperationNotSupported(self.name, operation)

    # -------------------------------------------------------------------------
    # operations
    # -------------------------------------------------------------------------

    def process_payment(self, request: PaymentRequest) -> ProcessorResult:
        raise self._unsupported("process_payment")

    def authorize_transaction(self, request: PaymentRequest) -> ProcessorResult:
        raise self._unsupported("authorize_transaction")

    def capture_transaction(self, request: CaptureRequest) -> ProcessorResult:
        raise self._unsupported("capture_transaction")

    def void_transaction(self, request: VoidRequest) -> ProcessorResult:
        raise self._unsupported("void_transaction")

    def refund_transaction(self, request: RefundRequest) -> ProcessorResult:
        raise self._unsupported("refund_transaction")

    @abstractmethod
    def create_vault(
        self,
        customer_id: str,
        details: BillingDetails,
        existing: Optional[Dict[str, Any]] = None,
    ) -> ProcessorResult:
        """
        Store a payment method with the provider.

        On success ``data`` holds the provider blob to keep under
        ``payment_processor_data[name]`` and ``transaction_id`` the vault id.
        """

    @abstractmethod
    def vault_transaction(self, request: VaultChargeRequest) -> ProcessorResult:
        """Charge a previously vaulted payment method."""

    def fetch_transactions(self, customer_id: str) -> ProcessorResult:
        raise self._unsupported("fetch_transactions")

    def get_vault(self, vault_id: str) -> ProcessorResult:
        raise self._unsupported("get_vault")

    def delete_vault(self, vault_id: str) -> ProcessorResult:
        raise self._unsupported("delete_vault")

    def test_connection(self, timeout: Optional[float] = None) -> bool:
        raise self._unsupported("test_connection")

    @property
    def supports_probe(self) -> bool:
        return type(self).test_connection is not ProcessorAdapter.test_connection

    def vault_reference_for(self, account: BillingAccount) -> Optional[Dict[str, Any]]:
        """The stored provider data for this adapter, or None when absent."""
        data = account.payment_processor_data.get(self.name)
        return data or None


class HttpProcessorAdapter(ProcessorAdapter):
    """Shared transport for adapters that talk JSON over HTTP with ``requests``."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, timeout: Optional[float] = None,
              **kwargs: Any) -> requests.Response:
        """
        Perform one HTTP call with an explicit timeout.

        Transport failures, provider 5xx and auth/rate-limit statuses raise;
        every other response is returned for the adapter to interpret.
        """
        timeout = timeout or self.timeout
        try:
            response = self.session.request(method, self._url(path), timeout=timeout, **kwargs)
        except requests.Timeout as exc:
            raise ProcessorTimeout(self.name, timeout) from exc
        except requests.RequestException as exc:
            raise ProcessorUnavailable(self.name, f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code in INFRASTRUCTURE_STATUSES:
            logger.warning("%s %s returned %s", method, path, response.status_code)
            raise ProcessorUnavailable(
                self.name,
                f"{method} {path} returned HTTP {response.status_code}",
                retryable=response.status_code not in (401, 403),
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {"raw": response.text}
        return payload if isinstance(payload, dict) else {"data": payload}

    @staticmethod
    def _client_error(response: requests.Response, payload: Dict[str, Any],
                      message: str) -> Decline:
        return Decline(
            message=message,
            code=str(payload.get("code") or f"HTTP_{response.status_code}"),
            data=payload,
        )
