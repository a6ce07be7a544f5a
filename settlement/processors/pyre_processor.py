"""
Pyre Processing adapter.

Pyre fronts an NMI-style gateway with a hosted customer vault. Transactions
answer with ``response`` = 1 (approved), 2 (declined) or 3 (error).
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ProcessorUnavailable
from ..models import (
    BillingDetails,
    CaptureRequest,
    PaymentMethodKind,
    PaymentRequest,
    RefundRequest,
    VaultChargeRequest,
    VoidRequest,
)
from ..results import Decline, ProcessorResult, Success
from .base import DEFAULT_TIMEOUT_SECONDS, HttpProcessorAdapter

logger = logging.getLogger(__name__)

APPROVED = "1"
DECLINED = "2"

MAX_RETRIES = 3


def _amount(value: Decimal) -> str:
    return f"{value:.2f}"


class PyreProcessor(HttpProcessorAdapter):
    """Hosted-vault processor reached over REST with an ``x-api-key`` header."""

    name = "pyreprocessing"

    def __init__(self, api_url: str, api_key: str, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(api_url, timeout=timeout, session=session)
        self.session.headers.update({
            "Content-Type": "application/json",
            "x-api-key": api_key,
        })

    # -------------------------------------------------------------------------
    # transactions
    # -------------------------------------------------------------------------

    def _transaction(self, payload: Dict[str, Any]) -> ProcessorResult:
        response = self._send("POST", "transaction", json=payload)
        data = self._json(response)
        if response.status_code >= 400:
            return self._client_error(
                response, data, f"Pyre rejected {payload.get('type')}: {data.get('message', response.reason)}"
            )

        code = str(data.get("response", ""))
        message = data.get("responsetext") or ""
        transaction_id = data.get("transactionid")
        if code == APPROVED:
            return Success(
                message=message or "Transaction approved",
                data=data,
                transaction_id=transaction_id,
            )
        return Decline(
            message=message or "Transaction declined",
            code=str(data.get("response_code") or ("DECLINED" if code == DECLINED else "PROCESSOR_ERROR")),
            data=data,
            transaction_id=transaction_id,
        )

    def _payment_payload(self, request: PaymentRequest, kind: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": kind,
            "amount": _amount(request.amount),
            "currency": request.currency,
            "order_description": request.description,
        }
        vault_id = request.vault_reference.get("customer_vault_id")
        if vault_id:
            payload["customer_vault_id"] = vault_id
        elif request.billing is not None:
            payload.update(self._billing_fields(request.billing))
        return payload

    def process_payment(self, request: PaymentRequest) -> ProcessorResult:
        return self._transaction(self._payment_payload(request, "sale"))

    def authorize_transaction(self, request: PaymentRequest) -> ProcessorResult:
        return self._transaction(self._payment_payload(request, "auth"))

    def capture_transaction(self, request: CaptureRequest) -> ProcessorResult:
        payload: Dict[str, Any] = {"type": "capture", "transactionid": request.transaction_id}
        if request.amount is not None:
            payload["amount"] = _amount(request.amount)
        return self._transaction(payload)

    def void_transaction(self, request: VoidRequest) -> ProcessorResult:
        return self._transaction({
            "type": "void",
            "transactionid": request.transaction_id,
            "void_reason": request.reason,
        })

    def refund_transaction(self, request: RefundRequest) -> ProcessorResult:
        payload: Dict[str, Any] = {"type": "refund", "transactionid": request.transaction_id}
        if request.amount is not None:
            payload["amount"] = _amount(request.amount)
        return self._transaction(payload)

    def vault_transaction(self, request: VaultChargeRequest) -> ProcessorResult:
        vault_id = request.vault_reference.get("customer_vault_id")
        if not vault_id:
            return Decline(message="No Pyre customer vault on file", code="MISSING_VAULT")
        return self._transaction({
            "type": "sale",
            "customer_vault_id": vault_id,
            "amount": _amount(request.amount),
            "currency": request.currency,
            "initiated_by": request.initiated_by,
            "stored_credential_indicator": request.stored_credential_indicator,
            "order_description": request.description,
        })

    # -------------------------------------------------------------------------
    # vault
    # -------------------------------------------------------------------------

    @staticmethod
    def _billing_fields(details: BillingDetails) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "first_name": details.first_name,
            "last_name": details.last_name,
            "address1": details.address1,
            "address2": details.address2,
            "city": details.city,
            "state": details.state,
            "zip": details.zip,
            "country": details.country,
            "phone": details.phone,
            "email": details.email,
            "currency": details.currency,
            "paymentMethod": details.payment_method.value,
        }
        if details.payment_method == PaymentMethodKind.ACH and details.ach is not None:
            fields["achDetails"] = {
                "checkname": details.ach.account_name,
                "checkaba": details.ach.routing_number,
                "checkaccount": details.ach.account_number,
                "account_holder_type": details.ach.account_holder_type,
                "account_type": details.ach.account_type,
            }
        elif details.card is not None:
            fields["creditCardDetails"] = {
                "ccnumber": details.card.number,
                "ccexp": details.card.exp,
            }
            if details.card.cvv:
                fields["cvv"] = details.card.cvv
        return fields

    def create_vault(
        self,
        customer_id: str,
        details: BillingDetails,
        existing: Optional[Dict[str, Any]] = None,
    ) -> ProcessorResult:
        payload = self._billing_fields(details)
        if existing and existing.get("customer_vault_id"):
            payload["customer_vault"] = existing["customer_vault_id"]

        response = self._send("POST", f"vault/{customer_id}", json=payload)
        data = self._json(response)
        if response.status_code >= 400:
            return self._client_error(
                response, data, f"Error Creating Vault Customer - {data.get('message', response.reason)}"
            )

        vault_id = data.get("customer_vault_id") or payload.get("customer_vault") or customer_id
        data["customer_vault_id"] = vault_id
        return Success(message="Customer Vault Created", data=data, transaction_id=vault_id)

    def get_vault(self, vault_id: str) -> ProcessorResult:
        response = self._send("GET", f"vault/{vault_id}")
        data = self._json(response)
        if response.status_code >= 400:
            return self._client_error(
                response, data, f"Error Fetching Customer - {data.get('message', response.reason)}"
            )
        return Success(data=data, transaction_id=vault_id)

    def delete_vault(self, vault_id: str) -> ProcessorResult:
        response = self._send("DELETE", f"vault/{vault_id}")
        data = self._json(response)
        if response.status_code >= 400:
            return self._client_error(
                response, data, f"Error Removing Customer Vault - {data.get('message', response.reason)}"
            )
        return Success(message="Customer Vault Removed", data=data, transaction_id=vault_id)

    @retry(
        stop=stop_after_attempt(MAX_RETRIES),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(ProcessorUnavailable),
        reraise=True
    )
    def fetch_transactions(self, customer_id: str) -> ProcessorResult:
        response = self._send("GET", "order", params={"customer_id": customer_id})
        data = self._json(response)
        if response.status_code >= 400:
            return self._client_error(
                response, data, f"Error Fetching Transactions - {data.get('message', response.reason)}"
            )
        return Success(data=data)

    def test_connection(self, timeout: Optional[float] = None) -> bool:
        try:
            response = self._send("GET", "health", timeout=timeout)
        except ProcessorUnavailable as exc:
            logger.warning("Pyre connection test failed: %s", exc)
            return False
        return response.status_code < 400
