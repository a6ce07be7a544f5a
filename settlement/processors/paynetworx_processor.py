"""
PayNetWorx card-network adapter.

Every call is a JSON POST under ``transaction/`` with HTTP Basic merchant
credentials and a fresh ``Request-ID`` header. Vaulting is a card verify with
``DataAction: token/add``; recurring charges reuse the returned token with
``EntryMode: card-on-file``.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from ..errors import PaymentValidationError
from ..models import (
    BillingDetails,
    CaptureRequest,
    PaymentRequest,
    RefundRequest,
    VaultChargeRequest,
    VoidRequest,
)
from ..results import Decline, ProcessorResult, Success
from .base import DEFAULT_TIMEOUT_SECONDS, HttpProcessorAdapter

logger = logging.getLogger(__name__)


def _amount(value: Optional[Decimal]) -> str:
    return f"{(value or Decimal('0')):.2f}"


class PaynetworxProcessor(HttpProcessorAdapter):
    name = "paynetworx"

    def __init__(self, base_url: str, merchant_user: str, merchant_pass: str,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(base_url, timeout=timeout, session=session)
        self.session.auth = (merchant_user, merchant_pass)
        self.session.headers.update({"Content-Type": "application/json"})

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> ProcessorResult:
        response = self._send(
            "POST",
            f"transaction/{endpoint}",
            json=payload,
            headers={"Request-ID": uuid.uuid4().hex},
        )
        data = self._json(response)
        transaction_id = data.get("TransactionID")

        if response.status_code >= 400:
            message = data.get("Error") or response.reason or "PayNetWorx API request failed"
            return Decline(
                message=str(message),
                code=f"HTTP_{response.status_code}",
                data={
                    **data,
                    "response_code": response.status_code,
                    "responsetext": message,
                    "transactionid": transaction_id,
                },
                transaction_id=transaction_id,
            )

        if data.get("Approved") is False:
            return Decline(
                message=str(data.get("ResponseText") or "Transaction not approved"),
                code=str(data.get("ResponseCode") or "DECLINED"),
                data=data,
                transaction_id=transaction_id,
            )

        return Success(
            message=f"{endpoint} approved",
            data={**data, "transactionid": transaction_id},
            transaction_id=transaction_id,
        )

    # -------------------------------------------------------------------------
    # payload builders
    # -------------------------------------------------------------------------

    @staticmethod
    def _billing_address(details: BillingDetails) -> Dict[str, Any]:
        return {
            "Name": details.full_name,
            "Line1": details.address1,
            "Line2": details.address2,
            "City": details.city,
            "State": details.state,
            "PostalCode": details.zip,
            "Country": details.country or "US",
            "Phone": details.phone,
            "Email": details.email,
        }

    def _card(self, details: BillingDetails) -> Dict[str, Any]:
        card = details.card
        return {
            "CardPresent": False,
            "CVC": {"CVC": (card.cvv if card else None) or "000"},
            "PAN": {
                "PAN": card.number if card else "",
                "ExpMonth": card.exp_month if card else "",
                "ExpYear": card.exp_year if card else "",
            },
            "BillingAddress": self._billing_address(details),
        }

    def _payment_payload(self, request: PaymentRequest) -> Dict[str, Any]:
        token_id = request.vault_reference.get("tokenId")
        payload: Dict[str, Any] = {
            "Amount": {"Total": _amount(request.amount), "Currency": request.currency},
            "Detail": {"MerchantData": {"CustomerID": request.customer_id or ""}},
        }
        if token_id:
            payload["PaymentMethod"] = {"Token": {"TokenID": token_id}}
            payload["Attributes"] = {
                "EntryMode": "card-on-file",
                "ProcessingSpecifiers": {"InitiatedByECommerce": True},
            }
        elif request.billing is not None:
            payload["PaymentMethod"] = {"Card": self._card(request.billing)}
        return payload

    # -------------------------------------------------------------------------
    # operations
    # -------------------------------------------------------------------------

    def process_payment(self, request: PaymentRequest) -> ProcessorResult:
        return self._post("authcapture", self._payment_payload(request))

    def authorize_transaction(self, request: PaymentRequest) -> ProcessorResult:
        return self._post("auth", self._payment_payload(request))

    def capture_transaction(self, request: CaptureRequest) -> ProcessorResult:
        return self._post("capture", {
            "Amount": {
                "Total": _amount(request.amount),
                "Tax": _amount(request.tax),
                "Fee": _amount(request.fee),
                "Currency": request.currency,
            },
            "TransactionID": request.transaction_id,
            "Detail": {"MerchantData": {}},
        })

    def void_transaction(self, request: VoidRequest) -> ProcessorResult:
        return self._post("void", {
            "TransactionID": request.transaction_id,
            "Reason": request.reason,
            "Detail": {"MerchantData": {}},
        })

    def refund_transaction(self, request: RefundRequest) -> ProcessorResult:
        if request.amount is None:
            raise PaymentValidationError("PayNetWorx refunds require an explicit amount")
        return self._post("refund", {
            "Amount": {"Total": _amount(request.amount), "Currency": request.currency},
            "TransactionID": request.transaction_id,
            "Detail": {"MerchantData": {}},
        })

    def create_vault(
        self,
        customer_id: str,
        details: BillingDetails,
        existing: Optional[Dict[str, Any]] = None,
    ) -> ProcessorResult:
        now = datetime.now(timezone.utc)
        stamp = int(now.timestamp() * 1000)
        result = self._post("verify", {
            "PaymentMethod": {"Card": self._card(details)},
            "DataAction": "token/add",
            "Attributes": {
                "EntryMode": "manual",
                "ProcessingSpecifiers": {"InitiatedByECommerce": True},
            },
            "TransactionEntry": {
                "Device": "NA",
                "DeviceVersion": "NA",
                "Application": "Settlement Core",
                "ApplicationVersion": "1.0",
                "Timestamp": now.isoformat(),
            },
            "Detail": {
                "MerchantData": {
                    "CustomerID": customer_id,
                    "OrderNumber": f"vault-{stamp}",
                    "TrackingID": f"track-{stamp}",
                },
            },
        })
        if not isinstance(result, Success):
            return result

        token = result.data.get("Token") or {}
        token_id = token.get("TokenID")
        if not token_id:
            return Decline(
                message="Vault creation failed - no token returned",
                code="VAULT_FAILED",
                data=result.data,
            )
        return Success(
            message="Vault created successfully",
            data={
                "tokenId": token_id,
                "tokenName": token.get("TokenName"),
                "transactionId": result.data.get("TransactionID"),
                "eventId": result.data.get("EventID"),
                "requestId": result.data.get("RequestID"),
                "addressCheck": result.data.get("AddressLine1Check"),
                "zipCheck": result.data.get("AddressZipCheck"),
                "cvcCheck": result.data.get("CVCCheck"),
            },
            transaction_id=token_id,
        )

    def vault_transaction(self, request: VaultChargeRequest) -> ProcessorResult:
        token_id = request.vault_reference.get("tokenId")
        if not token_id:
            return Decline(message="No PayNetWorx token on file", code="MISSING_VAULT")
        return self._post("authcapture", {
            "Amount": {"Total": _amount(request.amount), "Currency": request.currency},
            "PaymentMethod": {"Token": {"TokenID": token_id}},
            "Detail": {"MerchantData": {"CustomerID": request.customer_id or ""}},
            "Attributes": {
                "EntryMode": "card-on-file",
                "ProcessingSpecifiers": {"InitiatedByECommerce": True},
            },
        })
