"""
Stripe adapter.

The Stripe customer is the vault: cards arrive as front-end tokens and are
attached as the customer's default payment method, bank accounts are added as
``us_bank_account`` payment methods. Recurring charges are confirmed
off-session PaymentIntents.
"""

import functools
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import stripe

from ..errors import ProcessorTimeout, ProcessorUnavailable
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
from .base import DEFAULT_TIMEOUT_SECONDS, ProcessorAdapter

logger = logging.getLogger(__name__)

SETTLED_STATUSES = {"succeeded", "processing", "requires_capture"}


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _plain(obj: Any) -> Dict[str, Any]:
    """JSON-friendly copy of a Stripe object for receipts."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(obj, dict):
        return dict(obj)
    return {"id": getattr(obj, "id", None)}


def translate_errors(method):
    """Map Stripe exceptions onto Decline results or infrastructure errors."""

    @functools.wraps(method)
    def wrapper(self: "StripeProcessor", *args, **kwargs) -> ProcessorResult:
        try:
            return method(self, *args, **kwargs)
        except stripe.CardError as exc:
            logger.info("Stripe declined %s: %s", method.__name__, exc.user_message or exc)
            return Decline(
                message=exc.user_message or str(exc),
                code=exc.code or "card_declined",
                data={"error": str(exc), "decline_code": getattr(exc, "decline_code", None)},
            )
        except stripe.InvalidRequestError as exc:
            logger.info("Stripe rejected %s: %s", method.__name__, exc)
            return Decline(
                message=exc.user_message or str(exc),
                code=exc.code or "invalid_request",
                data={"error": str(exc), "param": exc.param},
            )
        except stripe.APIConnectionError as exc:
            if "timed out" in str(exc).lower():
                raise ProcessorTimeout(self.name, self.timeout) from exc
            raise ProcessorUnavailable(self.name, f"connection error: {exc}") from exc
        except (stripe.AuthenticationError, stripe.PermissionError) as exc:
            raise ProcessorUnavailable(self.name, f"authentication failed: {exc}", retryable=False) from exc
        except stripe.StripeError as exc:
            raise ProcessorUnavailable(self.name, str(exc)) from exc

    return wrapper


class StripeProcessor(ProcessorAdapter):
    name = "stripe"

    def __init__(self, secret_key: str, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 client: Optional[stripe.StripeClient] = None) -> None:
        super().__init__(timeout=timeout)
        self.client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout),
        )

    # -------------------------------------------------------------------------
    # vault
    # -------------------------------------------------------------------------

    @staticmethod
    def _stored_customer_id(existing: Optional[Dict[str, Any]]) -> Optional[str]:
        if not existing:
            return None
        return existing.get("customer_id") or (existing.get("customer") or {}).get("id")

    def _address(self, details: BillingDetails) -> Dict[str, Any]:
        return {
            "line1": details.address1,
            "line2": details.address2,
            "city": details.city,
            "state": details.state,
            "postal_code": details.zip,
            "country": details.country,
        }

    def _upsert_customer(self, account_id: str, details: BillingDetails,
                         existing: Optional[Dict[str, Any]]):
        customer_id = self._stored_customer_id(existing)
        if customer_id:
            try:
                customer = self.client.customers.retrieve(customer_id)
                if getattr(customer, "deleted", False) is not True:
                    return customer
                logger.info("Stripe customer %s was deleted; recreating", customer_id)
            except stripe.InvalidRequestError:
                logger.info("Stripe customer %s not found; recreating", customer_id)

        return self.client.customers.create(params={
            "name": details.full_name,
            "email": details.email,
            "phone": details.phone,
            "address": self._address(details),
            "metadata": {"external_id": account_id},
        })

    @translate_errors
    def create_vault(
        self,
        customer_id: str,
        details: BillingDetails,
        existing: Optional[Dict[str, Any]] = None,
    ) -> ProcessorResult:
        customer = self._upsert_customer(customer_id, details, existing)
        payment_method = None

        if details.payment_method == PaymentMethodKind.CREDIT_CARD and details.token:
            payment_method = self.client.payment_methods.create(params={
                "type": "card",
                "card": {"token": details.token},
                "billing_details": {
                    "name": details.full_name,
                    "email": details.email,
                    "phone": details.phone,
                    "address": self._address(details),
                },
            })
            self.client.payment_methods.attach(payment_method.id, params={"customer": customer.id})
            self.client.customers.update(customer.id, params={
                "invoice_settings": {"default_payment_method": payment_method.id},
            })
        elif details.payment_method == PaymentMethodKind.ACH and details.ach is not None:
            payment_method = self.client.payment_methods.create(params={
                "type": "us_bank_account",
                "us_bank_account": {
                    "routing_number": details.ach.routing_number,
                    "account_number": details.ach.account_number,
                    "account_holder_type": details.ach.account_holder_type,
                    "account_type": details.ach.account_type,
                },
                "billing_details": {
                    "name": details.ach.account_name,
                    "email": details.email,
                },
            })
            self.client.payment_methods.attach(payment_method.id, params={"customer": customer.id})

        return Success(
            message="Customer Vault Created",
            data={
                "customer_id": customer.id,
                "payment_method_id": payment_method.id if payment_method is not None else None,
                "customer": {"id": customer.id},
            },
            transaction_id=customer.id,
        )

    @translate_errors
    def get_vault(self, vault_id: str) -> ProcessorResult:
        customer = self.client.customers.retrieve(vault_id)
        methods = self.client.payment_methods.list(params={"customer": vault_id})
        return Success(
            data={
                "customer": _plain(customer),
                "paymentMethods": [_plain(pm) for pm in methods.data],
            },
            transaction_id=vault_id,
        )

    @translate_errors
    def delete_vault(self, vault_id: str) -> ProcessorResult:
        methods = self.client.payment_methods.list(params={"customer": vault_id})
        for payment_method in methods.data:
            self.client.payment_methods.detach(payment_method.id)
        self.client.customers.delete(vault_id)
        return Success(
            message="Customer Vault Removed",
            data={"deletedCustomer": vault_id},
            transaction_id=vault_id,
        )

    # -------------------------------------------------------------------------
    # charges
    # -------------------------------------------------------------------------

    def _default_payment_method(self, customer_id: str) -> Optional[str]:
        customer = self.client.customers.retrieve(customer_id)
        settings = getattr(customer, "invoice_settings", None)
        default = getattr(settings, "default_payment_method", None) if settings else None
        if isinstance(default, str) and default:
            return default

        methods = self.client.payment_methods.list(params={"customer": customer_id, "limit": 1})
        if not methods.data:
            return None
        return methods.data[0].id

    @staticmethod
    def _intent_result(intent, message: str) -> ProcessorResult:
        data = _plain(intent)
        if intent.status in SETTLED_STATUSES:
            return Success(
                message=message,
                data=data,
                transaction_id=intent.id,
                status=intent.status,
            )
        return Decline(
            message=f"Payment intent ended in status {intent.status}",
            code=str(intent.status),
            data=data,
            transaction_id=intent.id,
        )

    @translate_errors
    def vault_transaction(self, request: VaultChargeRequest) -> ProcessorResult:
        customer_id = self._stored_customer_id(request.vault_reference)
        if not customer_id:
            return Decline(message="No Stripe customer on file", code="MISSING_VAULT")

        payment_method_id = self._default_payment_method(customer_id)
        if not payment_method_id:
            return Decline(message="No payment methods found for customer", code="NO_PAYMENT_METHOD")

        logger.info("Charging Stripe customer %s %s %s", customer_id, request.amount, request.currency)
        intent = self.client.payment_intents.create(params={
            "amount": to_cents(request.amount),
            "currency": request.currency.lower(),
            "customer": customer_id,
            "payment_method": payment_method_id,
            "confirm": True,
            "off_session": True,
            "description": request.description,
            "metadata": {
                "initiated_by": request.initiated_by,
                "stored_credential_indicator": request.stored_credential_indicator,
            },
        })
        return self._intent_result(intent, "Vault transaction processed successfully")

    def _create_intent(self, request: PaymentRequest, capture_method: str) -> ProcessorResult:
        customer_id = self._stored_customer_id(request.vault_reference)
        if customer_id and capture_method == "automatic":
            return self.vault_transaction(VaultChargeRequest(
                vault_reference=request.vault_reference,
                amount=request.amount,
                currency=request.currency,
                customer_id=request.customer_id,
                description=request.description,
            ))

        token = request.billing.token if request.billing else None
        if not token and not customer_id:
            return Decline(message="A Stripe token is required", code="TOKEN_REQUIRED")

        params: Dict[str, Any] = {
            "amount": to_cents(request.amount),
            "currency": request.currency.lower(),
            "confirm": True,
            "capture_method": capture_method,
            "description": request.description,
        }
        if customer_id:
            params["customer"] = customer_id
            params["payment_method"] = self._default_payment_method(customer_id)
            params["off_session"] = True
        else:
            params["payment_method_data"] = {"type": "card", "card": {"token": token}}
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        intent = self.client.payment_intents.create(params=params)
        return self._intent_result(intent, "Payment processed successfully")

    @translate_errors
    def process_payment(self, request: PaymentRequest) -> ProcessorResult:
        return self._create_intent(request, "automatic")

    @translate_errors
    def authorize_transaction(self, request: PaymentRequest) -> ProcessorResult:
        return self._create_intent(request, "manual")

    @translate_errors
    def capture_transaction(self, request: CaptureRequest) -> ProcessorResult:
        params: Dict[str, Any] = {}
        if request.amount is not None:
            params["amount_to_capture"] = to_cents(request.amount)
        intent = self.client.payment_intents.capture(request.transaction_id, params=params)
        return Success(
            message="Transaction captured successfully",
            data=_plain(intent),
            transaction_id=intent.id,
            status=intent.status,
        )

    @translate_errors
    def void_transaction(self, request: VoidRequest) -> ProcessorResult:
        intent = self.client.payment_intents.cancel(
            request.transaction_id,
            params={"cancellation_reason": "requested_by_customer"},
        )
        return Success(
            message="Transaction voided successfully",
            data=_plain(intent),
            transaction_id=intent.id,
            status=intent.status,
        )

    @translate_errors
    def refund_transaction(self, request: RefundRequest) -> ProcessorResult:
        params: Dict[str, Any] = {
            "payment_intent": request.transaction_id,
            "reason": "requested_by_customer",
        }
        if request.amount is not None:
            params["amount"] = to_cents(request.amount)
        logger.info("Refunding Stripe payment %s amount %s", request.transaction_id, request.amount)
        refund = self.client.refunds.create(params=params)
        return Success(
            message="Refund processed successfully",
            data=_plain(refund),
            transaction_id=refund.id,
            status=refund.status,
        )

    @translate_errors
    def fetch_transactions(self, customer_id: str) -> ProcessorResult:
        intents = self.client.payment_intents.list(params={"customer": customer_id, "limit": 100})
        charges = self.client.charges.list(params={"customer": customer_id, "limit": 100})
        return Success(data={
            "paymentIntents": [_plain(intent) for intent in intents.data],
            "charges": [_plain(charge) for charge in charges.data],
        })

    def test_connection(self, timeout: Optional[float] = None) -> bool:
        try:
            self.client.balance.retrieve()
        except stripe.StripeError as exc:
            logger.warning("Stripe connection test failed: %s", exc)
            return False
        return True
