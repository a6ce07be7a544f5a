"""
Tests for the Stripe adapter, with the StripeClient replaced by a mock.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from settlement.errors import ProcessorTimeout, ProcessorUnavailable
from settlement.models import (
    AchDetails,
    BillingDetails,
    CaptureRequest,
    PaymentMethodKind,
    PaymentRequest,
    RefundRequest,
    VaultChargeRequest,
    VoidRequest,
)
from settlement.processors.stripe_processor import StripeProcessor, to_cents
from settlement.results import Decline, Success


def stripe_object(**fields):
    """Minimal stand-in for a StripeObject: attribute access plus ``to_dict``."""
    return SimpleNamespace(to_dict=lambda: dict(fields), **fields)


@pytest.fixture
def client():
    client = MagicMock()
    client.customers.retrieve.return_value = stripe_object(
        id="cus_1",
        invoice_settings=SimpleNamespace(default_payment_method="pm_default"),
    )
    client.customers.create.return_value = stripe_object(id="cus_new")
    client.payment_methods.create.return_value = stripe_object(id="pm_new")
    client.payment_intents.create.return_value = stripe_object(id="pi_1", status="succeeded")
    return client


@pytest.fixture
def adapter(client):
    return StripeProcessor("sk_test", timeout=5, client=client)


@pytest.fixture
def card_details():
    return BillingDetails(first_name="Pat", last_name="Doe", email="pat@example.com", token="tok_visa")


def _charge(**fields):
    values = dict(vault_reference={"customer_id": "cus_1"}, amount=Decimal("29.99"), currency="USD")
    values.update(fields)
    return VaultChargeRequest(**values)


class TestVault:
    """Customer creation and idempotent re-vaulting."""

    def test_new_customer_with_card(self, adapter, client, card_details):
        result = adapter.create_vault("acct-1", card_details)

        assert isinstance(result, Success)
        assert result.transaction_id == "cus_new"
        assert result.data == {
            "customer_id": "cus_new",
            "payment_method_id": "pm_new",
            "customer": {"id": "cus_new"},
        }
        params = client.customers.create.call_args.kwargs["params"]
        assert params["metadata"] == {"external_id": "acct-1"}
        client.payment_methods.attach.assert_called_once_with("pm_new", params={"customer": "cus_new"})
        client.customers.update.assert_called_once_with(
            "cus_new", params={"invoice_settings": {"default_payment_method": "pm_new"}}
        )

    def test_existing_customer_is_reused(self, adapter, client, card_details):
        result = adapter.create_vault("acct-1", card_details, existing={"customer_id": "cus_1"})

        assert result.transaction_id == "cus_1"
        client.customers.retrieve.assert_called_once_with("cus_1")
        client.customers.create.assert_not_called()

    def test_nested_customer_reference_is_reused(self, adapter, client, card_details):
        adapter.create_vault("acct-1", card_details, existing={"customer": {"id": "cus_1"}})
        client.customers.create.assert_not_called()

    def test_deleted_customer_is_recreated(self, adapter, client, card_details):
        client.customers.retrieve.return_value = stripe_object(id="cus_1", deleted=True)
        result = adapter.create_vault("acct-1", card_details, existing={"customer_id": "cus_1"})

        assert result.transaction_id == "cus_new"
        client.customers.create.assert_called_once()

    def test_missing_customer_is_recreated(self, adapter, client, card_details):
        client.customers.retrieve.side_effect = stripe.InvalidRequestError("No such customer", "id")
        result = adapter.create_vault("acct-1", card_details, existing={"customer_id": "cus_gone"})

        assert result.transaction_id == "cus_new"

    def test_bank_account(self, adapter, client):
        details = BillingDetails(
            first_name="Pat",
            payment_method=PaymentMethodKind.ACH,
            ach=AchDetails(account_name="Pat Doe", routing_number="110000000", account_number="000123456789",
                           account_holder_type="individual", account_type="checking"),
        )
        adapter.create_vault("acct-1", details)

        params = client.payment_methods.create.call_args.kwargs["params"]
        assert params["type"] == "us_bank_account"
        assert params["us_bank_account"]["routing_number"] == "110000000"
        client.customers.update.assert_not_called()

    def test_delete_vault_detaches_methods(self, adapter, client):
        client.payment_methods.list.return_value = SimpleNamespace(
            data=[stripe_object(id="pm_a"), stripe_object(id="pm_b")]
        )
        result = adapter.delete_vault("cus_1")

        assert isinstance(result, Success)
        assert [c.args[0] for c in client.payment_methods.detach.call_args_list] == ["pm_a", "pm_b"]
        client.customers.delete.assert_called_once_with("cus_1")


class TestVaultTransaction:
    """Off-session recurring charges."""

    def test_charges_default_payment_method(self, adapter, client):
        result = adapter.vault_transaction(_charge(description="Monthly subscription payment for Pro"))

        assert isinstance(result, Success)
        assert result.transaction_id == "pi_1"
        assert result.data == {"id": "pi_1", "status": "succeeded"}
        params = client.payment_intents.create.call_args.kwargs["params"]
        assert params["amount"] == 2999
        assert params["currency"] == "usd"
        assert params["payment_method"] == "pm_default"
        assert params["off_session"] is True
        assert params["confirm"] is True
        assert params["metadata"]["stored_credential_indicator"] == "recurring"

    def test_falls_back_to_first_listed_method(self, adapter, client):
        client.customers.retrieve.return_value = stripe_object(id="cus_1", invoice_settings=None)
        client.payment_methods.list.return_value = SimpleNamespace(data=[stripe_object(id="pm_first")])

        adapter.vault_transaction(_charge())
        assert client.payment_intents.create.call_args.kwargs["params"]["payment_method"] == "pm_first"

    def test_no_payment_method(self, adapter, client):
        client.customers.retrieve.return_value = stripe_object(id="cus_1", invoice_settings=None)
        client.payment_methods.list.return_value = SimpleNamespace(data=[])

        result = adapter.vault_transaction(_charge())
        assert isinstance(result, Decline)
        assert result.code == "NO_PAYMENT_METHOD"

    def test_missing_customer_reference(self, adapter, client):
        result = adapter.vault_transaction(_charge(vault_reference={"payment_method_id": "pm_1"}))

        assert result.code == "MISSING_VAULT"
        client.payment_intents.create.assert_not_called()

    def test_unsettled_intent_is_declined(self, adapter, client):
        client.payment_intents.create.return_value = stripe_object(id="pi_2", status="requires_action")
        result = adapter.vault_transaction(_charge())

        assert isinstance(result, Decline)
        assert result.code == "requires_action"
        assert result.transaction_id == "pi_2"


class TestErrorTranslation:
    """Stripe exceptions become declines or infrastructure errors."""

    def test_card_error_is_decline(self, adapter, client):
        client.payment_intents.create.side_effect = stripe.CardError(
            "Your card has insufficient funds.", None, "card_declined"
        )
        result = adapter.vault_transaction(_charge())

        assert isinstance(result, Decline)
        assert result.code == "card_declined"
        assert "insufficient funds" in result.message

    def test_invalid_request_is_decline(self, adapter, client):
        client.payment_intents.create.side_effect = stripe.InvalidRequestError("Amount too small", "amount")
        result = adapter.vault_transaction(_charge())

        assert isinstance(result, Decline)
        assert result.code == "invalid_request"

    def test_timeout(self, adapter, client):
        client.payment_intents.create.side_effect = stripe.APIConnectionError("Request timed out")
        with pytest.raises(ProcessorTimeout):
            adapter.vault_transaction(_charge())

    def test_connection_error(self, adapter, client):
        client.payment_intents.create.side_effect = stripe.APIConnectionError("Connection reset")
        with pytest.raises(ProcessorUnavailable) as excinfo:
            adapter.vault_transaction(_charge())
        assert not isinstance(excinfo.value, ProcessorTimeout)
        assert excinfo.value.retryable is True

    def test_authentication_error_not_retryable(self, adapter, client):
        client.payment_intents.create.side_effect = stripe.AuthenticationError("Invalid API key")
        with pytest.raises(ProcessorUnavailable) as excinfo:
            adapter.vault_transaction(_charge())
        assert excinfo.value.retryable is False


class TestDirectOperations:
    """Single payments, capture, void and refund."""

    def test_process_payment_with_token(self, adapter, client, card_details):
        result = adapter.process_payment(PaymentRequest(amount=Decimal("10"), billing=card_details))

        assert isinstance(result, Success)
        params = client.payment_intents.create.call_args.kwargs["params"]
        assert params["payment_method_data"] == {"type": "card", "card": {"token": "tok_visa"}}
        assert params["capture_method"] == "automatic"

    def test_process_payment_needs_token(self, adapter, client):
        result = adapter.process_payment(PaymentRequest(amount=Decimal("10")))
        assert result.code == "TOKEN_REQUIRED"

    def test_authorize_is_manual_capture(self, adapter, client, card_details):
        client.payment_intents.create.return_value = stripe_object(id="pi_3", status="requires_capture")
        result = adapter.authorize_transaction(PaymentRequest(amount=Decimal("10"), billing=card_details))

        assert isinstance(result, Success)
        assert client.payment_intents.create.call_args.kwargs["params"]["capture_method"] == "manual"

    def test_partial_capture(self, adapter, client):
        client.payment_intents.capture.return_value = stripe_object(id="pi_3", status="succeeded")
        adapter.capture_transaction(CaptureRequest(transaction_id="pi_3", amount=Decimal("4.50")))

        client.payment_intents.capture.assert_called_once_with("pi_3", params={"amount_to_capture": 450})

    def test_void(self, adapter, client):
        client.payment_intents.cancel.return_value = stripe_object(id="pi_3", status="canceled")
        result = adapter.void_transaction(VoidRequest(transaction_id="pi_3"))

        assert result.status == "canceled"

    def test_partial_refund(self, adapter, client):
        client.refunds.create.return_value = stripe_object(id="re_1", status="succeeded")
        result = adapter.refund_transaction(RefundRequest(transaction_id="pi_1", amount=Decimal("5")))

        assert result.transaction_id == "re_1"
        client.refunds.create.assert_called_once_with(params={
            "payment_intent": "pi_1",
            "reason": "requested_by_customer",
            "amount": 500,
        })


class TestConnection:
    def test_probe_success(self, adapter, client):
        assert adapter.test_connection() is True
        client.balance.retrieve.assert_called_once()

    def test_probe_failure(self, adapter, client):
        client.balance.retrieve.side_effect = stripe.APIConnectionError("down")
        assert adapter.test_connection() is False


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("10.005")) == 1001
    assert to_cents(Decimal("108.00")) == 10800
