"""
Tests for vault setup, refunds, voids and history lookups.
"""

from decimal import Decimal
from unittest.mock import MagicMock, Mock

import pytest
import requests

from settlement.errors import (
    AccountNotFound,
    LedgerWriteError,
    PaymentValidationError,
    ProcessorUnavailable,
    ReceiptNotFound,
)
from settlement.ledger import generate_transaction_id
from settlement.models import (
    AchDetails,
    BillingDetails,
    CardDetails,
    PaymentMethodKind,
    ProcessorInfo,
    Receipt,
    ReceiptStatus,
    ReceiptType,
)
from settlement.notifier import LEDGER_WRITE_FAILED
from settlement.processors import PaynetworxProcessor
from settlement.registry import ProcessorConfig, ProcessorRegistry, SelectionOptions
from settlement.results import Decline, Success
from settlement.transactions import TransactionService
from settlement.validation import validate_payment_details

from tests.conftest import FakeProcessor


class CorrectingProcessor(FakeProcessor):
    """Fake adapter that also refunds, voids and reports history."""

    def __init__(self, name="stripe", refund_result=None, history_error=None):
        super().__init__(name=name)
        self.refund_result = refund_result
        self.history_error = history_error
        self.refunds = []
        self.voids = []

    def refund_transaction(self, request):
        self.refunds.append(request)
        return self.refund_result or Success(message="refunded", data={"id": "re_1"}, transaction_id="re_1")

    def void_transaction(self, request):
        self.voids.append(request)
        return Success(message="voided", data={"id": request.transaction_id}, transaction_id=request.transaction_id)

    def fetch_transactions(self, customer_id):
        if self.history_error is not None:
            raise self.history_error
        return Success(data={"charges": [], "customer": customer_id})


@pytest.fixture
def adapter():
    return CorrectingProcessor()


@pytest.fixture
def service(gateway, ledger, settings, adapter, notifier):
    registry = ProcessorRegistry([ProcessorConfig("stripe", lambda env: adapter, priority=1)], env={})
    return TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions(),
                              notifier=notifier)


@pytest.fixture
def payment(ledger):
    return ledger.append(Receipt(
        transaction_id=generate_transaction_id(),
        billing_account_id="acct-1",
        user_id="user-acct-1",
        status=ReceiptStatus.SUCCESS,
        amount=Decimal("79.99"),
        description="Monthly subscription payment for Pro (includes setup fee)",
        processor=ProcessorInfo(name="stripe", transaction_id="pi_1"),
    ))


class TestRefund:
    """Refund receipts reference the original and never change it."""

    def test_full_refund(self, service, adapter, ledger, payment):
        receipt = service.refund(payment.transaction_id)

        assert receipt.type == ReceiptType.REFUND
        assert receipt.status == ReceiptStatus.REFUNDED
        assert receipt.amount == Decimal("-79.99")
        assert receipt.related_transaction_id == payment.transaction_id
        assert receipt.processor.transaction_id == "re_1"
        assert adapter.refunds[0].transaction_id == "pi_1"
        assert adapter.refunds[0].amount == Decimal("79.99")

        assert ledger.get(payment.transaction_id) == payment
        assert ledger.get(receipt.transaction_id) == receipt

    def test_partial_refund(self, service, adapter, payment):
        receipt = service.refund(payment.transaction_id, amount=Decimal("20"))

        assert receipt.amount == Decimal("-20.00")
        assert adapter.refunds[0].amount == Decimal("20.00")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("80.00")])
    def test_amount_out_of_range(self, service, adapter, payment, amount):
        with pytest.raises(PaymentValidationError):
            service.refund(payment.transaction_id, amount=amount)
        assert adapter.refunds == []

    def test_declined_refund_records_failure(self, gateway, ledger, settings, payment):
        adapter = CorrectingProcessor(refund_result=Decline(message="Charge already refunded", code="charge_already_refunded"))
        registry = ProcessorRegistry([ProcessorConfig("stripe", lambda env: adapter, priority=1)], env={})
        service = TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions())

        receipt = service.refund(payment.transaction_id)

        assert receipt.status == ReceiptStatus.FAILED
        assert receipt.failure.code == "charge_already_refunded"

    def test_unknown_receipt(self, service):
        with pytest.raises(ReceiptNotFound):
            service.refund("TXN_missing")

    def test_credit_settled_payment_cannot_be_refunded(self, service, ledger):
        credit = ledger.append(Receipt(
            transaction_id=generate_transaction_id(),
            billing_account_id="acct-1",
            status=ReceiptStatus.SUCCESS,
            amount=Decimal("0.00"),
            processor=ProcessorInfo(name="stripe", transaction_id="CREDIT_TXN_1_AB"),
        ))
        with pytest.raises(PaymentValidationError):
            service.refund(credit.transaction_id)

    def test_failed_payment_cannot_be_refunded(self, service, ledger):
        failed = ledger.append(Receipt(
            transaction_id=generate_transaction_id(),
            billing_account_id="acct-1",
            status=ReceiptStatus.FAILED,
            amount=Decimal("29.99"),
            processor=ProcessorInfo(name="stripe", transaction_id=""),
        ))
        with pytest.raises(PaymentValidationError):
            service.refund(failed.transaction_id)

    def test_refund_uses_original_processor(self, gateway, ledger, settings):
        stripe_adapter = CorrectingProcessor("stripe")
        pyre_adapter = CorrectingProcessor("pyreprocessing")
        registry = ProcessorRegistry([
            ProcessorConfig("stripe", lambda env: stripe_adapter, priority=1),
            ProcessorConfig("pyreprocessing", lambda env: pyre_adapter, priority=2, aliases=("pyre",)),
        ], env={})
        service = TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions())
        original = ledger.append(Receipt(
            transaction_id=generate_transaction_id(),
            billing_account_id="acct-1",
            status=ReceiptStatus.SUCCESS,
            amount=Decimal("10.00"),
            processor=ProcessorInfo(name="pyreprocessing", transaction_id="t-1"),
        ))

        service.refund(original.transaction_id)

        assert len(pyre_adapter.refunds) == 1
        assert stripe_adapter.refunds == []

    def test_full_refund_through_paynetworx_sends_amount(self, gateway, ledger, settings):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        response = MagicMock(status_code=200, reason="OK")
        response.json.return_value = {"Approved": True, "TransactionID": "pnx-r1"}
        session.request.return_value = response
        paynetworx = PaynetworxProcessor("https://pnx.test", "merchant", "secret", session=session)
        registry = ProcessorRegistry([ProcessorConfig("paynetworx", lambda env: paynetworx, priority=1)], env={})
        service = TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions())
        original = ledger.append(Receipt(
            transaction_id=generate_transaction_id(),
            billing_account_id="acct-1",
            status=ReceiptStatus.SUCCESS,
            amount=Decimal("79.99"),
            processor=ProcessorInfo(name="paynetworx", transaction_id="pnx-1"),
        ))

        receipt = service.refund(original.transaction_id)

        assert receipt.amount == Decimal("-79.99")
        assert receipt.status == ReceiptStatus.REFUNDED
        assert session.request.call_args.kwargs["json"]["Amount"] == {"Total": "79.99", "Currency": "USD"}

    def test_unwritable_receipt_is_reported(self, gateway, settings, notifier, adapter, payment, ledger):
        broken = Mock(wraps=ledger)
        broken.append.side_effect = LedgerWriteError("disk full")
        registry = ProcessorRegistry([ProcessorConfig("stripe", lambda env: adapter, priority=1)], env={})
        service = TransactionService(gateway, broken, registry, settings=settings,
                                     selection=SelectionOptions(), notifier=notifier)

        with pytest.raises(LedgerWriteError):
            service.refund(payment.transaction_id)

        assert len(adapter.refunds) == 1
        assert broken.append.call_count == 3
        topic, event = notifier.events[-1]
        assert topic == LEDGER_WRITE_FAILED
        assert event["type"] == "refund"
        assert event["severity"] == "high"


class TestRefundLimits:
    """Earlier corrections bound what can still be refunded or voided."""

    def test_second_full_refund_rejected(self, service, adapter, payment):
        service.refund(payment.transaction_id)

        with pytest.raises(PaymentValidationError, match="fully refunded"):
            service.refund(payment.transaction_id)
        assert len(adapter.refunds) == 1

    def test_partial_refunds_up_to_original(self, service, adapter, payment):
        service.refund(payment.transaction_id, amount=Decimal("30"))
        rest = service.refund(payment.transaction_id)

        assert rest.amount == Decimal("-49.99")
        assert [request.amount for request in adapter.refunds] == [Decimal("30.00"), Decimal("49.99")]

    def test_partial_refund_over_remaining_rejected(self, service, adapter, payment):
        service.refund(payment.transaction_id, amount=Decimal("60"))

        with pytest.raises(PaymentValidationError):
            service.refund(payment.transaction_id, amount=Decimal("20"))
        assert len(adapter.refunds) == 1

    def test_failed_refund_does_not_count(self, gateway, ledger, settings, payment):
        adapter = CorrectingProcessor(refund_result=Decline(message="Try later", code="processing_error"))
        registry = ProcessorRegistry([ProcessorConfig("stripe", lambda env: adapter, priority=1)], env={})
        service = TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions())

        service.refund(payment.transaction_id)
        adapter.refund_result = None
        receipt = service.refund(payment.transaction_id)

        assert receipt.status == ReceiptStatus.REFUNDED
        assert receipt.amount == Decimal("-79.99")

    def test_refund_after_void_rejected(self, service, adapter, payment):
        service.void(payment.transaction_id)

        with pytest.raises(PaymentValidationError, match="voided"):
            service.refund(payment.transaction_id)
        assert adapter.refunds == []


class TestVoid:
    def test_void_receipt(self, service, adapter, payment):
        receipt = service.void(payment.transaction_id)

        assert receipt.type == ReceiptType.VOID
        assert receipt.status == ReceiptStatus.VOIDED
        assert receipt.amount == Decimal("0.00")
        assert receipt.related_transaction_id == payment.transaction_id
        assert adapter.voids[0].transaction_id == "pi_1"

    def test_void_after_refund_rejected(self, service, adapter, payment):
        service.refund(payment.transaction_id, amount=Decimal("10"))

        with pytest.raises(PaymentValidationError):
            service.void(payment.transaction_id)
        assert adapter.voids == []

    def test_second_void_rejected(self, service, adapter, payment):
        service.void(payment.transaction_id)

        with pytest.raises(PaymentValidationError):
            service.void(payment.transaction_id)
        assert len(adapter.voids) == 1


class TestVaultAccount:
    """Payment method setup through the selected processor."""

    def test_vault_saves_reference(self, service, adapter, seed, gateway):
        seed("acct-1", processor_data={}, vaulted=False, vault_id=None, needs_update=True)
        result = service.vault_account("acct-1", BillingDetails(first_name="Pat", token="tok_visa"))

        assert isinstance(result, Success)
        account = gateway.get("acct-1")
        assert account.payment_processor_data["stripe"] == {"customer_id": "vault_cust-acct-1"}
        assert account.vault_id == "vault_cust-acct-1"
        assert account.vaulted is True
        assert account.needs_update is False

    def test_existing_reference_passed_for_reuse(self, service, adapter, seed):
        seed("acct-1")
        service.vault_account("acct-1", BillingDetails(first_name="Pat", token="tok_visa"))

        _, _, existing = adapter.vaults[0]
        assert existing == {"customer_id": "cus_acct-1"}

    def test_invalid_details_never_reach_processor(self, service, adapter, seed):
        seed("acct-1")
        with pytest.raises(PaymentValidationError):
            service.vault_account("acct-1", BillingDetails(first_name="Pat"))
        assert adapter.vaults == []

    def test_unknown_account(self, service):
        with pytest.raises(AccountNotFound):
            service.vault_account("nope", BillingDetails(first_name="Pat", token="tok"))


class TestHistory:
    def test_history_from_processor(self, service, seed):
        seed("acct-1")
        result = service.fetch_history("acct-1")

        assert isinstance(result, Success)
        assert result.data["customer"] == "vault-acct-1"

    def test_outage_degrades_to_decline(self, gateway, ledger, settings, seed):
        adapter = CorrectingProcessor(history_error=ProcessorUnavailable("stripe", "HTTP 503"))
        registry = ProcessorRegistry([ProcessorConfig("stripe", lambda env: adapter, priority=1)], env={})
        service = TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions())
        seed("acct-1")

        result = service.fetch_history("acct-1")
        assert isinstance(result, Decline)
        assert result.code == "HISTORY_UNAVAILABLE"

    def test_unsupported_degrades_to_decline(self, gateway, ledger, settings, seed):
        plain = FakeProcessor("paynetworx")
        registry = ProcessorRegistry([ProcessorConfig("paynetworx", lambda env: plain, priority=1)], env={})
        service = TransactionService(gateway, ledger, registry, settings=settings, selection=SelectionOptions())
        seed("acct-1")

        assert service.fetch_history("acct-1").code == "HISTORY_UNAVAILABLE"


class TestValidation:
    """Processor-specific payment form checks."""

    def test_stripe_requires_token(self):
        with pytest.raises(PaymentValidationError, match="Stripe token is required"):
            validate_payment_details("stripe", BillingDetails(first_name="Pat"))

    def test_stripe_rejects_raw_card_data(self):
        details = BillingDetails(
            first_name="Pat", token="tok_visa",
            card=CardDetails(number="4111111111111111", exp="12/29", cvv="123"),
        )
        with pytest.raises(PaymentValidationError, match="Raw card data"):
            validate_payment_details("stripe", details)

    def test_stripe_ach(self):
        ach = AchDetails(account_name="Pat Doe", routing_number="110000000", account_number="0001",
                         account_holder_type="individual", account_type="checking")
        details = BillingDetails(first_name="Pat", payment_method=PaymentMethodKind.ACH, ach=ach)
        assert validate_payment_details("Stripe", details) is True

    def test_stripe_ach_account_type(self):
        ach = AchDetails(account_name="Pat Doe", routing_number="110000000", account_number="0001",
                         account_holder_type="individual", account_type="brokerage")
        details = BillingDetails(first_name="Pat", payment_method=PaymentMethodKind.ACH, ach=ach)
        with pytest.raises(PaymentValidationError, match="checking/savings"):
            validate_payment_details("stripe", details)

    @pytest.mark.parametrize("name", ["pyre", "pyreprocessing", "paynetworx"])
    def test_pass_through_processors(self, name):
        assert validate_payment_details(name, BillingDetails(first_name="Pat")) is True

    def test_unsupported_processor(self):
        with pytest.raises(PaymentValidationError, match="Unsupported payment processor: square"):
            validate_payment_details("square", BillingDetails(first_name="Pat"))
