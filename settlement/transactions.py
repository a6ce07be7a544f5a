"""
Operator-facing transaction operations: vault setup, refunds, voids and
provider history lookups.

Refunds and voids never modify the original receipt; each writes a new
receipt linked back through ``related_transaction_id``.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from .config import Settings, get_settings
from .errors import (
    AccountNotFound,
    LedgerWriteError,
    OperationNotSupported,
    PaymentValidationError,
    ProcessorUnavailable,
    ReceiptNotFound,
)
from .gateway import BillingAccountGateway
from .ledger import ReceiptLedger, ReceiptRecorder, generate_transaction_id
from .logging import log_action
from .models import (
    BillingAccount,
    BillingDetails,
    FailureInfo,
    ProcessorInfo,
    Receipt,
    ReceiptStatus,
    ReceiptType,
    RefundRequest,
    VoidRequest,
    utcnow,
)
from .notifier import EventNotifier
from .pricing import to_money
from .processors import ProcessorAdapter
from .registry import ProcessorRegistry, SelectionOptions
from .results import Decline, ProcessorResult, Success
from .validation import validate_payment_details

logger = logging.getLogger(__name__)


class TransactionService:
    def __init__(
        self,
        gateway: BillingAccountGateway,
        ledger: ReceiptLedger,
        registry: ProcessorRegistry,
        settings: Optional[Settings] = None,
        selection: Optional[SelectionOptions] = None,
        notifier: Optional[EventNotifier] = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.registry = registry
        self.settings = settings or get_settings()
        self.selection = selection or SelectionOptions.for_environment(self.settings)
        self.recorder = ReceiptRecorder(ledger, notifier)

    def _account(self, account_id: str) -> BillingAccount:
        account = self.gateway.get(account_id)
        if account is None:
            raise AccountNotFound(f"Billing account {account_id} not found")
        return account

    def _original_payment(self, transaction_id: str) -> Receipt:
        receipt = self.ledger.get(transaction_id)
        if receipt is None:
            raise ReceiptNotFound(f"Receipt {transaction_id} not found")
        if receipt.type != ReceiptType.PAYMENT or receipt.status != ReceiptStatus.SUCCESS:
            raise PaymentValidationError(f"Receipt {transaction_id} is not a successful payment")
        if not receipt.processor.transaction_id or receipt.processor.transaction_id.startswith("CREDIT_"):
            raise PaymentValidationError(f"Receipt {transaction_id} was not settled by a processor")
        return receipt

    def _corrections(self, original: Receipt) -> List[Receipt]:
        """Refunds and voids already applied to ``original``; failed attempts excluded."""
        return [
            receipt
            for receipt in self.ledger.list_for_account(original.billing_account_id)
            if receipt.related_transaction_id == original.transaction_id
            and receipt.status in (ReceiptStatus.REFUNDED, ReceiptStatus.VOIDED)
        ]

    def _processor_for(self, receipt: Receipt) -> ProcessorAdapter:
        return self.registry.choose(receipt.processor.name)

    def _record(self, receipt: Receipt) -> Receipt:
        if not self.recorder.record(receipt):
            raise LedgerWriteError(
                f"{receipt.type.value} {receipt.transaction_id} was sent to the processor "
                f"but its receipt could not be written"
            )
        return receipt

    # -------------------------------------------------------------------------
    # vault
    # -------------------------------------------------------------------------

    def vault_account(self, account_id: str, details: BillingDetails) -> ProcessorResult:
        """
        Store the account's payment method with the selected processor.

        Card data goes straight to the provider and is never persisted; only
        the provider's vault reference is saved on the account.
        """
        account = self._account(account_id)
        processor = self.registry.select(self.selection).processor
        name = processor.get_processor_name()
        validate_payment_details(name, details)

        existing = account.payment_processor_data.get(name)
        result = processor.create_vault(account.customer_id, details, existing=existing)
        if isinstance(result, Success):
            vault_id = result.transaction_id or account.customer_id
            self.gateway.save_vault(account.id, name, result.data, vault_id)
            log_action("billing.vault.saved", f"Vaulted payment method for account {account.id}",
                       billing_account_id=account.id, processor=name)
        else:
            logger.warning("Vault creation for account %s failed: %s", account.id, result.message)
        return result

    # -------------------------------------------------------------------------
    # corrections
    # -------------------------------------------------------------------------

    def _correction_receipt(self, original: Receipt, receipt_type: ReceiptType, status: ReceiptStatus,
                            amount: Decimal, result: ProcessorResult, description: str) -> Receipt:
        failure = None
        if isinstance(result, Decline):
            failure = FailureInfo(reason=result.message, code=result.code)
        return Receipt(
            transaction_id=generate_transaction_id(),
            billing_account_id=original.billing_account_id,
            user_id=original.user_id,
            status=status if failure is None else ReceiptStatus.FAILED,
            type=receipt_type,
            amount=amount,
            currency=original.currency,
            description=description,
            plan_info=original.plan_info,
            processor=ProcessorInfo(
                name=original.processor.name,
                transaction_id=result.transaction_id or "",
                response=result.data,
            ),
            customer=original.customer,
            failure=failure,
            related_transaction_id=original.transaction_id,
            transaction_date=utcnow(),
        )

    def refund(self, transaction_id: str, amount: Optional[Decimal] = None) -> Receipt:
        """
        Refund a successful payment, fully or partially.

        Without ``amount`` whatever has not been refunded yet is refunded.
        The resolved amount is always sent to the processor.

        Returns:
            The new refund receipt (negative amount)

        Raises:
            PaymentValidationError: the payment was voided, or the amount
                exceeds what remains refundable
            LedgerWriteError: the processor was called but the receipt could
                not be written
        """
        original = self._original_payment(transaction_id)
        corrections = self._corrections(original)
        if any(receipt.type == ReceiptType.VOID for receipt in corrections):
            raise PaymentValidationError(f"Payment {transaction_id} has been voided")

        refunded = -sum((receipt.amount for receipt in corrections), Decimal("0.00"))
        remaining = to_money(original.amount - refunded)
        refund_amount = to_money(amount) if amount is not None else remaining
        if remaining <= 0:
            raise PaymentValidationError(f"Payment {transaction_id} has already been fully refunded")
        if refund_amount <= 0 or refund_amount > remaining:
            raise PaymentValidationError(
                f"Refund amount must be between 0 and {remaining}"
            )

        processor = self._processor_for(original)
        result = processor.refund_transaction(RefundRequest(
            transaction_id=original.processor.transaction_id,
            amount=refund_amount,
            currency=original.currency,
        ))
        receipt = self._correction_receipt(
            original,
            ReceiptType.REFUND,
            ReceiptStatus.REFUNDED,
            -refund_amount,
            result,
            f"Refund for {original.description or original.transaction_id}",
        )
        self._record(receipt)
        log_action("billing.refund", f"Refund {receipt.status.value} for {transaction_id}",
                   billing_account_id=original.billing_account_id, amount=str(refund_amount))
        return receipt

    def void(self, transaction_id: str) -> Receipt:
        original = self._original_payment(transaction_id)
        if self._corrections(original):
            raise PaymentValidationError(
                f"Payment {transaction_id} has already been refunded or voided"
            )
        processor = self._processor_for(original)
        result = processor.void_transaction(VoidRequest(transaction_id=original.processor.transaction_id))
        receipt = self._correction_receipt(
            original,
            ReceiptType.VOID,
            ReceiptStatus.VOIDED,
            Decimal("0.00"),
            result,
            f"Void of {original.description or original.transaction_id}",
        )
        self._record(receipt)
        log_action("billing.void", f"Void {receipt.status.value} for {transaction_id}",
                   billing_account_id=original.billing_account_id)
        return receipt

    # -------------------------------------------------------------------------
    # history
    # -------------------------------------------------------------------------

    def fetch_history(self, account_id: str) -> ProcessorResult:
        """Provider-side transaction history; degrades to a Decline when unavailable."""
        account = self._account(account_id)
        processor = self.registry.select(self.selection).processor
        customer_ref = account.vault_id or account.customer_id
        try:
            return processor.fetch_transactions(customer_ref)
        except (OperationNotSupported, ProcessorUnavailable) as exc:
            logger.info("History lookup for account %s unavailable: %s", account.id, exc)
            return Decline(message=str(exc), code="HISTORY_UNAVAILABLE")
