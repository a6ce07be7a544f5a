"""
Processor-specific checks on payment form data before it is sent to a vault.
"""

from .errors import PaymentValidationError
from .models import BillingDetails, PaymentMethodKind

ACCOUNT_HOLDER_TYPES = ("individual", "company")
ACCOUNT_TYPES = ("checking", "savings")

PASS_THROUGH_PROCESSORS = ("pyre", "pyreprocessing", "paynetworx")


def validate_payment_details(processor_name: str, details: BillingDetails) -> bool:
    """
    Validate payment form values for the given processor.

    Raises:
        PaymentValidationError: the form is not acceptable for this processor
    """
    name = processor_name.lower()
    if name == "stripe":
        return _validate_stripe(details)
    if name in PASS_THROUGH_PROCESSORS:
        return True
    raise PaymentValidationError(f"Unsupported payment processor: {processor_name}")


def _validate_stripe(details: BillingDetails) -> bool:
    if details.payment_method == PaymentMethodKind.CREDIT_CARD:
        if not details.token:
            raise PaymentValidationError("Stripe token is required for credit card payments")
        if details.card is not None and (details.card.number or details.card.cvv):
            raise PaymentValidationError("Raw card data should not be sent when using Stripe tokens")
        return True

    ach = details.ach
    if ach is None:
        raise PaymentValidationError("ACH details are required for bank account payments")
    if not ach.account_name:
        raise PaymentValidationError("Account holder name is required for ACH payments")
    if not ach.routing_number:
        raise PaymentValidationError("Routing number is required for ACH payments")
    if not ach.account_number:
        raise PaymentValidationError("Account number is required for ACH payments")
    if ach.account_holder_type not in ACCOUNT_HOLDER_TYPES:
        raise PaymentValidationError(
            "Valid account holder type (individual/company) is required for ACH payments"
        )
    if ach.account_type not in ACCOUNT_TYPES:
        raise PaymentValidationError("Valid account type (checking/savings) is required for ACH payments")
    return True
