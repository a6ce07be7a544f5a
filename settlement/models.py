"""
Billing data models with strict validation for financial data integrity.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    TRIALING = "trialing"


CHARGEABLE_STATUSES = (AccountStatus.ACTIVE, AccountStatus.TRIALING)


class ReceiptStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOIDED = "voided"


class ReceiptType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    VOID = "void"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentMethodKind(str, Enum):
    CREDIT_CARD = "creditcard"
    ACH = "ach"


# =============================================================================
# ACCOUNTS AND PLANS
# =============================================================================

class Payor(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Plan(BaseModel):
    id: str
    name: str
    price: Decimal
    yearly_discount: Decimal = Decimal("0")  # fraction, 0.1 == 10% off
    billing_cycle: BillingCycle = BillingCycle.MONTHLY

    @field_validator("price")
    @classmethod
    def _price_not_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("plan price cannot be negative")
        return value

    @field_validator("yearly_discount")
    @classmethod
    def _discount_is_fraction(cls, value: Decimal) -> Decimal:
        if value < 0 or value >= 1:
            raise ValueError("yearly_discount must be a fraction in [0, 1)")
        return value


class BillingAccount(BaseModel):
    """One billed profile and its scheduling / vault state."""

    id: str
    customer_id: str
    profile_id: str
    email: str = ""
    plan_id: Optional[str] = None
    payor: Optional[Payor] = None
    status: AccountStatus = AccountStatus.ACTIVE
    vaulted: bool = False
    vault_id: Optional[str] = None
    is_yearly: bool = False
    setup_fee_paid: bool = False
    next_billing_date: Optional[datetime] = None
    needs_update: bool = False
    processor: Optional[str] = None
    payment_processor_data: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    credits: Decimal = Decimal("0")
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _vaulted_requires_vault_id(self) -> "BillingAccount":
        if self.vaulted and not self.vault_id:
            raise ValueError("a vaulted account must carry a vault_id")
        return self

    @property
    def user_id(self) -> Optional[str]:
        return self.payor.id if self.payor else None


class ScheduleUpdate(BaseModel):
    """Partial update of the scheduling fields; unset fields are left alone."""

    next_billing_date: Optional[datetime] = None
    status: Optional[AccountStatus] = None
    needs_update: Optional[bool] = None
    setup_fee_paid: Optional[bool] = None
    credits: Optional[Decimal] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# =============================================================================
# RECEIPTS
# =============================================================================

class PlanSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    plan_name: str
    plan_price: Decimal
    billing_cycle: BillingCycle


class ProcessorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    transaction_id: str
    response: Any = None


class CustomerSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str = ""
    name: str = ""
    phone: str = ""


class FailureInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: str
    code: str
    retryable: bool = False


class Receipt(BaseModel):
    """Immutable record of one charge attempt (or correction) and its outcome."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    billing_account_id: str
    user_id: Optional[str] = None
    status: ReceiptStatus
    type: ReceiptType = ReceiptType.PAYMENT
    amount: Decimal
    currency: str = "USD"
    description: str = ""
    plan_info: Optional[PlanSnapshot] = None
    processor: ProcessorInfo
    customer: CustomerSnapshot = Field(default_factory=CustomerSnapshot)
    failure: Optional[FailureInfo] = None
    related_transaction_id: Optional[str] = None
    transaction_date: datetime = Field(default_factory=utcnow)


# =============================================================================
# PROVIDER REQUESTS
# =============================================================================

class CardDetails(BaseModel):
    number: str
    exp: str  # "MM/YY" or "MM/YYYY"
    cvv: Optional[str] = None

    @property
    def exp_month(self) -> str:
        return self.exp.split("/")[0].strip() if "/" in self.exp else ""

    @property
    def exp_year(self) -> str:
        return self.exp.split("/")[1].strip() if "/" in self.exp else ""


class AchDetails(BaseModel):
    account_name: str = ""
    routing_number: str = ""
    account_number: str = ""
    account_holder_type: str = ""  # individual | company
    account_type: str = ""  # checking | savings


class BillingDetails(BaseModel):
    """Payment form values handed straight to a provider vault; never persisted."""

    first_name: str
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"
    currency: str = "USD"
    payment_method: PaymentMethodKind = PaymentMethodKind.CREDIT_CARD
    card: Optional[CardDetails] = None
    ach: Optional[AchDetails] = None
    token: Optional[str] = None  # provider-side tokenized card (e.g. Stripe)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PaymentRequest(BaseModel):
    amount: Decimal
    currency: str = "USD"
    customer_id: Optional[str] = None
    billing: Optional[BillingDetails] = None
    vault_reference: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""


class CaptureRequest(BaseModel):
    transaction_id: str
    amount: Optional[Decimal] = None
    tax: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    currency: str = "USD"


class VoidRequest(BaseModel):
    transaction_id: str
    reason: str = "customer-cancellation"


class RefundRequest(BaseModel):
    transaction_id: str
    amount: Optional[Decimal] = None  # None = full refund
    currency: str = "USD"


class VaultChargeRequest(BaseModel):
    """Charge against a previously vaulted payment method."""

    vault_reference: Dict[str, Any]
    amount: Decimal
    currency: str = "USD"
    customer_id: Optional[str] = None
    initiated_by: str = "system"
    stored_credential_indicator: str = "recurring"
    description: str = ""
