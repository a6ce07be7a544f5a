"""
Charge amount and billing-date arithmetic for recurring billing.

All money is handled as Decimal and rounded half-up to cents.
"""

from dataclasses import dataclass
from datetime import datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

from .models import BillingAccount, Plan

CENT = Decimal("0.01")
MONTHS_PER_YEAR = 12


def to_money(value) -> Decimal:
    """Round any numeric value to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ChargeBreakdown:
    """How a recurring charge total was built up."""

    subscription_amount: Decimal
    credits_applied: Decimal = Decimal("0.00")
    setup_fee: Decimal = Decimal("0.00")

    @property
    def total(self) -> Decimal:
        return to_money(self.subscription_amount - self.credits_applied + self.setup_fee)

    @property
    def includes_setup_fee(self) -> bool:
        return self.setup_fee > 0


def subscription_amount(plan: Plan, is_yearly: bool) -> Decimal:
    """Plan price for one cycle; yearly cycles get 12 months at the yearly discount."""
    amount = plan.price
    if is_yearly:
        amount = amount * MONTHS_PER_YEAR * (Decimal("1") - plan.yearly_discount)
    return to_money(amount)


def compute_charge(
    plan: Plan,
    account: BillingAccount,
    setup_fee: Decimal,
) -> ChargeBreakdown:
    """
    Compute the amount owed by an account for its current cycle.

    Account credits only offset the subscription portion; the one-time setup
    fee is added on top while ``setup_fee_paid`` is false.

    Args:
        plan: The account's plan
        account: The billing account being charged
        setup_fee: Flat setup fee configured for the platform

    Returns:
        ChargeBreakdown with the subscription amount, credits used and fee
    """
    base = subscription_amount(plan, account.is_yearly)
    credits = to_money(max(account.credits, Decimal("0")))
    credits_applied = min(credits, base)
    fee = to_money(setup_fee) if not account.setup_fee_paid else Decimal("0.00")
    return ChargeBreakdown(
        subscription_amount=base,
        credits_applied=credits_applied,
        setup_fee=fee,
    )


def next_billing_date(now: datetime, is_yearly: bool) -> datetime:
    """
    First day of next month, or the first day of the same month next year.

    The returned datetime keeps the tzinfo of ``now`` and is always strictly
    after it.
    """
    step = relativedelta(years=1) if is_yearly else relativedelta(months=1)
    target = now + step
    return target.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def end_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)


def describe_charge(plan: Optional[Plan], is_yearly: bool, failed: bool = False) -> str:
    if plan is None:
        return "Payment processing failed" if failed else "Payment processed successfully"
    cycle = "annual" if is_yearly else "monthly"
    if failed:
        return f"Failed {cycle} subscription payment for {plan.name}"
    return f"{cycle.capitalize()} subscription payment for {plan.name}"
