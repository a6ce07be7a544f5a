"""
Recurring Billing Engine
========================

One pass over every billing account that is due today:

1. take the run lock (a second concurrent run is refused)
2. load due accounts and resolve the processor once for the whole run
3. per account: claim -> compute amount -> charge -> receipt -> schedule update

Every attempt produces exactly one receipt. A failure on one account never
stops the batch; only the absence of any usable processor aborts the run.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import Settings, get_settings
from .errors import (
    AccountNotFound,
    NoProcessorAvailable,
    ProcessorTimeout,
    ProcessorUnavailable,
    RunInProgress,
    SettlementError,
)
from .gateway import BillingAccountGateway, PlanCatalog
from .ledger import ReceiptLedger, ReceiptRecorder, generate_transaction_id
from .logging import log_action
from .models import (
    AccountStatus,
    BillingAccount,
    CustomerSnapshot,
    FailureInfo,
    Plan,
    PlanSnapshot,
    ProcessorInfo,
    Receipt,
    ReceiptStatus,
    ScheduleUpdate,
    VaultChargeRequest,
    utcnow,
)
from .notifier import CHARGE_FAILED, NEEDS_UPDATE, RUN_ABORTED, EventNotifier
from .pricing import ChargeBreakdown, compute_charge, describe_charge, end_of_day, next_billing_date, to_money
from .processors import ProcessorAdapter
from .registry import ProcessorRegistry, SelectionOptions
from .results import ChargeOutcome, Decline, InfrastructureError, Success

logger = logging.getLogger(__name__)

MISSING_PROCESSOR_DATA = "MISSING_PROCESSOR_DATA"
PROCESSING_ERROR = "PROCESSING_ERROR"
PROCESSOR_TIMEOUT = "PROCESSOR_TIMEOUT"
PROCESSOR_UNAVAILABLE = "PROCESSOR_UNAVAILABLE"

# per-account outcomes
SUCCEEDED = "success"
FAILED = "failed"
SKIPPED = "skipped"
ERRORED = "error"


class RunLock:
    """Non-blocking, process-local guard against overlapping billing runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self.acquire():
            raise RunInProgress("A billing run is already in progress")
        try:
            yield
        finally:
            self.release()


@dataclass
class RunSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    processor: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record(self, account_id: str, outcome: str, detail: Optional[str] = None) -> None:
        if outcome == SUCCEEDED:
            self.successful += 1
        elif outcome == SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append({"accountId": account_id, "outcome": outcome, "error": detail})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "processor": self.processor,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class _Attempt:
    """Bookkeeping for one account charge attempt."""

    account: BillingAccount
    processor_name: str
    plan: Optional[Plan] = None
    amount: Decimal = Decimal("0.00")
    receipt: Optional[Receipt] = None
    outcome: str = ERRORED
    detail: Optional[str] = None


class RecurringBillingEngine:
    """Charges due billing accounts through a single processor per run."""

    def __init__(
        self,
        gateway: BillingAccountGateway,
        catalog: PlanCatalog,
        ledger: ReceiptLedger,
        notifier: EventNotifier,
        registry: Optional[ProcessorRegistry] = None,
        processor: Optional[ProcessorAdapter] = None,
        settings: Optional[Settings] = None,
        run_lock: Optional[RunLock] = None,
        selection: Optional[SelectionOptions] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if registry is None and processor is None:
            raise ValueError("RecurringBillingEngine needs a registry or a processor")
        self.gateway = gateway
        self.catalog = catalog
        self.ledger = ledger
        self.notifier = notifier
        self.recorder = ReceiptRecorder(ledger, notifier)
        self.registry = registry
        self.settings = settings or get_settings()
        self.run_lock = run_lock or RunLock()
        self.selection = selection or SelectionOptions.for_billing_run(self.settings)
        self._processor = processor
        self._clock = clock
        self._tz = ZoneInfo(self.settings.BILLING_SCHEDULE_TIMEZONE)
        self._lease = timedelta(minutes=self.settings.BILLING_CLAIM_LEASE_MINUTES)
        self.last_summary: Optional[RunSummary] = None

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def _resolve_processor(self) -> ProcessorAdapter:
        if self._processor is not None:
            return self._processor
        return self.registry.select(self.selection).processor

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            self.notifier.publish(topic, payload)
        except Exception as exc:
            logger.error("Failed to publish %s: %s", topic, exc)

    # -------------------------------------------------------------------------
    # batch run
    # -------------------------------------------------------------------------

    def run(self) -> RunSummary:
        """
        Charge every account due by the end of today.

        Raises:
            RunInProgress: another run holds the run lock
            NoProcessorAvailable: no processor could be selected; nothing was charged
        """
        with self.run_lock.hold():
            now = self._now()
            summary = RunSummary(started_at=now)
            log_action("billing.run.started", "Recurring billing run started", started_at=now.isoformat())

            accounts = self.gateway.find_due_accounts(end_of_day(now))
            summary.total = len(accounts)
            logger.info("Found %d billing accounts due for payment", len(accounts))

            if accounts:
                try:
                    processor = self._resolve_processor()
                except NoProcessorAvailable as exc:
                    log_action("billing.run.aborted", str(exc), level="error", skipped=exc.skipped)
                    self._publish(RUN_ABORTED, {
                        "reason": str(exc),
                        "skipped": exc.skipped,
                        "dueAccounts": len(accounts),
                        "severity": "high",
                    })
                    raise
                summary.processor = processor.get_processor_name()

                for account in accounts:
                    outcome, detail = self._process_account(account, processor, now)
                    summary.record(account.id, outcome, detail)

            summary.finished_at = self._now()
            self.last_summary = summary
            log_action(
                "billing.run.completed",
                "Recurring billing run completed",
                total=summary.total,
                successful=summary.successful,
                failed=summary.failed,
                skipped=summary.skipped,
                processor=summary.processor,
            )
            return summary

    def _process_account(self, account: BillingAccount, processor: ProcessorAdapter,
                         now: datetime) -> Tuple[str, Optional[str]]:
        token = uuid.uuid4().hex
        if not self.gateway.claim(account.id, token, account.next_billing_date, self._lease):
            logger.info("Skipping account %s: claimed by another run or no longer due", account.id)
            return SKIPPED, "claimed elsewhere"
        try:
            # the due list may be stale; charge from the row as it is under our claim
            current = self.gateway.get(account.id)
            if current is None:
                return SKIPPED, "account removed"
            attempt = self._attempt(current, processor, now)
            return attempt.outcome, attempt.detail
        finally:
            try:
                self.gateway.release(account.id, token)
            except Exception as exc:
                logger.error("Failed to release claim on account %s: %s", account.id, exc)

    def _attempt(self, account: BillingAccount, processor: ProcessorAdapter, now: datetime,
                 amount: Optional[Decimal] = None, description: Optional[str] = None,
                 update_billing_date: bool = True) -> _Attempt:
        """Charge one account inside the per-account error boundary."""
        attempt = _Attempt(account=account, processor_name=processor.get_processor_name())
        try:
            attempt.outcome, attempt.detail = self._charge(
                attempt, processor, now, amount, description, update_billing_date
            )
        except Exception as exc:
            logger.exception("Error processing payment for account %s", account.id)
            if attempt.receipt is None:
                attempt.receipt = self._record(self._receipt(
                    attempt,
                    status=ReceiptStatus.FAILED,
                    amount=Decimal("0"),
                    description="Payment processing error",
                    processor_transaction_id="ERROR",
                    response={"error": str(exc)},
                    failure=FailureInfo(reason=str(exc), code=PROCESSING_ERROR),
                ))
            try:
                self.gateway.update_schedule(account.id, ScheduleUpdate(needs_update=True))
            except Exception as update_exc:
                logger.error("Failed to flag account %s for update: %s", account.id, update_exc)
            attempt.outcome, attempt.detail = ERRORED, str(exc)
        return attempt

    # -------------------------------------------------------------------------
    # one account
    # -------------------------------------------------------------------------

    def _charge(self, attempt: _Attempt, processor: ProcessorAdapter, now: datetime,
                amount: Optional[Decimal], description: Optional[str],
                update_billing_date: bool) -> Tuple[str, Optional[str]]:
        account = attempt.account
        attempt.plan = self.catalog.get(account.plan_id) if account.plan_id else None

        vault_reference = processor.vault_reference_for(account)
        if vault_reference is None:
            return self._missing_processor_data(attempt)

        if amount is None:
            if attempt.plan is None:
                raise SettlementError(f"Plan {account.plan_id!r} not found for account {account.id}")
            breakdown = compute_charge(attempt.plan, account, self.settings.BILLING_SETUP_FEE)
        else:
            breakdown = ChargeBreakdown(subscription_amount=to_money(amount))
        attempt.amount = breakdown.total

        if breakdown.includes_setup_fee:
            self.gateway.update_schedule(account.id, ScheduleUpdate(setup_fee_paid=True))

        if description is None:
            description = describe_charge(attempt.plan, account.is_yearly)
            if breakdown.includes_setup_fee:
                description += " (includes setup fee)"

        if attempt.amount <= 0:
            result: ChargeOutcome = Success(
                message="Covered by account credits",
                transaction_id=f"CREDIT_{generate_transaction_id()}",
                data={"creditsApplied": str(breakdown.credits_applied)},
            )
        else:
            result = self._vault_charge(processor, account, vault_reference, attempt.amount, description)

        if isinstance(result, Success):
            return self._succeeded(attempt, result, breakdown, description, now, update_billing_date)
        if isinstance(result, Decline):
            return self._declined(attempt, result)
        return self._infrastructure_failure(attempt, result)

    def _vault_charge(self, processor: ProcessorAdapter, account: BillingAccount,
                      vault_reference: Dict[str, Any], amount: Decimal,
                      description: str) -> ChargeOutcome:
        request = VaultChargeRequest(
            vault_reference=vault_reference,
            amount=amount,
            currency=self.settings.BILLING_CURRENCY,
            customer_id=account.customer_id,
            description=description,
        )
        try:
            return processor.vault_transaction(request)
        except ProcessorUnavailable as exc:
            logger.warning("Processor failure charging account %s: %s", account.id, exc)
            return InfrastructureError(
                message=str(exc),
                code=PROCESSOR_TIMEOUT if isinstance(exc, ProcessorTimeout) else PROCESSOR_UNAVAILABLE,
                retryable=exc.retryable,
                cause=exc,
            )

    def _missing_processor_data(self, attempt: _Attempt) -> Tuple[str, Optional[str]]:
        account = attempt.account
        reason = f"No {attempt.processor_name} payment data on file"
        logger.warning("Account %s: %s", account.id, reason)
        self.gateway.update_schedule(account.id, ScheduleUpdate(needs_update=True))
        self._publish(NEEDS_UPDATE, {
            "billingAccountId": account.id,
            "userId": account.user_id,
            "email": account.email,
            "processor": attempt.processor_name,
            "reason": reason,
            "severity": "medium",
        })
        attempt.receipt = self._record(self._receipt(
            attempt,
            status=ReceiptStatus.FAILED,
            amount=Decimal("0"),
            description=describe_charge(attempt.plan, account.is_yearly, failed=True),
            processor_transaction_id="",
            response=None,
            failure=FailureInfo(reason=reason, code=MISSING_PROCESSOR_DATA),
        ))
        return FAILED, reason

    def _succeeded(self, attempt: _Attempt, result: Success, breakdown: ChargeBreakdown,
                   description: str, now: datetime,
                   update_billing_date: bool) -> Tuple[str, Optional[str]]:
        account = attempt.account
        attempt.receipt = self._record(self._receipt(
            attempt,
            status=ReceiptStatus.SUCCESS,
            amount=attempt.amount,
            description=description,
            processor_transaction_id=result.transaction_id or "",
            response=result.data,
        ))

        update = ScheduleUpdate(status=AccountStatus.ACTIVE, needs_update=False)
        if update_billing_date:
            base = now
            if account.next_billing_date is not None and account.next_billing_date > now:
                base = account.next_billing_date.astimezone(self._tz)
            update.next_billing_date = next_billing_date(base, account.is_yearly)
        if breakdown.credits_applied > 0:
            update.credits = to_money(account.credits - breakdown.credits_applied)
        self.gateway.update_schedule(account.id, update)

        log_action("billing.charge.succeeded", f"Charged account {account.id}",
                   billing_account_id=account.id, amount=str(attempt.amount),
                   transaction_id=attempt.receipt.transaction_id)
        return SUCCEEDED, None

    def _declined(self, attempt: _Attempt, result: Decline) -> Tuple[str, Optional[str]]:
        account = attempt.account
        attempt.receipt = self._record(self._receipt(
            attempt,
            status=ReceiptStatus.FAILED,
            amount=attempt.amount,
            description=describe_charge(attempt.plan, account.is_yearly, failed=True),
            processor_transaction_id=result.transaction_id or "",
            response=result.data,
            failure=FailureInfo(reason=result.message, code=result.code),
        ))
        self.gateway.update_schedule(
            account.id,
            ScheduleUpdate(needs_update=True, status=AccountStatus.SUSPENDED),
        )
        self._publish(CHARGE_FAILED, {
            "billingAccountId": account.id,
            "userId": account.user_id,
            "amount": str(attempt.amount),
            "reason": result.message,
            "code": result.code,
            "severity": "medium",
        })
        log_action("billing.charge.declined", f"Charge declined for account {account.id}",
                   level="warning", billing_account_id=account.id, code=result.code)
        return FAILED, result.message

    def _infrastructure_failure(self, attempt: _Attempt,
                                result: InfrastructureError) -> Tuple[str, Optional[str]]:
        account = attempt.account
        attempt.receipt = self._record(self._receipt(
            attempt,
            status=ReceiptStatus.FAILED,
            amount=attempt.amount,
            description=describe_charge(attempt.plan, account.is_yearly, failed=True),
            processor_transaction_id="",
            response=result.data,
            failure=FailureInfo(reason=result.message, code=result.code, retryable=result.retryable),
        ))
        # the provider may or may not have charged; hold the account for review
        self.gateway.update_schedule(account.id, ScheduleUpdate(needs_update=True))
        self._publish(CHARGE_FAILED, {
            "billingAccountId": account.id,
            "userId": account.user_id,
            "amount": str(attempt.amount),
            "reason": result.message,
            "code": result.code,
            "retryable": result.retryable,
            "severity": "high",
        })
        log_action("billing.charge.unavailable", f"Processor failure for account {account.id}",
                   level="error", billing_account_id=account.id, code=result.code)
        return FAILED, result.message

    # -------------------------------------------------------------------------
    # receipts
    # -------------------------------------------------------------------------

    def _receipt(self, attempt: _Attempt, status: ReceiptStatus, amount: Decimal, description: str,
                 processor_transaction_id: str, response: Any,
                 failure: Optional[FailureInfo] = None) -> Receipt:
        account = attempt.account
        payor = account.payor
        plan = attempt.plan
        return Receipt(
            transaction_id=generate_transaction_id(),
            billing_account_id=account.id,
            user_id=account.user_id,
            status=status,
            amount=to_money(amount),
            currency=self.settings.BILLING_CURRENCY,
            description=description,
            plan_info=PlanSnapshot(
                plan_id=plan.id,
                plan_name=plan.name,
                plan_price=plan.price,
                billing_cycle=plan.billing_cycle,
            ) if plan is not None else None,
            processor=ProcessorInfo(
                name=attempt.processor_name,
                transaction_id=processor_transaction_id,
                response=response,
            ),
            customer=CustomerSnapshot(
                email=(payor.email if payor and payor.email else account.email),
                name=payor.full_name if payor else "",
                phone=payor.phone if payor else "",
            ),
            failure=failure,
            transaction_date=utcnow(),
        )

    def _record(self, receipt: Receipt) -> Receipt:
        """Persist a receipt; a failed write is reported, never raised."""
        self.recorder.record(receipt)
        return receipt

    # -------------------------------------------------------------------------
    # one-off charges
    # -------------------------------------------------------------------------

    def charge_account(
        self,
        account_id: str,
        amount: Optional[Decimal] = None,
        description: Optional[str] = None,
        update_billing_date: bool = True,
    ) -> Receipt:
        """
        Charge a single account outside the scheduled run.

        Without ``amount`` the plan price is computed exactly as in a run. An
        explicit ``amount`` is charged as-is; pass ``update_billing_date=False``
        to leave the schedule untouched.

        Returns:
            The receipt recorded for the attempt

        Raises:
            AccountNotFound: unknown account
            RunInProgress: the account is currently claimed
            NoProcessorAvailable: no processor could be selected
        """
        account = self.gateway.get(account_id)
        if account is None:
            raise AccountNotFound(f"Billing account {account_id} not found")

        processor = self._resolve_processor()
        token = uuid.uuid4().hex
        if not self.gateway.claim(account.id, token, account.next_billing_date, self._lease,
                                  chargeable_only=False):
            raise RunInProgress(f"Billing account {account_id} is already being charged")

        try:
            account = self.gateway.get(account_id) or account
            attempt = self._attempt(account, processor, self._now(), amount, description, update_billing_date)
        finally:
            self.gateway.release(account.id, token)
        return attempt.receipt
