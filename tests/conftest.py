"""
Pytest fixtures for the settlement core tests.

Provides an in-memory SQLite store, fake processor adapters, a recording
notifier and helpers to seed plans and billing accounts.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest

from settlement.config import Settings
from settlement.engine import RecurringBillingEngine, RunLock
from settlement.ledger import SQLiteReceiptLedger
from settlement.models import BillingAccount, Payor, Plan
from settlement.processors.base import ProcessorAdapter
from settlement.registry import SelectionOptions
from settlement.results import Success
from settlement.store import SQLiteBillingAccountGateway, SQLiteDatabase, SQLitePlanCatalog

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


# =============================================================================
# CONSTANTS
# =============================================================================

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FakeProcessor(ProcessorAdapter):
    """Adapter double that records charges and replays queued outcomes."""

    def __init__(self, name: str = "stripe", outcomes: Optional[List[Any]] = None) -> None:
        super().__init__(timeout=1.0)
        self.name = name
        self.outcomes = list(outcomes or [])
        self.charges: List[Any] = []
        self.vaults: List[Tuple[str, Any, Any]] = []

    def create_vault(self, customer_id, details, existing=None):
        self.vaults.append((customer_id, details, existing))
        vault_id = f"vault_{customer_id}"
        return Success(message="Customer Vault Created", data={"customer_id": vault_id},
                       transaction_id=vault_id)

    def vault_transaction(self, request):
        self.charges.append(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return Success(
            message="approved",
            data={"id": f"pi_{len(self.charges)}", "status": "succeeded"},
            transaction_id=f"pi_{len(self.charges)}",
            status="succeeded",
        )


class ProbedProcessor(FakeProcessor):
    """Fake adapter with a live connection test."""

    def __init__(self, name: str = "stripe", healthy: bool = True) -> None:
        super().__init__(name=name)
        self.healthy = healthy
        self.probe_calls = 0

    def test_connection(self, timeout=None) -> bool:
        self.probe_calls += 1
        return self.healthy


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.events.append((topic, payload))

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.events]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        BILLING_SCHEDULE_TIMEZONE="UTC",
        PAYMENT_FALLBACK_PROCESSOR="pyre",
    )


@pytest.fixture
def db():
    database = SQLiteDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture
def gateway(db) -> SQLiteBillingAccountGateway:
    return SQLiteBillingAccountGateway(db)


@pytest.fixture
def catalog(db) -> SQLitePlanCatalog:
    return SQLitePlanCatalog(db)


@pytest.fixture
def ledger(db) -> SQLiteReceiptLedger:
    return SQLiteReceiptLedger(db)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def clock():
    """Mutable clock; set ``clock.now`` to move time."""

    class Clock:
        now = FIXED_NOW

        def __call__(self) -> datetime:
            return self.now

    return Clock()


@pytest.fixture
def seed(gateway, catalog):
    """Factory that stores a plan, a payor and a billing account."""

    def _seed(
        account_id: str = "acct-1",
        price: str = "29.99",
        yearly_discount: str = "0",
        next_billing_date: datetime = FIXED_NOW,
        processor_data: Optional[Dict[str, Dict[str, Any]]] = None,
        **overrides: Any,
    ) -> BillingAccount:
        plan = catalog.add_plan(Plan(
            id=f"plan-{account_id}",
            name="Pro",
            price=Decimal(price),
            yearly_discount=Decimal(yearly_discount),
        ))
        fields: Dict[str, Any] = dict(
            id=account_id,
            customer_id=f"cust-{account_id}",
            profile_id=f"profile-{account_id}",
            email=f"{account_id}@example.com",
            plan_id=plan.id,
            payor=Payor(id=f"user-{account_id}", first_name="Pat", last_name="Doe",
                        email=f"{account_id}@example.com", phone="555-0100"),
            vaulted=True,
            vault_id=f"vault-{account_id}",
            setup_fee_paid=True,
            next_billing_date=next_billing_date,
            payment_processor_data=(
                processor_data if processor_data is not None
                else {"stripe": {"customer_id": f"cus_{account_id}"}}
            ),
        )
        fields.update(overrides)
        return gateway.add_account(BillingAccount(**fields))

    return _seed


@pytest.fixture
def make_engine(gateway, catalog, ledger, notifier, settings, clock):
    def _make(processor: Optional[ProcessorAdapter] = None, **kwargs: Any) -> RecurringBillingEngine:
        options = dict(
            gateway=gateway,
            catalog=catalog,
            ledger=ledger,
            notifier=notifier,
            processor=processor,
            settings=settings,
            run_lock=RunLock(),
            selection=SelectionOptions(),
            clock=clock,
        )
        options.update(kwargs)
        return RecurringBillingEngine(**options)

    return _make
