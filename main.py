#!/usr/bin/env python3
"""
SETTLEMENT CORE
===============
Process entry point for the payment settlement service.

This wires together:
1. Settings from the environment / .env file
2. The SQLite account store and receipt ledger
3. The processor registry and recurring billing engine
4. The daily payment scheduler
5. The operational HTTP API (uvicorn)
"""

import logging
import signal
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import uvicorn
from fastapi import FastAPI

from api.billing_ops import create_app
from settlement.config import Settings, get_settings
from settlement.engine import RecurringBillingEngine, RunLock
from settlement.ledger import SQLiteReceiptLedger
from settlement.logging import configure_logging
from settlement.notifier import EventBus, SlackAnomalySubscriber
from settlement.registry import ProcessorRegistry, SelectionOptions, build_default_registry
from settlement.scheduler import PaymentScheduler
from settlement.store import SQLiteBillingAccountGateway, SQLiteDatabase, SQLitePlanCatalog
from settlement.transactions import TransactionService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: SQLiteDatabase
    registry: ProcessorRegistry
    engine: RecurringBillingEngine
    transactions: TransactionService
    scheduler: PaymentScheduler
    app: FastAPI


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()
    database = SQLiteDatabase(settings.SETTLEMENT_DB_PATH)
    lease = timedelta(minutes=settings.BILLING_CLAIM_LEASE_MINUTES)
    gateway = SQLiteBillingAccountGateway(database, lease=lease)
    catalog = SQLitePlanCatalog(database)
    ledger = SQLiteReceiptLedger(database)

    bus = EventBus()
    SlackAnomalySubscriber(settings.SLACK_BILLING_WEBHOOK).attach(bus)

    registry = build_default_registry(settings)
    engine = RecurringBillingEngine(
        gateway=gateway,
        catalog=catalog,
        ledger=ledger,
        notifier=bus,
        registry=registry,
        settings=settings,
        run_lock=RunLock(),
        selection=SelectionOptions.for_billing_run(settings),
    )
    transactions = TransactionService(
        gateway,
        ledger,
        registry,
        settings=settings,
        selection=SelectionOptions.for_environment(settings),
        notifier=bus,
    )
    scheduler = PaymentScheduler(
        engine,
        cron=settings.BILLING_SCHEDULE_CRON,
        timezone=settings.BILLING_SCHEDULE_TIMEZONE,
    )
    app = create_app(engine, registry, scheduler)
    return Services(
        settings=settings,
        database=database,
        registry=registry,
        engine=engine,
        transactions=transactions,
        scheduler=scheduler,
        app=app,
    )


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main() -> None:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    services = build_services(settings)

    logger.info("=" * 60)
    logger.info("SETTLEMENT CORE (%s)", settings.ENVIRONMENT)
    logger.info("Schedule: %s %s", settings.BILLING_SCHEDULE_CRON, settings.BILLING_SCHEDULE_TIMEZONE)
    logger.info("Payment system: %s",
                services.registry.payment_system_status(services.engine.selection))
    logger.info("=" * 60)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received...")
        services.scheduler.stop()

    signal.signal(signal.SIGTERM, handle_shutdown)

    services.scheduler.start()
    try:
        uvicorn.run(services.app, host=settings.HOST, port=settings.PORT)
    finally:
        services.scheduler.stop()
        services.database.close()
        logger.info("Goodbye.")


if __name__ == "__main__":
    main()
