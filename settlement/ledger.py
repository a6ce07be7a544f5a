"""
Append-only receipt ledger.

Receipts are written once and never updated or deleted; corrections such as
refunds and voids are new receipts that point back at the original through
``related_transaction_id``.
"""

import logging
import secrets
import sqlite3
import time
from typing import List, Optional, Protocol

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import LedgerWriteError
from .logging import log_action
from .models import Receipt
from .notifier import LEDGER_WRITE_FAILED, EventNotifier
from .store import SQLiteDatabase, to_db_timestamp

logger = logging.getLogger(__name__)

LEDGER_WRITE_ATTEMPTS = 3


def generate_transaction_id() -> str:
    """Time-ordered, high-entropy id: ``TXN_<epoch ms>_<16 hex chars>``."""
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(8).upper()}"


class ReceiptLedger(Protocol):
    def append(self, receipt: Receipt) -> Receipt:
        ...

    def get(self, transaction_id: str) -> Optional[Receipt]:
        ...

    def list_for_account(self, billing_account_id: str) -> List[Receipt]:
        ...


class SQLiteReceiptLedger:
    """Insert-only receipt storage on the shared settlement database."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    def append(self, receipt: Receipt) -> Receipt:
        try:
            self._db.execute(
                """
                INSERT INTO receipts (
                    transaction_id, billing_account_id, user_id, status, type,
                    amount, currency, transaction_date, body
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    receipt.transaction_id,
                    receipt.billing_account_id,
                    receipt.user_id,
                    receipt.status.value,
                    receipt.type.value,
                    str(receipt.amount),
                    receipt.currency,
                    to_db_timestamp(receipt.transaction_date),
                    receipt.model_dump_json(),
                ],
            )
        except sqlite3.IntegrityError as exc:
            raise LedgerWriteError(f"Receipt {receipt.transaction_id} already exists") from exc
        except sqlite3.Error as exc:
            raise LedgerWriteError(f"Failed to write receipt {receipt.transaction_id}: {exc}") from exc
        logger.debug("Recorded receipt %s (%s)", receipt.transaction_id, receipt.status.value)
        return receipt

    def get(self, transaction_id: str) -> Optional[Receipt]:
        row = self._db.fetchone(
            "SELECT body FROM receipts WHERE transaction_id = ?", [transaction_id]
        )
        return Receipt.model_validate_json(row["body"]) if row is not None else None

    def list_for_account(self, billing_account_id: str) -> List[Receipt]:
        rows = self._db.fetchall(
            """
            SELECT body FROM receipts
            WHERE billing_account_id = ?
            ORDER BY transaction_date ASC, transaction_id ASC
            """,
            [billing_account_id],
        )
        return [Receipt.model_validate_json(row["body"]) for row in rows]


class ReceiptRecorder:
    """
    Writes receipts with bounded retries.

    A write that still fails after ``LEDGER_WRITE_ATTEMPTS`` is logged and
    published as ``billing.ledgerWriteFailed``; ``record`` then returns False
    instead of raising, because the provider call has already happened.
    """

    def __init__(self, ledger: ReceiptLedger, notifier: Optional[EventNotifier] = None) -> None:
        self.ledger = ledger
        self.notifier = notifier

    @retry(
        stop=stop_after_attempt(LEDGER_WRITE_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(LedgerWriteError),
        reraise=True
    )
    def _append(self, receipt: Receipt) -> Receipt:
        return self.ledger.append(receipt)

    def record(self, receipt: Receipt) -> bool:
        try:
            self._append(receipt)
        except Exception as exc:
            logger.critical("Receipt %s for account %s could not be written: %s",
                            receipt.transaction_id, receipt.billing_account_id, exc)
            log_action("ledger.write_failed", "Receipt write failed", level="error",
                       transaction_id=receipt.transaction_id,
                       billing_account_id=receipt.billing_account_id)
            self._report(receipt, exc)
            return False
        return True

    def _report(self, receipt: Receipt, exc: Exception) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(LEDGER_WRITE_FAILED, {
                "transactionId": receipt.transaction_id,
                "billingAccountId": receipt.billing_account_id,
                "type": receipt.type.value,
                "status": receipt.status.value,
                "amount": str(receipt.amount),
                "error": str(exc),
                "severity": "high",
            })
        except Exception as publish_exc:
            logger.error("Failed to publish %s: %s", LEDGER_WRITE_FAILED, publish_exc)
