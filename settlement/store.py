"""
SQLite-backed billing account and plan storage.

Implements the BillingAccountGateway and PlanCatalog boundaries. All
datetimes are stored as UTC ISO-8601 strings so that lexical comparison in
SQL matches chronological order.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    CHARGEABLE_STATUSES,
    AccountStatus,
    BillingAccount,
    Payor,
    Plan,
    ScheduleUpdate,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS payors (
    id TEXT PRIMARY KEY,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL DEFAULT '',
    phone TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    price TEXT NOT NULL,
    yearly_discount TEXT NOT NULL DEFAULT '0',
    billing_cycle TEXT NOT NULL DEFAULT 'monthly'
);

CREATE TABLE IF NOT EXISTS billing_accounts (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    profile_id TEXT NOT NULL,
    email TEXT NOT NULL DEFAULT '',
    plan_id TEXT REFERENCES plans(id),
    payor_id TEXT REFERENCES payors(id),
    status TEXT NOT NULL DEFAULT 'active',
    vaulted INTEGER NOT NULL DEFAULT 0,
    vault_id TEXT,
    is_yearly INTEGER NOT NULL DEFAULT 0,
    setup_fee_paid INTEGER NOT NULL DEFAULT 0,
    next_billing_date TEXT,
    needs_update INTEGER NOT NULL DEFAULT 0,
    processor TEXT,
    payment_processor_data TEXT NOT NULL DEFAULT '{}',
    credits TEXT NOT NULL DEFAULT '0',
    claim_token TEXT,
    claimed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_billing_accounts_due
    ON billing_accounts (next_billing_date, status);

CREATE TABLE IF NOT EXISTS receipts (
    transaction_id TEXT PRIMARY KEY,
    billing_account_id TEXT NOT NULL,
    user_id TEXT,
    status TEXT NOT NULL,
    type TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    transaction_date TEXT NOT NULL,
    body TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_receipts_account
    ON receipts (billing_account_id, transaction_date);
"""


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    return value


class SQLiteDatabase:
    """Shared SQLite connection with a re-entrant lock and schema bootstrap."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self.lock = threading.RLock()
        self.connection = sqlite3.connect(db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        with self.lock:
            self.connection.executescript(SCHEMA)
            self.connection.commit()
        logger.info("Settlement store ready at %s", db_path)

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self.lock:
            cursor = self.connection.execute(sql, tuple(params))
            self.connection.commit()
            return cursor

    def fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self.lock:
            return self.connection.execute(sql, tuple(params)).fetchall()

    def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self.lock:
            return self.connection.execute(sql, tuple(params)).fetchone()

    def close(self) -> None:
        with self.lock:
            self.connection.close()


class SQLitePlanCatalog:
    """Read-only plan catalog (writes exist only to seed plans)."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    def add_plan(self, plan: Plan) -> Plan:
        self._db.execute(
            """
            INSERT OR REPLACE INTO plans (id, name, price, yearly_discount, billing_cycle)
            VALUES (?, ?, ?, ?, ?)
            """,
            [plan.id, plan.name, str(plan.price), str(plan.yearly_discount), plan.billing_cycle.value],
        )
        return plan

    def get(self, plan_id: str) -> Optional[Plan]:
        row = self._db.fetchone("SELECT * FROM plans WHERE id = ?", [plan_id])
        if row is None:
            return None
        return Plan(
            id=row["id"],
            name=row["name"],
            price=Decimal(row["price"]),
            yearly_discount=Decimal(row["yearly_discount"]),
            billing_cycle=row["billing_cycle"],
        )


class SQLiteBillingAccountGateway:
    """Billing account persistence with optimistic per-account claiming."""

    def __init__(self, db: SQLiteDatabase, lease: timedelta = timedelta(minutes=60)) -> None:
        self._db = db
        self._lease = lease

    # -------------------------------------------------------------------------
    # seeding / lifecycle helpers
    # -------------------------------------------------------------------------

    def add_payor(self, payor: Payor) -> Payor:
        self._db.execute(
            """
            INSERT OR REPLACE INTO payors (id, first_name, last_name, email, phone)
            VALUES (?, ?, ?, ?, ?)
            """,
            [payor.id, payor.first_name, payor.last_name, payor.email, payor.phone],
        )
        return payor

    def add_account(self, account: BillingAccount) -> BillingAccount:
        if account.payor is not None:
            self.add_payor(account.payor)
        self._db.execute(
            """
            INSERT OR REPLACE INTO billing_accounts (
                id, customer_id, profile_id, email, plan_id, payor_id, status,
                vaulted, vault_id, is_yearly, setup_fee_paid, next_billing_date,
                needs_update, processor, payment_processor_data, credits,
                claim_token, claimed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                account.id,
                account.customer_id,
                account.profile_id,
                account.email,
                account.plan_id,
                account.payor.id if account.payor else None,
                account.status.value,
                int(account.vaulted),
                account.vault_id,
                int(account.is_yearly),
                int(account.setup_fee_paid),
                to_db_timestamp(account.next_billing_date),
                int(account.needs_update),
                account.processor,
                json.dumps(account.payment_processor_data),
                str(account.credits),
                account.claim_token,
                to_db_timestamp(account.claimed_at),
            ],
        )
        return account

    # -------------------------------------------------------------------------
    # BillingAccountGateway
    # -------------------------------------------------------------------------

    def find_due_accounts(self, as_of: datetime) -> List[BillingAccount]:
        statuses = [status.value for status in CHARGEABLE_STATUSES]
        rows = self._db.fetchall(
            f"""
            SELECT a.*, p.first_name AS payor_first_name, p.last_name AS payor_last_name,
                   p.email AS payor_email, p.phone AS payor_phone
            FROM billing_accounts a
            JOIN plans pl ON pl.id = a.plan_id
            LEFT JOIN payors p ON p.id = a.payor_id
            WHERE a.status IN ({", ".join("?" for _ in statuses)})
              AND a.vaulted = 1
              AND a.needs_update = 0
              AND a.next_billing_date IS NOT NULL
              AND a.next_billing_date <= ?
              AND CAST(pl.price AS REAL) > 0
              AND (a.claim_token IS NULL OR a.claimed_at IS NULL OR a.claimed_at < ?)
            ORDER BY a.next_billing_date ASC, a.id ASC
            """,
            [
                *statuses,
                to_db_timestamp(as_of),
                to_db_timestamp(datetime.now(timezone.utc) - self._lease),
            ],
        )
        return [self._row_to_account(row) for row in rows]

    def get(self, account_id: str) -> Optional[BillingAccount]:
        row = self._db.fetchone(
            """
            SELECT a.*, p.first_name AS payor_first_name, p.last_name AS payor_last_name,
                   p.email AS payor_email, p.phone AS payor_phone
            FROM billing_accounts a
            LEFT JOIN payors p ON p.id = a.payor_id
            WHERE a.id = ?
            """,
            [account_id],
        )
        return self._row_to_account(row) if row is not None else None

    def update_schedule(self, account_id: str, update: ScheduleUpdate) -> None:
        changes = update.changes()
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [_to_db_value(value) for value in changes.values()]
        self._db.execute(
            f"UPDATE billing_accounts SET {assignments} WHERE id = ?",
            [*params, account_id],
        )
        logger.debug("Updated schedule for account %s: %s", account_id, sorted(changes))

    def claim(
        self,
        account_id: str,
        token: str,
        expected_next_billing_date: Optional[datetime],
        lease: timedelta,
        chargeable_only: bool = True,
    ) -> bool:
        now = datetime.now(timezone.utc)
        sql = """
            UPDATE billing_accounts
            SET claim_token = ?, claimed_at = ?
            WHERE id = ?
              AND next_billing_date IS ?
              AND (claim_token IS NULL OR claimed_at IS NULL OR claimed_at < ?)
        """
        params: List[Any] = [
            token,
            to_db_timestamp(now),
            account_id,
            to_db_timestamp(expected_next_billing_date),
            to_db_timestamp(now - lease),
        ]
        if chargeable_only:
            statuses = [status.value for status in CHARGEABLE_STATUSES]
            sql += f"""
              AND needs_update = 0
              AND vaulted = 1
              AND status IN ({", ".join("?" for _ in statuses)})
            """
            params.extend(statuses)
        cursor = self._db.execute(sql, params)
        claimed = cursor.rowcount == 1
        if not claimed:
            logger.info("Account %s is already claimed or no longer due", account_id)
        return claimed

    def release(self, account_id: str, token: str) -> None:
        self._db.execute(
            """
            UPDATE billing_accounts
            SET claim_token = NULL, claimed_at = NULL
            WHERE id = ? AND claim_token = ?
            """,
            [account_id, token],
        )

    def save_vault(
        self,
        account_id: str,
        processor_name: str,
        data: Dict[str, Any],
        vault_id: str,
    ) -> None:
        with self._db.lock:
            row = self._db.fetchone(
                "SELECT payment_processor_data FROM billing_accounts WHERE id = ?",
                [account_id],
            )
            if row is None:
                raise KeyError(account_id)
            processor_data = json.loads(row["payment_processor_data"] or "{}")
            processor_data[processor_name] = data
            self._db.execute(
                """
                UPDATE billing_accounts
                SET payment_processor_data = ?, vault_id = ?, vaulted = 1,
                    processor = ?, needs_update = 0
                WHERE id = ?
                """,
                [json.dumps(processor_data), vault_id, processor_name, account_id],
            )

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> BillingAccount:
        payor = None
        if row["payor_id"]:
            payor = Payor(
                id=row["payor_id"],
                first_name=row["payor_first_name"] or "",
                last_name=row["payor_last_name"] or "",
                email=row["payor_email"] or "",
                phone=row["payor_phone"] or "",
            )
        return BillingAccount(
            id=row["id"],
            customer_id=row["customer_id"],
            profile_id=row["profile_id"],
            email=row["email"],
            plan_id=row["plan_id"],
            payor=payor,
            status=AccountStatus(row["status"]),
            vaulted=bool(row["vaulted"]),
            vault_id=row["vault_id"],
            is_yearly=bool(row["is_yearly"]),
            setup_fee_paid=bool(row["setup_fee_paid"]),
            next_billing_date=from_db_timestamp(row["next_billing_date"]),
            needs_update=bool(row["needs_update"]),
            processor=row["processor"],
            payment_processor_data=json.loads(row["payment_processor_data"] or "{}"),
            credits=Decimal(row["credits"]),
            claim_token=row["claim_token"],
            claimed_at=from_db_timestamp(row["claimed_at"]),
        )
