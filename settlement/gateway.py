"""Collaborator boundaries consumed by the settlement core."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from .models import BillingAccount, Plan, ScheduleUpdate


class BillingAccountGateway(Protocol):
    """Read/write access to billing account scheduling and vault state."""

    def find_due_accounts(self, as_of: datetime) -> List[BillingAccount]:
        """Accounts eligible for charging whose next billing date is <= ``as_of``."""

    def get(self, account_id: str) -> Optional[BillingAccount]:
        ...

    def update_schedule(self, account_id: str, update: ScheduleUpdate) -> None:
        ...

    def claim(
        self,
        account_id: str,
        token: str,
        expected_next_billing_date: Optional[datetime],
        lease: timedelta,
        chargeable_only: bool = True,
    ) -> bool:
        """
        Atomically mark the account as being charged by ``token``.

        Succeeds only if the next billing date still equals the expected value
        and no other unexpired claim is held. With ``chargeable_only`` the
        account must also still be vaulted, not flagged for update and in a
        chargeable status, so a due list read before another run declined the
        account cannot charge it again.
        """

    def release(self, account_id: str, token: str) -> None:
        ...

    def save_vault(
        self,
        account_id: str,
        processor_name: str,
        data: Dict[str, Any],
        vault_id: str,
    ) -> None:
        """Store provider vault data and mark the account vaulted."""


class PlanCatalog(Protocol):
    """Read-only plan pricing."""

    def get(self, plan_id: str) -> Optional[Plan]:
        ...
