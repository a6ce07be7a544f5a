"""
Daily payment scheduler.

Runs the recurring billing engine on a cron schedule (09:00 America/Los_Angeles
by default) from a background daemon thread. A tick that finds the previous
run still in progress is skipped.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from .engine import RecurringBillingEngine, RunSummary
from .errors import NoProcessorAvailable, RunInProgress
from .models import utcnow

logger = logging.getLogger(__name__)

# =============================================================================
# CRON EXPRESSION PARSER
# =============================================================================


def parse_cron_expression(expression: str) -> Dict[str, Any]:
    """
    Parse a cron expression into its components.

    Format: minute hour day_of_month month day_of_week
    Example: "0 9 * * *" = every day at 09:00

    Args:
        expression: Cron expression string

    Returns:
        Dict with parsed fields
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: expected 5 fields, got {len(parts)}")

    return {
        "minute": parts[0],
        "hour": parts[1],
        "day_of_month": parts[2],
        "month": parts[3],
        "day_of_week": parts[4],
        "raw": expression
    }


def cron_field_matches(field: str, value: int) -> bool:
    """
    Check if a value matches a cron field expression.

    Supports: *, */N, N, N-M, N,M,O
    """
    if field == "*":
        return True

    if field.startswith("*/"):
        return value % int(field[2:]) == 0

    values = set()
    for part in field.split(","):
        if "-" in part:
            start, end = map(int, part.split("-"))
            values.update(range(start, end + 1))
        else:
            values.add(int(part))
    return value in values


def calculate_next_cron_run(expression: str, from_time: datetime) -> datetime:
    """
    Next datetime strictly after ``from_time`` matching ``expression``.

    Matching happens on the wall clock of ``from_time``'s timezone; day of
    week follows cron numbering (0 = Sunday).
    """
    cron = parse_cron_expression(expression)
    candidate = from_time.replace(second=0, microsecond=0) + timedelta(minutes=1)

    for _ in range(366 * 24 * 60):
        if (cron_field_matches(cron["month"], candidate.month) and
                cron_field_matches(cron["day_of_month"], candidate.day) and
                cron_field_matches(cron["day_of_week"], candidate.isoweekday() % 7) and
                cron_field_matches(cron["hour"], candidate.hour) and
                cron_field_matches(cron["minute"], candidate.minute)):
            return candidate
        candidate += timedelta(minutes=1)

    raise ValueError(f"Could not find next run time for: {expression}")


# =============================================================================
# SCHEDULER
# =============================================================================


class PaymentScheduler:
    def __init__(
        self,
        engine: RecurringBillingEngine,
        cron: str = "0 9 * * *",
        timezone: str = "America/Los_Angeles",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        parse_cron_expression(cron)
        self.engine = engine
        self.cron = cron
        self.timezone = ZoneInfo(timezone)
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.success_count = 0
        self.failure_count = 0
        self.runs_completed = 0
        self.runs_failed = 0
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[RunSummary] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_run(self, from_time: Optional[datetime] = None) -> datetime:
        now = (from_time or self._clock()).astimezone(self.timezone)
        return calculate_next_cron_run(self.cron, now)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="payment-scheduler", daemon=True)
        self._thread.start()
        logger.info("Payment scheduler started (%s %s)", self.cron, self.timezone.key)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("Payment scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            wait_seconds = (self.next_run() - self._clock()).total_seconds()
            if self._stop.wait(timeout=max(wait_seconds, 0)):
                break
            self.trigger_now()

    def trigger_now(self) -> Optional[RunSummary]:
        """Run the engine once; returns None when the run was skipped or failed."""
        logger.info("Starting scheduled payment processing")
        try:
            summary = self.engine.run()
        except RunInProgress:
            logger.info("Previous billing run still in progress, skipping")
            return None
        except NoProcessorAvailable as exc:
            self.runs_failed += 1
            self.last_error = str(exc)
            logger.error("Scheduled billing run aborted: %s", exc)
            return None
        except Exception as exc:
            self.runs_failed += 1
            self.last_error = str(exc)
            logger.exception("Scheduled billing run failed")
            return None

        self.runs_completed += 1
        self.success_count += summary.successful
        self.failure_count += summary.failed
        self.last_run_at = self._clock()
        self.last_summary = summary
        self.last_error = None
        logger.info("Scheduled payment processing completed: %s", summary.to_dict())
        return summary

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "isRunning": self.engine.run_lock.locked,
            "cron": self.cron,
            "timezone": self.timezone.key,
            "nextRun": self.next_run().isoformat(),
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "runsCompleted": self.runs_completed,
            "runsFailed": self.runs_failed,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastSummary": self.last_summary.to_dict() if self.last_summary else None,
            "lastError": self.last_error,
        }
