import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import update

from config import get_settings
from database import LedgerStore
from models import Frequency, RecurringPlan, Transaction


logger = logging.getLogger(__name__)


class InvalidFrequencyError(ValueError):
    pass


class PlanAlreadyAdvanced(RuntimeError):
    pass


class PlanTimeoutError(RuntimeError):
    pass


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def to_local(value: datetime) -> datetime:
    """Express an offset-aware datetime as naive wall-clock time in the ledger zone."""
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: datetime, months: int) -> datetime:
    """Shift by whole months, snapping to the last day when the target is shorter.

    Jan 31 + 1 month is Feb 28 (or 29), never early March. Time of day is kept.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def parse_frequency(value: Union[Frequency, str]) -> Frequency:
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in Frequency)
        raise InvalidFrequencyError(
            f"Unsupported frequency {value!r}; expected one of: {allowed}"
        ) from exc


def advance(current_due: datetime, frequency: Union[Frequency, str]) -> datetime:
    frequency = parse_frequency(frequency)
    if frequency == Frequency.weekly:
        return current_due + timedelta(days=7)
    if frequency == Frequency.monthly:
        return add_months(current_due, 1)
    return add_months(current_due, 12)


def build_occurrence(
    plan: RecurringPlan, occurred_at: datetime, *, initial: bool = False
) -> Transaction:
    label = "Recurring (Initial)" if initial else "Recurring"
    return Transaction(
        user_id=plan.user_id,
        occurred_at=occurred_at,
        type=plan.type,
        amount_cents=plan.amount_cents,
        currency=plan.currency,
        description=f"{label}: {plan.name}",
        recurring_plan_id=plan.id,
        is_ai_generated=False,
    )


@dataclass(frozen=True)
class PlanFailure:
    plan_id: str
    error: str


@dataclass(frozen=True)
class PlanOutcome:
    plan_id: str
    status: str
    error: Optional[str] = None
    next_due_at: Optional[datetime] = None


@dataclass
class RunReport:
    now: datetime
    processed: int = 0
    succeeded: int = 0
    failed: list[PlanFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def record(self, outcome: PlanOutcome) -> "RunReport":
        self.processed += 1
        if outcome.status == "succeeded":
            self.succeeded += 1
        elif outcome.status == "skipped":
            self.skipped.append(outcome.plan_id)
        else:
            self.failed.append(PlanFailure(outcome.plan_id, outcome.error or "unknown"))
        return self


class RecurringEngine:
    def __init__(
        self,
        store: LedgerStore,
        *,
        max_workers: Optional[int] = None,
        plan_timeout_secs: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.max_workers = max_workers or settings.scheduler_max_workers
        self.plan_timeout_secs = (
            plan_timeout_secs
            if plan_timeout_secs is not None
            else settings.plan_timeout_secs
        )

    def run_once(self, now: datetime) -> RunReport:
        plans = self.store.due_plans(now)
        logger.info(f"recurring_run: now={now.isoformat()} due={len(plans)}")

        if self.max_workers > 1 and len(plans) > 1:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="recurring-plan"
            ) as pool:
                outcomes = list(pool.map(lambda plan: self._attempt(plan, now), plans))
        else:
            outcomes = [self._attempt(plan, now) for plan in plans]

        report = RunReport(now=now)
        for outcome in outcomes:
            report.record(outcome)
        logger.info(
            f"recurring_run: now={now.isoformat()} processed={report.processed} "
            f"succeeded={report.succeeded} failed={len(report.failed)} "
            f"skipped={len(report.skipped)}"
        )
        return report

    def _attempt(self, plan: RecurringPlan, now: datetime) -> PlanOutcome:
        try:
            next_due = self.post_occurrence(plan, now)
        except PlanAlreadyAdvanced as exc:
            logger.info(f"recurring_plan_skipped: plan_id={plan.id} reason={exc}")
            return PlanOutcome(plan.id, "skipped", error=str(exc))
        except Exception as exc:
            logger.error(f"recurring_plan_failed: plan_id={plan.id} error={exc!r}")
            return PlanOutcome(
                plan.id, "failed", error=str(exc) or exc.__class__.__name__
            )
        logger.info(
            f"recurring_plan_posted: plan_id={plan.id} user_id={plan.user_id} "
            f"next_due_at={next_due.isoformat()}"
        )
        return PlanOutcome(plan.id, "succeeded", next_due_at=next_due)

    def post_occurrence(self, plan: RecurringPlan, now: datetime) -> datetime:
        """Book one occurrence of ``plan`` at ``now`` and move its due date on.

        The due-date update only matches while the plan still carries the due
        date it was selected with, so a second run racing on the same plan
        updates nothing and gives up before inserting.
        """
        started = time.monotonic()
        next_due = advance(plan.next_due_at, plan.frequency)
        with self.store.transaction() as session:
            result = session.execute(
                update(RecurringPlan)
                .where(
                    RecurringPlan.id == plan.id,
                    RecurringPlan.is_active.is_(True),
                    RecurringPlan.next_due_at == plan.next_due_at,
                )
                .values(next_due_at=next_due)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PlanAlreadyAdvanced(
                    f"plan {plan.id} is no longer due at {plan.next_due_at.isoformat()}"
                )
            session.add(build_occurrence(plan, now))
            session.flush()

            elapsed = time.monotonic() - started
            if elapsed > self.plan_timeout_secs:
                raise PlanTimeoutError(
                    f"plan {plan.id} took {elapsed:.2f}s (limit {self.plan_timeout_secs}s)"
                )
        return next_due
