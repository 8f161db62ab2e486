from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import Category, RecurringPlan, Transaction, TransactionType
from money import cents_to_decimal, percent_of, to_cents
from periods import Period, month_period, trailing_period
from recurrence import (
    advance,
    build_occurrence,
    local_now,
    parse_frequency,
    to_local,
)
from schemas import RecurringPlanIn, TransactionIn


logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_NAME = "General"
VARIABLE_SPEND_WINDOW_DAYS = 60
# The trailing window is normalised to a monthly figure by a fixed divisor,
# not by the number of days actually elapsed.
VARIABLE_SPEND_MONTHS = 2


class PlanNotFound(ValueError):
    pass


class TransactionNotFound(ValueError):
    pass


class CategoryAmbiguous(ValueError):
    pass


def normalize_currency(code: Optional[str]) -> str:
    return (code or get_settings().default_currency).strip().upper()


def _in_period(column, period: Period) -> list:
    conditions = [column >= period.start]
    if period.end_inclusive:
        conditions.append(column <= period.end)
    else:
        conditions.append(column < period.end)
    return conditions


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        return self.session.scalars(select(Category).order_by(Category.name)).all()

    def resolve(self, name: str) -> Optional[Category]:
        """Find a category by name, tolerating a one-letter typo, or create it.

        The default bucket name is reserved: it resolves to no category so that
        such spend is reported together with uncategorised spend.
        """
        raw = name.strip()
        if not raw:
            raise ValueError("Category name must not be empty")
        lowered = raw.lower()
        if lowered == DEFAULT_CATEGORY_NAME.lower():
            return None

        exact = self.session.scalar(
            select(Category).where(func.lower(Category.name) == lowered)
        )
        if exact:
            return exact

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in self.list_all():
            dist = int(Levenshtein.distance(lowered, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted(c.name for c in best))
                raise CategoryAmbiguous(
                    f"Category '{raw}' is ambiguous; matches: {options}"
                )
            return best[0]

        category = Category(name=raw, icon="tag", color="#cccccc")
        self.session.add(category)
        self.session.flush()
        logger.info(f"category_created: id={category.id} name={raw}")
        return category


class RecurringPlanService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, plan_id: str) -> RecurringPlan:
        plan = self.session.get(RecurringPlan, plan_id)
        if not plan or plan.user_id != self.user_id:
            raise PlanNotFound("Plan not found")
        return plan

    def list(self) -> list[RecurringPlan]:
        stmt = (
            select(RecurringPlan)
            .where(
                RecurringPlan.user_id == self.user_id,
                RecurringPlan.is_active.is_(True),
            )
            .order_by(RecurringPlan.created_at.desc(), RecurringPlan.id)
        )
        return self.session.scalars(stmt).all()

    def create(
        self, data: RecurringPlanIn, *, now: Optional[datetime] = None
    ) -> RecurringPlan:
        """Persist a plan and book its first occurrence right away.

        The seed transaction stands for the current period, so the first
        scheduled occurrence sits one full period after ``now``.
        """
        now = now or local_now()
        frequency = parse_frequency(data.frequency)
        amount_cents = to_cents(data.amount)
        if amount_cents <= 0:
            raise ValueError("Amount must be positive")

        plan = RecurringPlan(
            user_id=self.user_id,
            name=data.name.strip(),
            amount_cents=amount_cents,
            currency=normalize_currency(data.currency),
            frequency=frequency,
            type=data.type,
            category=data.category,
            next_due_at=advance(now, frequency),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(plan)
        self.session.flush()
        self.session.add(build_occurrence(plan, now, initial=True))
        self.session.commit()
        self.session.refresh(plan)
        logger.info(
            f"recurring_plan_created: plan_id={plan.id} user_id={self.user_id} "
            f"frequency={frequency.value} next_due_at={plan.next_due_at.isoformat()}"
        )
        return plan

    def deactivate(self, plan_id: str) -> RecurringPlan:
        plan = self.get(plan_id)
        plan.is_active = False
        self.session.commit()
        self.session.refresh(plan)
        logger.info(f"recurring_plan_deactivated: plan_id={plan.id}")
        return plan

    def transactions(self, plan_id: str) -> list[Transaction]:
        plan = self.get(plan_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_plan_id == plan.id,
            )
            .order_by(Transaction.occurred_at.desc(), Transaction.created_at.desc())
        )
        return self.session.scalars(stmt).all()


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create(
        self, data: TransactionIn, *, now: Optional[datetime] = None
    ) -> Transaction:
        now = now or local_now()
        amount_cents = to_cents(data.amount)
        if amount_cents <= 0:
            raise ValueError("Amount must be positive")

        category_id = None
        if data.category and data.category.strip():
            category = CategoryService(self.session).resolve(data.category)
            category_id = category.id if category else None

        description = data.description
        if not description and data.merchant:
            description = f"Receipt from {data.merchant}"

        txn = Transaction(
            user_id=self.user_id,
            occurred_at=to_local(data.date) if data.date else now,
            type=data.type,
            amount_cents=amount_cents,
            currency=normalize_currency(data.currency),
            description=description,
            merchant=data.merchant,
            category_id=category_id,
            is_ai_generated=data.is_ai_generated,
            confidence_score=data.confidence_score,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise TransactionNotFound("Transaction not found")
        return txn

    def list(self, limit: Optional[int] = None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.created_at.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id} user_id={self.user_id}")


@dataclass(frozen=True)
class DashboardStats:
    income: Decimal
    expense: Decimal
    savings: Decimal
    savings_rate: float


@dataclass(frozen=True)
class CategoryTotal:
    category_id: Optional[str]
    name: str
    amount: Decimal
    percent: float


@dataclass(frozen=True)
class AffordabilitySnapshot:
    monthly_income_actual: Decimal
    recurring_income: Decimal
    fixed_expenses: Decimal
    avg_variable_expenses: Decimal
    effective_income: Decimal
    surplus: Decimal
    top_category: str


class MetricsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _sum_cents(
        self,
        transaction_type: TransactionType,
        period: Period,
        *,
        variable_only: bool = False,
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == transaction_type,
            *_in_period(Transaction.occurred_at, period),
        )
        if variable_only:
            stmt = stmt.where(Transaction.recurring_plan_id.is_(None))
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _plan_totals_cents(self) -> dict[TransactionType, int]:
        stmt = (
            select(RecurringPlan.type, func.sum(RecurringPlan.amount_cents))
            .where(
                RecurringPlan.user_id == self.user_id,
                RecurringPlan.is_active.is_(True),
            )
            .group_by(RecurringPlan.type)
        )
        totals = {TransactionType.income: 0, TransactionType.expense: 0}
        for plan_type, total in self.session.execute(stmt).all():
            totals[plan_type] = int(total or 0)
        return totals

    def dashboard(self, now: datetime) -> DashboardStats:
        period = month_period(now)
        income = self._sum_cents(TransactionType.income, period)
        expense = self._sum_cents(TransactionType.expense, period)
        savings = income - expense
        return DashboardStats(
            income=cents_to_decimal(income),
            expense=cents_to_decimal(expense),
            savings=cents_to_decimal(savings),
            savings_rate=percent_of(savings, income),
        )

    def expense_by_category(self, now: datetime) -> list[CategoryTotal]:
        period = month_period(now)
        stmt = (
            select(
                Transaction.category_id,
                Category.name,
                func.sum(Transaction.amount_cents).label("total"),
            )
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                *_in_period(Transaction.occurred_at, period),
            )
            .group_by(Transaction.category_id, Category.name)
        )
        rows = [
            (row.category_id, row.name, int(row.total or 0))
            for row in self.session.execute(stmt).all()
        ]
        # Largest first; equal totals fall back to the category name, with
        # uncategorised spend after every named category.
        rows.sort(key=lambda r: (-r[2], r[0] is None, r[1] or ""))
        grand_total = sum(total for _, _, total in rows)
        return [
            CategoryTotal(
                category_id=category_id,
                name=name or DEFAULT_CATEGORY_NAME,
                amount=cents_to_decimal(total),
                percent=percent_of(total, grand_total),
            )
            for category_id, name, total in rows
            if total > 0
        ]

    def top_category(self, now: datetime) -> str:
        breakdown = self.expense_by_category(now)
        if not breakdown or breakdown[0].category_id is None:
            return DEFAULT_CATEGORY_NAME
        return breakdown[0].name

    def affordability_snapshot(self, now: datetime) -> AffordabilitySnapshot:
        monthly_income_actual = cents_to_decimal(
            self._sum_cents(TransactionType.income, month_period(now))
        )
        plan_totals = self._plan_totals_cents()
        recurring_income = cents_to_decimal(plan_totals[TransactionType.income])
        fixed_expenses = cents_to_decimal(plan_totals[TransactionType.expense])

        variable_total = cents_to_decimal(
            self._sum_cents(
                TransactionType.expense,
                trailing_period(now, VARIABLE_SPEND_WINDOW_DAYS),
                variable_only=True,
            )
        )
        avg_variable_expenses = variable_total / VARIABLE_SPEND_MONTHS

        # Whichever is larger is taken as the month's real capacity.
        effective_income = max(monthly_income_actual, recurring_income)
        surplus = effective_income - fixed_expenses - avg_variable_expenses
        return AffordabilitySnapshot(
            monthly_income_actual=monthly_income_actual,
            recurring_income=recurring_income,
            fixed_expenses=fixed_expenses,
            avg_variable_expenses=avg_variable_expenses,
            effective_income=effective_income,
            surplus=surplus,
            top_category=self.top_category(now),
        )
