import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import Base, LedgerStore, StoreUnavailableError, _connect_args
from models import Frequency, RecurringPlan, Transaction, TransactionType
from recurrence import (
    InvalidFrequencyError,
    PlanAlreadyAdvanced,
    RecurringEngine,
    add_months,
    advance,
)


def make_store(tmp_path) -> tuple[LedgerStore, sessionmaker]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return LedgerStore(factory), factory


def add_plan(factory, *, name: str, due: datetime, **overrides) -> str:
    values = dict(
        user_id="user-1",
        name=name,
        amount_cents=50_000,
        currency="INR",
        frequency=Frequency.monthly,
        type=TransactionType.expense,
        next_due_at=due,
        is_active=True,
    )
    values.update(overrides)
    with factory() as session:
        plan = RecurringPlan(**values)
        session.add(plan)
        session.commit()
        return plan.id


def plan_state(factory, plan_id: str) -> tuple[datetime, list[Transaction]]:
    with factory() as session:
        plan = session.get(RecurringPlan, plan_id)
        txns = session.scalars(
            select(Transaction).where(Transaction.recurring_plan_id == plan_id)
        ).all()
        return plan.next_due_at, list(txns)


class FlakyStore(LedgerStore):
    """Fails the n-th atomic unit after its writes have been flushed."""

    def __init__(self, session_factory, fail_on: int) -> None:
        super().__init__(session_factory)
        self.fail_on = fail_on
        self.calls = 0

    @contextmanager
    def transaction(self):
        self.calls += 1
        call = self.calls
        with super().transaction() as session:
            yield session
            if call == self.fail_on:
                raise OperationalError("COMMIT", {}, Exception("disk I/O error"))


def test_advance_weekly_adds_seven_days():
    due = datetime(2024, 2, 26, 9, 30)
    assert advance(due, Frequency.weekly) == datetime(2024, 3, 4, 9, 30)


def test_advance_monthly_keeps_day_of_month():
    assert advance(datetime(2024, 1, 15), "monthly") == datetime(2024, 2, 15)
    assert advance(datetime(2024, 12, 15), "monthly") == datetime(2025, 1, 15)


def test_advance_monthly_snaps_to_month_end():
    assert advance(datetime(2024, 1, 31), Frequency.monthly) == datetime(2024, 2, 29)
    assert advance(datetime(2023, 1, 31), Frequency.monthly) == datetime(2023, 2, 28)
    assert advance(datetime(2024, 3, 31, 8, 0), Frequency.monthly) == datetime(
        2024, 4, 30, 8, 0
    )


def test_advance_yearly_from_leap_day():
    assert advance(datetime(2024, 2, 29), Frequency.yearly) == datetime(2025, 2, 28)
    assert advance(datetime(2023, 6, 1), Frequency.yearly) == datetime(2024, 6, 1)


def test_add_months_across_years():
    assert add_months(datetime(2024, 11, 30), 3) == datetime(2025, 2, 28)


def test_advance_rejects_unknown_frequency():
    with pytest.raises(InvalidFrequencyError):
        advance(datetime(2024, 1, 1), "daily")


@pytest.mark.parametrize("frequency", list(Frequency))
def test_advance_always_moves_forward(frequency):
    day = datetime(2023, 12, 25, 23, 59)
    for _ in range(800):
        nxt = advance(day, frequency)
        assert nxt > day
        day += timedelta(days=1)


def test_run_once_posts_due_plan_and_advances(tmp_path):
    store, factory = make_store(tmp_path)
    plan_id = add_plan(factory, name="Rent", due=datetime(2024, 1, 15))
    now = datetime(2024, 1, 20)

    report = RecurringEngine(store).run_once(now)

    assert report.processed == 1
    assert report.succeeded == 1
    assert report.failed == []
    next_due, txns = plan_state(factory, plan_id)
    assert next_due == datetime(2024, 2, 15)
    assert len(txns) == 1
    txn = txns[0]
    assert txn.amount_cents == 50_000
    assert txn.currency == "INR"
    assert txn.type == TransactionType.expense
    assert txn.occurred_at == now
    assert txn.description == "Recurring: Rent"
    assert txn.is_ai_generated is False


def test_run_once_leaves_future_and_inactive_plans_untouched(tmp_path):
    store, factory = make_store(tmp_path)
    future_id = add_plan(factory, name="Gym", due=datetime(2024, 1, 21))
    inactive_id = add_plan(
        factory, name="Old", due=datetime(2024, 1, 1), is_active=False
    )

    report = RecurringEngine(store).run_once(datetime(2024, 1, 20))

    assert report.processed == 0
    for plan_id, due in [
        (future_id, datetime(2024, 1, 21)),
        (inactive_id, datetime(2024, 1, 1)),
    ]:
        next_due, txns = plan_state(factory, plan_id)
        assert next_due == due
        assert txns == []


def test_run_once_includes_plan_due_exactly_now(tmp_path):
    store, factory = make_store(tmp_path)
    now = datetime(2024, 3, 1, 0, 0)
    plan_id = add_plan(factory, name="Salary", due=now, type=TransactionType.income)

    report = RecurringEngine(store).run_once(now)

    assert report.succeeded == 1
    next_due, _ = plan_state(factory, plan_id)
    assert next_due == datetime(2024, 4, 1)


def test_failure_in_one_plan_does_not_affect_others(tmp_path):
    _, factory = make_store(tmp_path)
    first = add_plan(factory, name="Internet", due=datetime(2024, 1, 10))
    second = add_plan(factory, name="Phone", due=datetime(2024, 1, 11))
    third = add_plan(factory, name="Streaming", due=datetime(2024, 1, 12))
    store = FlakyStore(factory, fail_on=2)

    report = RecurringEngine(store).run_once(datetime(2024, 1, 20))

    assert report.processed == 3
    assert report.succeeded == 2
    assert [failure.plan_id for failure in report.failed] == [second]
    assert "disk I/O error" in report.failed[0].error

    assert plan_state(factory, first)[0] == datetime(2024, 2, 10)
    assert plan_state(factory, third)[0] == datetime(2024, 2, 12)
    next_due, txns = plan_state(factory, second)
    assert next_due == datetime(2024, 1, 11)
    assert txns == []


def test_failed_plan_is_retried_on_next_run(tmp_path):
    _, factory = make_store(tmp_path)
    plan_id = add_plan(factory, name="Phone", due=datetime(2024, 1, 11))

    first = RecurringEngine(FlakyStore(factory, fail_on=1)).run_once(
        datetime(2024, 1, 20)
    )
    assert [failure.plan_id for failure in first.failed] == [plan_id]

    second = RecurringEngine(LedgerStore(factory)).run_once(datetime(2024, 1, 21))
    assert second.succeeded == 1
    next_due, txns = plan_state(factory, plan_id)
    assert next_due == datetime(2024, 2, 11)
    assert len(txns) == 1


def test_second_run_in_same_window_does_not_double_charge(tmp_path):
    store, factory = make_store(tmp_path)
    plan_id = add_plan(factory, name="Rent", due=datetime(2024, 1, 15))
    engine = RecurringEngine(store)

    engine.run_once(datetime(2024, 1, 20))
    report = engine.run_once(datetime(2024, 1, 20, 12, 0))

    assert report.processed == 0
    _, txns = plan_state(factory, plan_id)
    assert len(txns) == 1


def test_stale_snapshot_loses_compare_and_swap(tmp_path):
    store, factory = make_store(tmp_path)
    plan_id = add_plan(factory, name="Rent", due=datetime(2024, 1, 15))
    now = datetime(2024, 1, 20)
    stale = store.due_plans(now)

    RecurringEngine(store).run_once(now)

    class StaleStore(LedgerStore):
        def due_plans(self, _now):
            return stale

    report = RecurringEngine(StaleStore(factory)).run_once(now)
    assert report.processed == 1
    assert report.succeeded == 0
    assert report.failed == []
    assert report.skipped == [plan_id]

    with pytest.raises(PlanAlreadyAdvanced):
        RecurringEngine(store).post_occurrence(stale[0], now)

    next_due, txns = plan_state(factory, plan_id)
    assert next_due == datetime(2024, 2, 15)
    assert len(txns) == 1


def test_store_unavailable_aborts_whole_run(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'ledger.db'}")
    store = LedgerStore(sessionmaker(bind=engine))

    with pytest.raises(StoreUnavailableError):
        RecurringEngine(store).run_once(datetime(2024, 1, 20))


def test_plan_over_time_budget_is_rolled_back(tmp_path):
    store, factory = make_store(tmp_path)
    plan_id = add_plan(factory, name="Rent", due=datetime(2024, 1, 15))

    report = RecurringEngine(store, plan_timeout_secs=-1.0).run_once(
        datetime(2024, 1, 20)
    )

    assert [failure.plan_id for failure in report.failed] == [plan_id]
    assert "limit" in report.failed[0].error
    next_due, txns = plan_state(factory, plan_id)
    assert next_due == datetime(2024, 1, 15)
    assert txns == []


def test_worker_pool_processes_every_plan(tmp_path):
    store, factory = make_store(tmp_path)
    plan_ids = [
        add_plan(
            factory,
            name=f"Plan {idx}",
            due=datetime(2024, 1, 1 + idx),
            frequency=Frequency.weekly,
        )
        for idx in range(6)
    ]

    report = RecurringEngine(store, max_workers=3).run_once(datetime(2024, 1, 20))

    assert report.processed == 6
    assert report.succeeded == 6
    for idx, plan_id in enumerate(plan_ids):
        next_due, txns = plan_state(factory, plan_id)
        assert next_due == datetime(2024, 1, 8 + idx)
        assert len(txns) == 1


def make_settings(database_url: str, plan_timeout_secs: float) -> Settings:
    return Settings(
        database_url=database_url,
        timezone="Asia/Kolkata",
        default_currency="INR",
        scheduler_enabled=False,
        scheduler_hour=0,
        scheduler_minute=0,
        scheduler_max_workers=1,
        plan_timeout_secs=plan_timeout_secs,
    )


def test_sqlite_lock_wait_is_bounded_by_plan_budget():
    settings = make_settings("sqlite:///ledger.db", 12.5)
    assert _connect_args(settings) == {"check_same_thread": False, "timeout": 12.5}

    other = make_settings("postgresql://ledger@localhost/ledger", 12.5)
    assert _connect_args(other) == {}


def test_plan_blocked_on_locked_store_fails_within_budget(tmp_path):
    path = tmp_path / "ledger.db"
    url = f"sqlite:///{path}"
    engine = create_engine(url, connect_args=_connect_args(make_settings(url, 0.2)))
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    plan_id = add_plan(factory, name="Rent", due=datetime(2024, 1, 15))

    blocker = sqlite3.connect(path)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        started = time.monotonic()
        report = RecurringEngine(LedgerStore(factory)).run_once(datetime(2024, 1, 20))
        elapsed = time.monotonic() - started
    finally:
        blocker.rollback()
        blocker.close()

    assert [failure.plan_id for failure in report.failed] == [plan_id]
    assert elapsed < 5
    next_due, txns = plan_state(factory, plan_id)
    assert next_due == datetime(2024, 1, 15)
    assert txns == []
