import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from sqlalchemy.orm import Session

from database import LedgerStore, SessionLocal, StoreUnavailableError
from recurrence import RecurringEngine, local_now
from scheduler import SchedulerManager
from schemas import (
    AffordabilitySnapshotOut,
    CategoryTotalOut,
    DashboardOut,
    PlanFailureOut,
    RecurringPlanIn,
    RecurringPlanOut,
    RunReportOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    MetricsService,
    PlanNotFound,
    RecurringPlanService,
    TransactionNotFound,
    TransactionService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Recurring Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


ledger_store = LedgerStore(SessionLocal)


def get_store() -> LedgerStore:
    return ledger_store


scheduler_manager = SchedulerManager(ledger_store)


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def user_id_param(user_id: str = Query(..., alias="userId", min_length=1)) -> str:
    return user_id


@app.post("/recurring", response_model=RecurringPlanOut, status_code=201)
def create_recurring(data: RecurringPlanIn, db: Session = Depends(get_db)):
    try:
        plan = RecurringPlanService(db, data.user_id).create(data, now=local_now())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RecurringPlanOut.from_model(plan)


@app.get("/recurring", response_model=list[RecurringPlanOut])
def list_recurring(
    user_id: str = Depends(user_id_param), db: Session = Depends(get_db)
):
    plans = RecurringPlanService(db, user_id).list()
    return [RecurringPlanOut.from_model(plan) for plan in plans]


@app.post("/recurring/{plan_id}/deactivate", response_model=RecurringPlanOut)
def deactivate_recurring(
    plan_id: str,
    user_id: str = Depends(user_id_param),
    db: Session = Depends(get_db),
):
    try:
        plan = RecurringPlanService(db, user_id).deactivate(plan_id)
    except PlanNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return RecurringPlanOut.from_model(plan)


@app.get("/recurring/{plan_id}/transactions", response_model=list[TransactionOut])
def recurring_transactions(
    plan_id: str,
    user_id: str = Depends(user_id_param),
    db: Session = Depends(get_db),
):
    try:
        items = RecurringPlanService(db, user_id).transactions(plan_id)
    except PlanNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [TransactionOut.from_model(txn) for txn in items]


@app.get("/expenses", response_model=list[TransactionOut])
def list_expenses(
    user_id: str = Depends(user_id_param),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    items = TransactionService(db, user_id).list(limit=limit)
    return [TransactionOut.from_model(txn) for txn in items]


@app.post("/expenses", response_model=TransactionOut, status_code=201)
def create_expense(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db, data.user_id).create(data, now=local_now())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionOut.from_model(txn)


@app.delete("/expenses/{transaction_id}", status_code=204)
def delete_expense(
    transaction_id: str,
    user_id: str = Depends(user_id_param),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/dashboard", response_model=DashboardOut)
def dashboard(user_id: str = Depends(user_id_param), db: Session = Depends(get_db)):
    stats = MetricsService(db, user_id).dashboard(local_now())
    return DashboardOut(
        income=float(stats.income),
        expense=float(stats.expense),
        savings=float(stats.savings),
        savings_rate=stats.savings_rate,
    )


@app.get("/dashboard/categories", response_model=list[CategoryTotalOut])
def dashboard_categories(
    user_id: str = Depends(user_id_param), db: Session = Depends(get_db)
):
    breakdown = MetricsService(db, user_id).expense_by_category(local_now())
    return [
        CategoryTotalOut(
            category_id=item.category_id,
            name=item.name,
            amount=float(item.amount),
            percent=item.percent,
        )
        for item in breakdown
    ]


@app.get("/affordability-snapshot", response_model=AffordabilitySnapshotOut)
def affordability_snapshot(
    user_id: str = Depends(user_id_param), db: Session = Depends(get_db)
):
    snapshot = MetricsService(db, user_id).affordability_snapshot(local_now())
    return AffordabilitySnapshotOut(
        monthly_income_actual=float(snapshot.monthly_income_actual),
        recurring_income=float(snapshot.recurring_income),
        fixed_expenses=float(snapshot.fixed_expenses),
        avg_variable_expenses=float(snapshot.avg_variable_expenses),
        effective_income=float(snapshot.effective_income),
        surplus=float(snapshot.surplus),
        top_category=snapshot.top_category,
    )


@app.post("/scheduler/run", response_model=RunReportOut)
def run_scheduler(store: LedgerStore = Depends(get_store)):
    try:
        report = RecurringEngine(store).run_once(local_now())
    except StoreUnavailableError as exc:
        logger.exception("scheduler_run: source=api aborted")
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RunReportOut(
        now=report.now,
        processed=report.processed,
        succeeded=report.succeeded,
        failed=[
            PlanFailureOut(plan_id=failure.plan_id, error=failure.error)
            for failure in report.failed
        ],
        skipped=report.skipped,
    )
