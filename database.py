from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterator

from sqlalchemy import event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

if TYPE_CHECKING:  # pragma: no cover
    from models import RecurringPlan


def _connect_args(settings) -> dict[str, object]:
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # Lock waits, including the one taken at commit, share the per-plan budget.
        connect_args["timeout"] = max(settings.plan_timeout_secs, 0.0)
    return connect_args


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args = _connect_args(settings)
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


class StoreUnavailableError(RuntimeError):
    pass


class LedgerStore:
    """Transactional access to the ledger tables.

    The recurring scheduler only talks to the database through this class:
    one short read to collect due plans, then one ``transaction()`` per plan.
    Nothing holds a session across the whole batch.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def due_plans(self, now: datetime) -> list["RecurringPlan"]:
        from models import RecurringPlan

        stmt = (
            select(RecurringPlan)
            .where(
                RecurringPlan.is_active.is_(True),
                RecurringPlan.next_due_at <= now,
            )
            .order_by(RecurringPlan.next_due_at, RecurringPlan.id)
        )
        try:
            with self.session_factory() as session:
                plans = session.scalars(stmt).all()
                session.expunge_all()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Could not load due plans: {exc}") from exc
        return list(plans)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
