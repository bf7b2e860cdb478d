from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from gateway.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionConflictError(RuntimeError):
    """
    The store rejected or timed out a transaction. Nothing was written;
    callers may retry (every ledger operation is idempotent).
    """


def _enable_sqlite_immediate_begin(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two readers race
    # past the idempotency check. Take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        # busy timeout: seconds a writer waits for the lock before failing
        connect_args.setdefault("timeout", max(settings.LEDGER_TX_TIMEOUT_SECONDS, 1.0))
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _enable_sqlite_immediate_begin(engine)
        return engine
    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


class Transactor:
    """
    Runs a unit of work inside a single database transaction.

    `fn` receives a Session; whatever it returns is handed back after commit.
    Any exception rolls the transaction back. Store-level failures (lock
    timeouts, serialization failures, dropped connections) surface as
    TransactionConflictError so callers can retry safely.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.timeout_seconds = (
            settings.LEDGER_TX_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )

    def run(self, fn: Callable[[Session], T]) -> T:
        try:
            with self.session_factory() as session:
                with session.begin():
                    self._apply_timeout(session)
                    return fn(session)
        except OperationalError as exc:
            logger.warning("Transaction aborted by the store: %s", exc)
            raise TransactionConflictError(str(exc.orig or exc)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.warning("Transaction lost its connection: %s", exc)
                raise TransactionConflictError("database connection lost") from exc
            raise

    def _apply_timeout(self, session: Session) -> None:
        bind = session.get_bind()
        if bind.dialect.name != "postgresql" or not self.timeout_seconds:
            return
        millis = int(self.timeout_seconds * 1000)
        session.execute(text(f"SET LOCAL statement_timeout = {millis}"))
        session.execute(text(f"SET LOCAL lock_timeout = {millis}"))


_default_transactor: Transactor | None = None


def get_transactor() -> Transactor:
    global _default_transactor
    if _default_transactor is None:
        _default_transactor = Transactor(SessionLocal)
    return _default_transactor
