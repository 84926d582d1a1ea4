from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from time import perf_counter
from typing import Any

import structlog
from opentelemetry import trace
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from coffee_demo.db.models import Base, CoffeeOrder
from coffee_demo.errors import (
    CoffeeDemoError,
    DuplicateError,
    NotFoundError,
    QueryError,
    SchemaError,
    StoreConnectionError,
)
from coffee_demo.models.schemas import CreateCoffeeOrder
from coffee_demo.observability.tracing import Tracing


logger = structlog.get_logger("db")

_CHECKED_IN_AT = "checked_in_at"


def _translate(exc: SQLAlchemyError, message: str) -> CoffeeDemoError:
    if isinstance(exc, IntegrityError):
        return DuplicateError("Coffee order already exists")
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return StoreConnectionError("Database is unreachable")
    return QueryError(message)


def _discard_idle_connections(engine: Engine, max_idle_seconds: float) -> None:
    """Drop pooled connections that sat idle longer than ``max_idle_seconds``.

    Raising DisconnectionError from a checkout listener makes the pool throw the
    connection away and hand out a fresh one.
    """

    @event.listens_for(engine, "checkin")
    def _on_checkin(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info[_CHECKED_IN_AT] = time.monotonic()

    @event.listens_for(engine, "checkout")
    def _on_checkout(dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
        checked_in_at = connection_record.info.pop(_CHECKED_IN_AT, None)
        if checked_in_at is not None and time.monotonic() - checked_in_at > max_idle_seconds:
            raise DisconnectionError("connection exceeded max idle time")


class Database:
    """Pooled access to the coffee_orders table.

    Every call opens and closes its own session, runs inside a span named after
    the operation and translates driver failures into the service error types.
    """

    def __init__(self, engine: Engine, tracing: Tracing) -> None:
        self.engine = engine
        self._tracing = tracing
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def open(
        cls,
        dsn: str,
        tracing: Tracing,
        *,
        pool_max: int = 25,
        pool_min: int = 5,
        max_lifetime_seconds: int = 300,
        max_idle_seconds: int = 60,
        pool_timeout_seconds: float = 30.0,
    ) -> Database:
        """Create the pooled engine and check the store answers.

        Checkouts from an exhausted pool wait up to ``pool_timeout_seconds`` and
        then fail with StoreConnectionError.
        """

        try:
            engine = create_engine(
                dsn,
                pool_size=pool_min,
                max_overflow=max(0, pool_max - pool_min),
                pool_recycle=max_lifetime_seconds,
                pool_timeout=pool_timeout_seconds,
                pool_pre_ping=True,
            )
        except Exception as exc:
            raise StoreConnectionError("Failed to create connection pool") from exc

        _discard_idle_connections(engine, max_idle_seconds)

        database = cls(engine, tracing)
        try:
            database.ping()
        except StoreConnectionError:
            engine.dispose()
            raise

        logger.info(
            "database_opened",
            dialect=engine.dialect.name,
            pool_max=pool_max,
            pool_min=pool_min,
            max_lifetime_seconds=max_lifetime_seconds,
            max_idle_seconds=max_idle_seconds,
            pool_timeout_seconds=pool_timeout_seconds,
        )
        return database

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _operation(self, name: str) -> Iterator[trace.Span]:
        attributes = {"db.system": self.engine.dialect.name, "db.operation": name}
        with self._tracing.start_span(name, attributes=attributes) as span:
            start = perf_counter()
            try:
                yield span
            finally:
                span.set_attribute("db.duration_ms", round((perf_counter() - start) * 1000.0, 3))

    def ensure_schema(self) -> None:
        with self._operation("ensure_schema"):
            try:
                Base.metadata.create_all(self.engine, checkfirst=True)
            except SQLAlchemyError as exc:
                raise SchemaError("Failed to initialize database schema") from exc

    def ping(self) -> None:
        with self._operation("ping"):
            try:
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except SQLAlchemyError as exc:
                raise StoreConnectionError("Database is unreachable") from exc

    def get_order(self, order_id: int) -> CoffeeOrder:
        with self._operation("get_order") as span:
            span.set_attribute("coffee_order.id", order_id)
            try:
                with self._sessions() as session:
                    order = session.get(CoffeeOrder, order_id)
            except SQLAlchemyError as exc:
                raise _translate(exc, "Failed to get coffee order") from exc

            if order is None:
                raise NotFoundError(f"Coffee order {order_id} not found")
            return order

    def create_order(self, payload: CreateCoffeeOrder) -> CoffeeOrder:
        with self._operation("create_order") as span:
            order = self._insert(CoffeeOrder(user_name=payload.user_name, coffee_type=payload.coffee_type))
            span.set_attribute("coffee_order.id", order.id)
            return order

    def create_order_at(self, payload: CreateCoffeeOrder, created_at: datetime) -> CoffeeOrder:
        with self._operation("create_order_at") as span:
            order = self._insert(
                CoffeeOrder(user_name=payload.user_name, coffee_type=payload.coffee_type, created_at=created_at)
            )
            span.set_attribute("coffee_order.id", order.id)
            return order

    def _insert(self, order: CoffeeOrder) -> CoffeeOrder:
        try:
            with self._sessions() as session:
                session.add(order)
                session.commit()
                # Pull the server-assigned created_at.
                session.refresh(order)
        except SQLAlchemyError as exc:
            raise _translate(exc, "Failed to create coffee order") from exc
        return order
