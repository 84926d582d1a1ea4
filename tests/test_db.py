from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from coffee_demo.db.session import Database, _translate
from coffee_demo.errors import DuplicateError, NotFoundError, QueryError, StoreConnectionError
from coffee_demo.models.schemas import CreateCoffeeOrder


def test_create_and_get_order(database) -> None:
    created = database.create_order(CreateCoffeeOrder(user_name="Ada", coffee_type="latte"))
    assert created.id == 1
    assert created.created_at is not None

    fetched = database.get_order(created.id)
    assert (fetched.user_name, fetched.coffee_type) == ("Ada", "latte")
    assert fetched.created_at == created.created_at


def test_ids_are_increasing(database) -> None:
    ids = [database.create_order(CreateCoffeeOrder(user_name=f"u{i}", coffee_type="mocha")).id for i in range(5)]
    assert ids == [1, 2, 3, 4, 5]


def test_get_missing_order_raises_not_found(database) -> None:
    with pytest.raises(NotFoundError):
        database.get_order(12345)


def test_create_order_at_keeps_explicit_timestamp(database) -> None:
    when = datetime(2030, 1, 2, 3, 4, 5)
    created = database.create_order_at(CreateCoffeeOrder(user_name="Ada", coffee_type="latte"), when)
    assert created.created_at == when
    assert database.get_order(created.id).created_at == when


def test_created_at_defaults_to_now(database) -> None:
    created = database.create_order(CreateCoffeeOrder(user_name="Ada", coffee_type="latte"))
    # SQLite CURRENT_TIMESTAMP is UTC without a zone.
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    assert abs(now - created.created_at) < timedelta(minutes=1)


def test_ensure_schema_is_idempotent(database) -> None:
    database.create_order(CreateCoffeeOrder(user_name="Ada", coffee_type="latte"))
    database.ensure_schema()
    database.ensure_schema()
    assert database.get_order(1).user_name == "Ada"


def test_ping_succeeds(database) -> None:
    database.ping()


def test_open_unreachable_store_raises_connection_error(tracing, tmp_path) -> None:
    dsn = f"sqlite+pysqlite:///{tmp_path / 'missing' / 'dir' / 'coffee.db'}"
    with pytest.raises(StoreConnectionError):
        Database.open(dsn, tracing)


def test_open_invalid_dsn_raises_connection_error(tracing) -> None:
    with pytest.raises(StoreConnectionError):
        Database.open("not a database url", tracing)


def test_driver_errors_are_translated() -> None:
    integrity = IntegrityError("INSERT", {}, Exception("duplicate key"))
    operational = OperationalError("SELECT 1", {}, Exception("connection refused"))
    programming = ProgrammingError("SELECT nope", {}, Exception("syntax error"))

    assert isinstance(_translate(integrity, "insert failed"), DuplicateError)
    assert isinstance(_translate(operational, "query failed"), StoreConnectionError)

    other = _translate(programming, "query failed")
    assert isinstance(other, QueryError)
    assert other.message == "query failed"


def test_data_calls_are_traced(database, span_exporter) -> None:
    database.create_order(CreateCoffeeOrder(user_name="Ada", coffee_type="latte"))
    with pytest.raises(NotFoundError):
        database.get_order(99)

    names = [span.name for span in span_exporter.get_finished_spans()]
    assert "ensure_schema" in names
    assert "ping" in names
    assert "create_order" in names
    assert "get_order" in names


def test_exhausted_pool_times_out_with_connection_error(tracing, tmp_path) -> None:
    dsn = f"sqlite+pysqlite:///{tmp_path / 'small-pool.db'}"
    database = Database.open(dsn, tracing, pool_max=1, pool_min=1, pool_timeout_seconds=0.1)
    assert database.engine.pool.timeout() == 0.1

    with database.engine.connect():
        with pytest.raises(StoreConnectionError):
            database.ping()

    database.ping()
    database.close()
