from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from babylog.core.errors import ConcurrentUpdateError, StorageError
from babylog.services.event_store import EventFilter
from babylog.services.sql_store import SqlEventStore, build_filter_query, map_storage_error
from babylog.utils.testing import HOME_TZ, local


class _PgError(Exception):
    def __init__(self, message: str, sqlstate: str):
        super().__init__(message)
        self.sqlstate = sqlstate


class _FakeTransaction:
    def __init__(self, commit_error=None):
        self.committed = False
        self.rolled_back = False
        self._commit_error = commit_error

    async def commit(self):
        if self._commit_error is not None:
            raise self._commit_error
        self.committed = True

    async def rollback(self):
        self.rolled_back = True


class _FakeConnection:
    def __init__(self, transaction, execute_error=None):
        self.transaction = transaction
        self._execute_error = execute_error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def begin(self):
        return self.transaction

    async def execute(self, statement, params):
        raise self._execute_error


class _FakeDatabase:
    def __init__(self, conn):
        self._conn = conn

    def connection(self):
        return self._conn


class _RecordingConnection:
    def __init__(self):
        self.statements = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement):
        self.statements.append(statement.text)


class _FakeEngine:
    def __init__(self, conn):
        self._conn = conn

    def begin(self):
        return self._conn


class _FakeSchemaDatabase:
    def __init__(self, conn):
        self.engine = _FakeEngine(conn)


@pytest.mark.parametrize("sqlstate", ["40P01", "55P03", "23505"])
def test_lock_contention_maps_to_concurrent_update(sqlstate: str) -> None:
    error = OperationalError("UPDATE baby_events", {}, _PgError("contention", sqlstate))

    mapped = map_storage_error(error)

    assert isinstance(mapped, ConcurrentUpdateError)
    assert mapped.details["sqlstate"] == sqlstate
    assert mapped.__cause__ is error


def test_integrity_error_maps_to_concurrent_update() -> None:
    error = IntegrityError("INSERT INTO baby_events", {}, Exception("duplicate key"))

    assert isinstance(map_storage_error(error), ConcurrentUpdateError)


def test_other_failures_map_to_storage_error() -> None:
    error = OperationalError("SELECT 1", {}, _PgError("connection reset", "08006"))

    mapped = map_storage_error(error)

    assert isinstance(mapped, StorageError)
    assert "connection reset" in mapped.message
    assert mapped.status_code == 500


def test_build_filter_query_with_everything() -> None:
    event_filter = EventFilter(
        event_type="poo", user_name="Tim",
        start_date=date(2024, 3, 10), end_date=date(2024, 3, 10), tz=HOME_TZ, limit=5,
    )

    sql, params = build_filter_query(event_filter)

    assert "type = :type AND subtype = :subtype AND user_name = :user_name" in sql
    assert "timestamp >= :start AND timestamp < :end" in sql
    assert sql.endswith("ORDER BY timestamp DESC, id DESC LIMIT :limit")
    assert params["type"] == "diaper" and params["subtype"] == "poo"
    assert params["start"] == local(2024, 3, 10)
    assert params["end"] == local(2024, 3, 11)
    assert params["limit"] == 5


def test_build_filter_query_without_filters() -> None:
    sql, params = build_filter_query(EventFilter())

    assert "WHERE" not in sql
    assert params == {}


async def test_failed_statement_rolls_back() -> None:
    trans = _FakeTransaction()
    conn = _FakeConnection(trans, OperationalError("SELECT", {}, _PgError("lock timeout", "55P03")))
    store = SqlEventStore(_FakeDatabase(conn))

    with pytest.raises(ConcurrentUpdateError):
        async with store.transaction() as tx:
            await tx.get_by_id(1)

    assert trans.rolled_back
    assert not trans.committed


async def test_commit_failure_is_mapped() -> None:
    trans = _FakeTransaction(commit_error=OperationalError("COMMIT", {}, _PgError("gone", "08006")))
    store = SqlEventStore(_FakeDatabase(_FakeConnection(trans)))

    with pytest.raises(StorageError):
        async with store.transaction():
            pass


async def test_create_schema_adds_one_open_sleep_per_caregiver_index() -> None:
    conn = _RecordingConnection()
    store = SqlEventStore(_FakeSchemaDatabase(conn))

    await store.create_schema()

    assert len(conn.statements) == 4
    assert "CREATE TABLE IF NOT EXISTS baby_events" in conn.statements[0]
    unique_index = conn.statements[-1]
    assert "CREATE UNIQUE INDEX" in unique_index
    assert "sleep_end_time IS NULL" in unique_index
