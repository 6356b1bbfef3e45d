"""PostgreSQL event store: raw SQL over an async SQLAlchemy connection.

Table baby_events keeps every timestamp as TIMESTAMPTZ. A partial unique index
guarantees one open sleep per caregiver even if two writers slip past the
application-level checks; the loser surfaces as ConcurrentUpdateError.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError

from babylog.core.database import DatabaseManager
from babylog.core.errors import BabyLogError, ConcurrentUpdateError, NotFoundError, StorageError
from babylog.db.models import ROW_COLUMNS, apply_changes, event_from_row, event_to_row, normalize_type
from babylog.services.event_store import EventFilter

logger = logging.getLogger(__name__)

TABLE = "baby_events"
_COLUMNS = ", ".join(ROW_COLUMNS)
_WRITE_COLUMNS = [c for c in ROW_COLUMNS if c != "id"]

SCHEMA_STATEMENTS = [
    f'''
    CREATE TABLE IF NOT EXISTS {TABLE} (
        id BIGSERIAL PRIMARY KEY,
        type VARCHAR(16) NOT NULL,
        amount INTEGER,
        user_name VARCHAR(64) NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL,
        sleep_start_time TIMESTAMPTZ,
        sleep_end_time TIMESTAMPTZ,
        subtype VARCHAR(8)
    )
    ''',
    f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_timestamp ON {TABLE} (timestamp DESC)",
    f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_sleep_start ON {TABLE} (type, sleep_start_time)",
    f'''
    CREATE UNIQUE INDEX IF NOT EXISTS uq_{TABLE}_open_sleep
    ON {TABLE} (user_name)
    WHERE type = 'sleep' AND sleep_end_time IS NULL
    ''',
]

# deadlock_detected, lock_not_available, unique_violation
CONCURRENCY_SQLSTATES = {"40P01", "55P03", "23505"}


# Used by: _SqlSession._execute(), SqlEventStore.transaction()
def map_storage_error(error: SQLAlchemyError) -> BabyLogError:
    """Lock contention and constraint races become ConcurrentUpdateError, the rest StorageError."""
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in CONCURRENCY_SQLSTATES or isinstance(error, IntegrityError):
        mapped: BabyLogError = ConcurrentUpdateError(
            "Another device updated this record at the same time, please retry",
            sqlstate=sqlstate,
        )
    else:
        reason = str(orig) if isinstance(error, DBAPIError) and orig is not None else str(error)
        mapped = StorageError(f"Storage failure: {reason}", sqlstate=sqlstate)
    mapped.__cause__ = error
    return mapped


# Used by: get_filtered()
def build_filter_query(event_filter: EventFilter):
    clauses: List[str] = []
    params: Dict[str, Any] = {}
    if event_filter.event_type:
        event_type, subtype = normalize_type(event_filter.event_type, None)
        clauses.append("type = :type")
        params["type"] = event_type
        if subtype:
            clauses.append("subtype = :subtype")
            params["subtype"] = subtype
    if event_filter.user_name:
        clauses.append("user_name = :user_name")
        params["user_name"] = event_filter.user_name
    start, end = event_filter.instant_range()
    if start is not None:
        clauses.append("timestamp >= :start")
        params["start"] = start
    if end is not None:
        clauses.append("timestamp < :end")
        params["end"] = end

    sql = f"SELECT {_COLUMNS} FROM {TABLE}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY timestamp DESC, id DESC"
    if event_filter.limit:
        sql += " LIMIT :limit"
        params["limit"] = event_filter.limit
    return sql, params


class _SqlSession:
    def __init__(self, conn):
        self._conn = conn

    async def _execute(self, sql: str, params: Optional[Dict[str, Any]] = None):
        try:
            return await self._conn.execute(text(sql), params or {})
        except SQLAlchemyError as e:
            mapped = map_storage_error(e)
            logger.error(f"SQL failed ({mapped.code}): {e}")
            raise mapped from e

    async def _fetch(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        result = await self._execute(sql, params)
        return [event_from_row(dict(row)) for row in result.mappings().all()]

    async def _fetch_one(self, sql: str, params: Optional[Dict[str, Any]] = None):
        rows = await self._fetch(sql, params)
        return rows[0] if rows else None

    async def create(self, event):
        row = event_to_row(event)
        cols = ", ".join(_WRITE_COLUMNS)
        values = ", ".join(f":{c}" for c in _WRITE_COLUMNS)
        return await self._fetch_one(
            f"INSERT INTO {TABLE} ({cols}) VALUES ({values}) RETURNING {_COLUMNS}",
            {c: row[c] for c in _WRITE_COLUMNS},
        )

    async def update(self, event_id: int, fields: Dict[str, Any]):
        current = await self._fetch_one(
            f"SELECT {_COLUMNS} FROM {TABLE} WHERE id = :id FOR UPDATE", {"id": event_id}
        )
        if current is None:
            raise NotFoundError(event_id)
        row = event_to_row(apply_changes(current, {**fields, "id": event_id}))
        assignments = ", ".join(f"{c} = :{c}" for c in _WRITE_COLUMNS)
        return await self._fetch_one(
            f"UPDATE {TABLE} SET {assignments} WHERE id = :id RETURNING {_COLUMNS}",
            row,
        )

    async def delete(self, event_id: int) -> bool:
        result = await self._execute(
            f"DELETE FROM {TABLE} WHERE id = :id RETURNING id", {"id": event_id}
        )
        if result.first() is None:
            raise NotFoundError(event_id)
        return True

    async def get_by_id(self, event_id: int):
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM {TABLE} WHERE id = :id", {"id": event_id}
        )

    async def get_all(self) -> List[Any]:
        return await self._fetch(f"SELECT {_COLUMNS} FROM {TABLE} ORDER BY timestamp DESC, id DESC")

    async def get_filtered(self, event_filter: EventFilter) -> List[Any]:
        sql, params = build_filter_query(event_filter)
        return await self._fetch(sql, params)

    async def get_last_open_sleep(self, user_name: str, for_update: bool = False):
        if for_update:
            # Serializes writers for this caregiver even when no open row exists yet
            await self._execute(
                "SELECT pg_advisory_xact_lock(hashtext(:key))", {"key": f"open-sleep:{user_name}"}
            )
        lock = " FOR UPDATE" if for_update else ""
        return await self._fetch_one(
            f'''
            SELECT {_COLUMNS} FROM {TABLE}
            WHERE type = 'sleep' AND user_name = :user_name AND sleep_end_time IS NULL
            ORDER BY sleep_start_time DESC, id DESC
            LIMIT 1{lock}
            ''',
            {"user_name": user_name},
        )

    async def get_open_sleeps(self, for_update: bool = False):
        lock = " FOR UPDATE" if for_update else ""
        return await self._fetch(
            f'''
            SELECT {_COLUMNS} FROM {TABLE}
            WHERE type = 'sleep' AND sleep_end_time IS NULL
            ORDER BY sleep_start_time, id{lock}
            '''
        )

    async def get_sleeps_containing(self, instant: datetime, for_update: bool = False):
        lock = " FOR UPDATE" if for_update else ""
        return await self._fetch(
            f'''
            SELECT {_COLUMNS} FROM {TABLE}
            WHERE type = 'sleep' AND sleep_end_time IS NOT NULL
              AND sleep_start_time < :instant AND sleep_end_time > :instant
            ORDER BY sleep_start_time, id{lock}
            ''',
            {"instant": instant},
        )

    async def find_overlapping_sleep(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[int] = None,
        user_name: Optional[str] = None,
    ):
        sql = f'''
            SELECT {_COLUMNS} FROM {TABLE}
            WHERE type = 'sleep' AND sleep_end_time IS NOT NULL
              AND sleep_start_time < :end AND sleep_end_time > :start
        '''
        params: Dict[str, Any] = {"start": start, "end": end}
        if exclude_id is not None:
            sql += " AND id <> :exclude_id"
            params["exclude_id"] = exclude_id
        if user_name is not None:
            sql += " AND user_name = :user_name"
            params["user_name"] = user_name
        sql += " ORDER BY sleep_start_time, id LIMIT 1"
        return await self._fetch_one(sql, params)

    async def get_sleep_sessions(self, for_update: bool = False):
        lock = " FOR UPDATE" if for_update else ""
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM {TABLE} WHERE type = 'sleep' ORDER BY sleep_start_time, id{lock}"
        )


class SqlEventStore:
    def __init__(self, db: DatabaseManager):
        self._db = db

    # Used by: main.py lifespan, cli.py init-db
    async def create_schema(self) -> None:
        async with self._db.engine.begin() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(text(statement))
        logger.info(f"Schema ready ({TABLE})")

    @asynccontextmanager
    async def transaction(self):
        async with self._db.connection() as conn:
            trans = await conn.begin()
            try:
                yield _SqlSession(conn)
            except BaseException:
                logger.warning("Rolling back transaction")
                await trans.rollback()
                raise
            try:
                await trans.commit()
            except SQLAlchemyError as e:
                raise map_storage_error(e) from e

    async def list_events(self, event_filter: Optional[EventFilter] = None) -> List[Any]:
        async with self.transaction() as tx:
            if event_filter is None:
                return await tx.get_all()
            return await tx.get_filtered(event_filter)
