"""PostgreSQL persistence for entitlement records."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import EntitlementRecord
from .store import DEFAULT_MAX_ATTEMPTS, CompareAndSwapStore

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from billing_backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "billing_backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


ENTITLEMENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS billing_entitlements (
    user_id TEXT PRIMARY KEY,
    subscription_active BOOLEAN NOT NULL DEFAULT FALSE,
    active_since TIMESTAMPTZ,
    canceled_at TIMESTAMPTZ,
    provider_subscription_id TEXT,
    file_credits INTEGER NOT NULL DEFAULT 0 CHECK (file_credits >= 0),
    last_payment_at TIMESTAMPTZ,
    processed_event_ids TEXT[] NOT NULL DEFAULT '{}',
    founder_supporter BOOLEAN NOT NULL DEFAULT FALSE,
    founder_since TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (NOT subscription_active OR provider_subscription_id IS NOT NULL)
);
CREATE INDEX IF NOT EXISTS billing_entitlements_subscription_idx
    ON billing_entitlements (provider_subscription_id);
CREATE INDEX IF NOT EXISTS billing_entitlements_active_idx
    ON billing_entitlements (subscription_active);
"""


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_record(row: dict) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row["user_id"],
        subscription_active=bool(row["subscription_active"]),
        active_since=row.get("active_since"),
        canceled_at=row.get("canceled_at"),
        provider_subscription_id=row.get("provider_subscription_id"),
        file_credits=int(row["file_credits"]),
        last_payment_at=row.get("last_payment_at"),
        processed_event_ids=frozenset(row.get("processed_event_ids") or ()),
        founder_supporter=bool(row.get("founder_supporter")),
        founder_since=row.get("founder_since"),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _record_params(record: EntitlementRecord) -> dict:
    return {
        "user_id": record.user_id,
        "subscription_active": record.subscription_active,
        "active_since": record.active_since,
        "canceled_at": record.canceled_at,
        "provider_subscription_id": record.provider_subscription_id,
        "file_credits": record.file_credits,
        "last_payment_at": record.last_payment_at,
        "processed_event_ids": sorted(record.processed_event_ids),
        "founder_supporter": record.founder_supporter,
        "founder_since": record.founder_since,
        "version": record.version,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


class PostgresEntitlementStore(CompareAndSwapStore):
    """Concrete store persisting entitlement records in PostgreSQL.

    Uniqueness comes from the ``user_id`` primary key and every write is a
    single ``UPDATE`` guarded by the version that was read, so concurrent
    writers for the same user serialize without explicit row locks.
    """

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, clock=clock)
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(ENTITLEMENTS_SCHEMA)

    def _load(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_entitlements
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def _insert(self, record: EntitlementRecord) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_entitlements (
                    user_id,
                    subscription_active,
                    active_since,
                    canceled_at,
                    provider_subscription_id,
                    file_credits,
                    last_payment_at,
                    processed_event_ids,
                    founder_supporter,
                    founder_since,
                    version,
                    created_at,
                    updated_at
                )
                VALUES (%(user_id)s, %(subscription_active)s, %(active_since)s, %(canceled_at)s,
                        %(provider_subscription_id)s, %(file_credits)s, %(last_payment_at)s,
                        %(processed_event_ids)s, %(founder_supporter)s, %(founder_since)s,
                        %(version)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                _record_params(record),
            )
            return cursor.rowcount > 0

    def _swap(self, expected_version: int, record: EntitlementRecord) -> bool:
        params = _record_params(record)
        params["expected_version"] = expected_version
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_entitlements
                SET subscription_active = %(subscription_active)s,
                    active_since = %(active_since)s,
                    canceled_at = %(canceled_at)s,
                    provider_subscription_id = %(provider_subscription_id)s,
                    file_credits = %(file_credits)s,
                    last_payment_at = %(last_payment_at)s,
                    processed_event_ids = %(processed_event_ids)s,
                    founder_supporter = %(founder_supporter)s,
                    founder_since = %(founder_since)s,
                    version = %(version)s,
                    updated_at = %(updated_at)s
                WHERE user_id = %(user_id)s AND version = %(expected_version)s
                """,
                params,
            )
            return cursor.rowcount > 0

    def find_by_subscription_id(self, subscription_id: str) -> Optional[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_entitlements
                WHERE provider_subscription_id = %s
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def list_records(self, *, active_only: bool = False, limit: int = 100) -> List[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_entitlements
                WHERE (NOT %s OR subscription_active)
                ORDER BY user_id
                LIMIT %s
                """,
                (active_only, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_record(row) for row in rows]


__all__ = ["ENTITLEMENTS_SCHEMA", "PostgresEntitlementStore", "managed_connection"]
