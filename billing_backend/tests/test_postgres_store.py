"""Tests for the PostgreSQL entitlement store against a scripted connection."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from billing_backend.app.entitlements import ConditionalUpdateLost, EntitlementRecord
from billing_backend.app.entitlements.repository import PostgresEntitlementStore


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _row(**overrides: Any) -> Dict[str, Any]:
    row = {
        "user_id": "user-1",
        "subscription_active": False,
        "active_since": None,
        "canceled_at": None,
        "provider_subscription_id": None,
        "file_credits": 0,
        "last_payment_at": None,
        "processed_event_ids": [],
        "founder_supporter": False,
        "founder_since": None,
        "version": 0,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.rowcount = 0
        self._result: List[Dict[str, Any]] = []

    def execute(self, sql: str, params: Any = None) -> None:
        self.connection.statements.append((" ".join(sql.split()), params))
        outcome = self.connection.outcomes.pop(0) if self.connection.outcomes else {}
        self.rowcount = outcome.get("rowcount", 0)
        self._result = outcome.get("rows", [])

    def fetchone(self) -> Optional[Dict[str, Any]]:
        return self._result[0] if self._result else None

    def fetchall(self) -> List[Dict[str, Any]]:
        return list(self._result)

    def close(self) -> None:
        pass


class FakeConnection:
    def __init__(self, outcomes: List[Dict[str, Any]]) -> None:
        self.outcomes = outcomes
        self.statements: List[tuple] = []

    def cursor(self, cursor_factory=None) -> FakeCursor:
        return FakeCursor(self)


def _store(outcomes: List[Dict[str, Any]], **kwargs: Any):
    connection = FakeConnection(outcomes)
    store = PostgresEntitlementStore(conn=connection, clock=lambda: NOW, **kwargs)
    return store, connection


def test_get_maps_row_to_record():
    store, connection = _store(
        [
            {
                "rows": [
                    _row(
                        subscription_active=True,
                        provider_subscription_id="sub_1",
                        active_since=NOW,
                        file_credits=2,
                        processed_event_ids=["evt_1", "checkout:cs_1"],
                        version=4,
                    )
                ]
            }
        ]
    )

    record = store.get("user-1")

    assert record is not None
    assert record.subscription_active is True
    assert record.provider_subscription_id == "sub_1"
    assert record.processed_event_ids == frozenset({"evt_1", "checkout:cs_1"})
    assert record.version == 4
    assert connection.statements[0][1] == ("user-1",)


def test_get_missing_row_returns_none():
    store, _ = _store([{"rows": []}])

    assert store.get("user-1") is None


def test_create_if_absent_reads_existing_row_after_conflict():
    store, connection = _store([{"rowcount": 0}, {"rows": [_row(file_credits=5, version=2)]}])

    record = store.create_if_absent("user-1")

    assert record.file_credits == 5
    assert "ON CONFLICT (user_id) DO NOTHING" in connection.statements[0][0]


def test_swap_is_guarded_by_expected_version():
    store, connection = _store([{"rows": [_row(version=3)]}, {"rowcount": 1}])

    updated = store.apply_update("user-1", lambda record: record.evolve(file_credits=1).with_processed("evt_9"))

    sql, params = connection.statements[1]
    assert "WHERE user_id = %(user_id)s AND version = %(expected_version)s" in sql
    assert params["expected_version"] == 3
    assert params["version"] == 4
    assert params["processed_event_ids"] == ["evt_9"]
    assert updated.version == 4


def test_swap_rowcount_zero_retries_then_gives_up():
    outcomes = []
    for _ in range(2):
        outcomes.append({"rows": [_row(version=1)]})
        outcomes.append({"rowcount": 0})
    store, connection = _store(outcomes, max_attempts=2)

    with pytest.raises(ConditionalUpdateLost):
        store.apply_update("user-1", lambda record: record.evolve(file_credits=1))

    assert len(connection.statements) == 4


def test_list_records_passes_filter_and_limit():
    store, connection = _store([{"rows": [_row(user_id="a"), _row(user_id="b")]}])

    records = store.list_records(active_only=True, limit=10)

    assert [record.user_id for record in records] == ["a", "b"]
    assert connection.statements[0][1] == (True, 10)


def test_row_round_trip_preserves_record_fields():
    record = EntitlementRecord(
        user_id="user-1",
        subscription_active=False,
        canceled_at=NOW,
        provider_subscription_id="sub_1",
        file_credits=7,
        founder_supporter=True,
        founder_since=NOW,
        processed_event_ids=frozenset({"evt_a"}),
        version=2,
        created_at=NOW,
        updated_at=NOW,
    )
    store, connection = _store([{"rowcount": 1}])

    assert store._insert(record) is True
    params = connection.statements[0][1]
    assert params["canceled_at"] == NOW
    assert params["founder_supporter"] is True
    assert params["processed_event_ids"] == ["evt_a"]
