"""Storage contract for entitlement records and an in-memory implementation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional, Protocol

from .exceptions import ConditionalUpdateLost, RecordNotFound
from .models import EntitlementRecord, RecordMutation, RecordPredicate, UpdateResult

logger = logging.getLogger("billing")

DEFAULT_MAX_ATTEMPTS = 5


class EntitlementStore(Protocol):
    """Persistence operations required by the billing services."""

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        ...

    def create_if_absent(self, user_id: str) -> EntitlementRecord:
        ...

    def apply_update(
        self,
        user_id: str,
        mutation: RecordMutation,
        *,
        expected_version: Optional[int] = None,
    ) -> EntitlementRecord:
        ...

    def try_conditional_update(
        self,
        user_id: str,
        predicate: RecordPredicate,
        mutation: RecordMutation,
    ) -> UpdateResult:
        ...

    def find_by_subscription_id(self, subscription_id: str) -> Optional[EntitlementRecord]:
        ...

    def list_records(self, *, active_only: bool = False, limit: int = 100) -> List[EntitlementRecord]:
        ...


class CompareAndSwapStore:
    """Optimistic update loop shared by the concrete stores.

    Subclasses provide three primitives: load a record, insert a record unless
    the user already has one, and swap a record in only if its stored version
    still equals the version that was read. Every write in this class goes
    through ``_swap`` so no caller can observe a partially applied mutation.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _load(self, user_id: str) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    def _insert(self, record: EntitlementRecord) -> bool:
        raise NotImplementedError

    def _swap(self, expected_version: int, record: EntitlementRecord) -> bool:
        raise NotImplementedError

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        return self._load(user_id)

    def create_if_absent(self, user_id: str) -> EntitlementRecord:
        record = EntitlementRecord.new(user_id, now=self._clock())
        if self._insert(record):
            logger.info("Created entitlement record user=%s", user_id)
            return record

        existing = self._load(user_id)
        if existing is None:
            raise ConditionalUpdateLost(f"Entitlement record for {user_id} vanished after insert conflict")
        return existing

    def apply_update(
        self,
        user_id: str,
        mutation: RecordMutation,
        *,
        expected_version: Optional[int] = None,
    ) -> EntitlementRecord:
        for _ in range(self._max_attempts):
            current = self._require(user_id)
            if expected_version is not None and current.version != expected_version:
                raise ConditionalUpdateLost(
                    f"Entitlement record for {user_id} is at version {current.version}, expected {expected_version}"
                )
            updated = self._stamp(current, mutation(current))
            if self._swap(current.version, updated):
                return updated
            if expected_version is not None:
                break
        raise ConditionalUpdateLost(f"Gave up updating entitlement record for {user_id}")

    def try_conditional_update(
        self,
        user_id: str,
        predicate: RecordPredicate,
        mutation: RecordMutation,
    ) -> UpdateResult:
        for attempt in range(1, self._max_attempts + 1):
            current = self._require(user_id)
            if not predicate(current):
                return UpdateResult(applied=False, record=current)
            updated = self._stamp(current, mutation(current))
            if self._swap(current.version, updated):
                return UpdateResult(applied=True, record=updated)
            logger.debug("Conditional update lost race user=%s attempt=%s", user_id, attempt)
        raise ConditionalUpdateLost(f"Gave up updating entitlement record for {user_id}")

    def _require(self, user_id: str) -> EntitlementRecord:
        record = self._load(user_id)
        if record is None:
            raise RecordNotFound(f"No entitlement record for user {user_id}")
        return record

    def _stamp(self, current: EntitlementRecord, updated: EntitlementRecord) -> EntitlementRecord:
        if updated.user_id != current.user_id:
            raise ValueError("user_id is immutable")
        if not current.processed_event_ids <= updated.processed_event_ids:
            raise ValueError("processed_event_ids is append-only")
        return updated.evolve(
            version=current.version + 1,
            created_at=current.created_at,
            updated_at=self._clock(),
        )


class InMemoryEntitlementStore(CompareAndSwapStore):
    """Dictionary-backed store suitable for tests and local development."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, clock=clock)
        self._records: Dict[str, EntitlementRecord] = {}
        self._lock = Lock()

    def _load(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            return self._records.get(user_id)

    def _insert(self, record: EntitlementRecord) -> bool:
        with self._lock:
            if record.user_id in self._records:
                return False
            self._records[record.user_id] = record
            return True

    def _swap(self, expected_version: int, record: EntitlementRecord) -> bool:
        with self._lock:
            current = self._records.get(record.user_id)
            if current is None or current.version != expected_version:
                return False
            self._records[record.user_id] = record
            return True

    def find_by_subscription_id(self, subscription_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            for record in self._records.values():
                if record.provider_subscription_id == subscription_id:
                    return record
        return None

    def list_records(self, *, active_only: bool = False, limit: int = 100) -> List[EntitlementRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda record: record.user_id)
        if active_only:
            records = [record for record in records if record.subscription_active]
        return records[:limit]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


__all__ = [
    "CompareAndSwapStore",
    "DEFAULT_MAX_ATTEMPTS",
    "EntitlementStore",
    "InMemoryEntitlementStore",
]
