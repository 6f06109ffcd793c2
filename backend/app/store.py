from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from threading import RLock
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.app.models import (
    ChargeRecord,
    CounterRecord,
    DeliveryRecord,
    EventKind,
    MessageRecord,
    SessionRecord,
    utc_now,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence

logger = logging.getLogger("funnel_tracker.store")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class StoreUnavailableError(Exception):
    pass


class InMemoryStore:
    """Shared backing store for every component.

    All maps are guarded by one re-entrant lock. Counter increments and the delivery id
    uniqueness check run entirely under that lock, which is what makes them atomic for
    concurrent requests in this process. With persistence attached, every mutation is
    written through before the in-memory copy changes.
    """

    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.counters: dict[str, CounterRecord] = {}
        self.sessions: dict[str, SessionRecord] = {}
        self.messages: list[MessageRecord] = []
        self.charges: dict[str, ChargeRecord] = {}
        self.deliveries: list[DeliveryRecord] = []
        self._delivery_index: dict[str, str] = {}

        if self.persistence:
            with self._guard():
                self._hydrate()

    def increment_counter(self, key: str, floor: int) -> int:
        with self._lock:
            if self.persistence:
                with self._guard():
                    value = self.persistence.increment_counter(key, floor)
            else:
                existing = self.counters.get(key)
                value = (existing.value if existing else floor) + 1
            self._cache_counter(key, value)
            return value

    def get_counter(self, key: str) -> Optional[int]:
        with self._lock:
            if self.persistence:
                with self._guard():
                    return self.persistence.get_counter(key)
            existing = self.counters.get(key)
            return existing.value if existing else None

    def set_counter(self, key: str, value: int) -> CounterRecord:
        with self._lock:
            if self.persistence:
                with self._guard():
                    self.persistence.set_counter(key, value)
            return self._cache_counter(key, value)

    def ensure_counter(self, key: str, floor: int) -> int:
        with self._lock:
            current = self.get_counter(key)
            if current is None:
                self.set_counter(key, floor)
                return floor
            return current

    def max_numeric_client_ref(self) -> Optional[int]:
        with self._lock:
            refs = [record.client_ref for record in self.sessions.values()]
        numeric = [int(ref) for ref in refs if ref and ref.isdigit()]
        return max(numeric) if numeric else None

    def get_session(self, record_id: str) -> SessionRecord:
        session = self.sessions.get(record_id)
        if not session:
            raise StoreNotFoundError(f"session not found: {record_id}")
        return session

    def get_session_by_delivery(self, delivery_id: str) -> Optional[SessionRecord]:
        with self._lock:
            record_id = self._delivery_index.get(delivery_id)
            return self.sessions.get(record_id) if record_id else None

    def find_sessions(
        self,
        *,
        client_ref: Optional[str] = None,
        phones: Optional[Iterable[str]] = None,
        session_id: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> list[SessionRecord]:
        phone_set = set(phones or [])
        with self._lock:
            records = list(self.sessions.values())
        matches = [
            record
            for record in records
            if (client_ref and record.client_ref == client_ref)
            or (phone_set and record.contact.phone in phone_set)
            or (session_id and record.session_id == session_id)
            or (delivery_id and record.delivery_id == delivery_id)
        ]
        matches.sort(key=lambda item: item.created_at_utc, reverse=True)
        return matches

    def insert_session(self, record: SessionRecord) -> SessionRecord:
        with self._lock:
            if record.delivery_id and record.delivery_id in self._delivery_index:
                raise StoreConflictError(f"delivery id already recorded: {record.delivery_id}")
            if self.persistence:
                with self._guard():
                    self.persistence.insert_session(record)
            self.sessions[record.id] = record
            if record.delivery_id:
                self._delivery_index[record.delivery_id] = record.id
            return record

    def save_session(self, record: SessionRecord) -> SessionRecord:
        with self._lock:
            if record.id not in self.sessions:
                raise StoreNotFoundError(f"session not found: {record.id}")
            if record.delivery_id:
                owner = self._delivery_index.get(record.delivery_id)
                if owner and owner != record.id:
                    raise StoreConflictError(
                        f"delivery id already recorded: {record.delivery_id}"
                    )
            if self.persistence:
                with self._guard():
                    self.persistence.update_session(record)
            self.sessions[record.id] = record
            if record.delivery_id:
                self._delivery_index[record.delivery_id] = record.id
            return record

    def update_session(
        self, record_id: str, mutate: Callable[[SessionRecord], SessionRecord]
    ) -> SessionRecord:
        with self._lock:
            current = self.get_session(record_id)
            updated = mutate(current).model_copy(update={"updated_at_utc": utc_now()})
            return self.save_session(updated)

    def claim_unlinked_session(
        self,
        client_ref: str,
        delivery_id: str,
        mutate: Callable[[SessionRecord], SessionRecord],
    ) -> Optional[SessionRecord]:
        """Give ``delivery_id`` to the newest session of ``client_ref`` that has none yet.

        Returns None when every session of the reference is already linked to a click.
        """
        with self._lock:
            if delivery_id in self._delivery_index:
                raise StoreConflictError(f"delivery id already recorded: {delivery_id}")
            unlinked = [
                record
                for record in self.find_sessions(client_ref=client_ref)
                if record.delivery_id is None
            ]
            if not unlinked:
                return None
            return self.update_session(
                unlinked[0].id,
                lambda current: mutate(current).model_copy(update={"delivery_id": delivery_id}),
            )

    def load_session_by_delivery(self, delivery_id: str) -> Optional[SessionRecord]:
        with self._lock:
            cached = self.get_session_by_delivery(delivery_id)
            if cached or not self.persistence:
                return cached
            with self._guard():
                record = self.persistence.get_session_by_delivery(delivery_id)
            if record:
                self.sessions[record.id] = record
                self._delivery_index[delivery_id] = record.id
            return record

    def list_sessions(self) -> list[SessionRecord]:
        with self._lock:
            return list(self.sessions.values())

    def append_message(self, record: MessageRecord) -> MessageRecord:
        with self._lock:
            if self.persistence:
                with self._guard():
                    self.persistence.insert_message(record)
            self.messages.append(record)
            return record

    def list_messages(self, *, client_ref: Optional[str] = None) -> list[MessageRecord]:
        with self._lock:
            records = list(self.messages)
        if client_ref:
            records = [item for item in records if item.client_ref == client_ref]
        return records

    def upsert_charge(self, record: ChargeRecord) -> ChargeRecord:
        with self._lock:
            existing = self.charges.get(record.transaction_id)
            if existing:
                record = record.model_copy(update={"created_at_utc": existing.created_at_utc})
            if self.persistence:
                with self._guard():
                    self.persistence.upsert_charge(record)
            self.charges[record.transaction_id] = record
            return record

    def get_charge(self, transaction_id: str) -> Optional[ChargeRecord]:
        return self.charges.get(transaction_id)

    def record_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        with self._lock:
            if self.persistence:
                with self._guard():
                    self.persistence.insert_delivery(record)
            self.deliveries.append(record)
            return record

    def latest_delivery(
        self,
        *,
        kind: EventKind,
        client_ref: Optional[str] = None,
        session_record_id: Optional[str] = None,
    ) -> Optional[DeliveryRecord]:
        with self._lock:
            records = list(self.deliveries)
        for record in reversed(records):
            if record.kind != kind:
                continue
            if client_ref and record.client_ref == client_ref:
                return record
            if session_record_id and record.session_record_id == session_record_id:
                return record
        return None

    def ping(self) -> bool:
        if not self.persistence:
            return True
        return self.persistence.ping()

    def _cache_counter(self, key: str, value: int) -> CounterRecord:
        now = utc_now()
        existing = self.counters.get(key)
        record = CounterRecord(
            key=key,
            value=value,
            created_at_utc=existing.created_at_utc if existing else now,
            updated_at_utc=now,
        )
        self.counters[key] = record
        return record

    def _hydrate(self) -> None:
        for counter in self.persistence.list_counters():
            self.counters[counter.key] = counter
        for session in self.persistence.list_sessions():
            self.sessions[session.id] = session
            if session.delivery_id:
                self._delivery_index[session.delivery_id] = session.id
        self.messages = self.persistence.list_messages()
        for charge in self.persistence.list_charges():
            self.charges[charge.transaction_id] = charge
        self.deliveries = self.persistence.list_deliveries()
        logger.info(
            "store_hydrated sessions=%s messages=%s counters=%s charges=%s",
            len(self.sessions),
            len(self.messages),
            len(self.counters),
            len(self.charges),
        )

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            raise StoreConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            logger.error("store_unavailable error=%s", exc)
            raise StoreUnavailableError("backing store unavailable") from exc
