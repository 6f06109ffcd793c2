from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    ChargeRecord,
    CounterRecord,
    DeliveryRecord,
    MessageRecord,
    SessionRecord,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Write-through persistence for the store. Uses SQLAlchemy and supports both SQLite and
    PostgreSQL URLs.

    Counter increments run as a single UPDATE ... SET value = value + 1 followed by a read in
    the same transaction, so allocations stay disjoint across processes sharing one database.
    The unique index on sessions.delivery_id rejects a second non-null delivery id.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.counters = Table(
            "counters",
            self.metadata,
            Column("key", String(255), primary_key=True),
            Column("value", Integer, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.sessions = Table(
            "sessions",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("delivery_id", String(255), nullable=True, unique=True),
            Column("client_ref", String(64), nullable=True, index=True),
            Column("session_id", String(255), nullable=True, index=True),
            Column("phone", String(32), nullable=True, index=True),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False, index=True),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("phone", String(32), nullable=True, index=True),
            Column("client_ref", String(64), nullable=True),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False, index=True),
        )
        self.charges = Table(
            "charges",
            self.metadata,
            Column("transaction_id", String(255), primary_key=True),
            Column("status", String(50), nullable=True),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.deliveries = Table(
            "deliveries",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("kind", String(50), nullable=False),
            Column("client_ref", String(64), nullable=True, index=True),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def increment_counter(self, key: str, floor: int) -> int:
        with self._lock:
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.counters.update()
                    .where(self.counters.c.key == key)
                    .values(value=self.counters.c.value + 1, updated_at_utc=now)
                )
                if result.rowcount == 0:
                    conn.execute(
                        self.counters.insert().values(
                            key=key,
                            value=floor + 1,
                            created_at_utc=now,
                            updated_at_utc=now,
                        )
                    )
                return conn.execute(
                    select(self.counters.c.value).where(self.counters.c.key == key)
                ).scalar_one()

    def get_counter(self, key: str) -> Optional[int]:
        with self._lock:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(self.counters.c.value).where(self.counters.c.key == key)
                ).scalar_one_or_none()

    def set_counter(self, key: str, value: int) -> None:
        with self._lock:
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                self._upsert(
                    conn,
                    self.counters,
                    self.counters.c.key,
                    key,
                    {"value": value, "updated_at_utc": now},
                    {"created_at_utc": now},
                )

    def list_counters(self) -> list[CounterRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.counters)).all()
        return [
            CounterRecord(
                key=row.key,
                value=row.value,
                created_at_utc=row.created_at_utc,
                updated_at_utc=row.updated_at_utc,
            )
            for row in rows
        ]

    def insert_session(self, record: SessionRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.sessions.insert().values(id=record.id, **self._session_row(record)))

    def update_session(self, record: SessionRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.sessions.update()
                    .where(self.sessions.c.id == record.id)
                    .values(**self._session_row(record))
                )

    def list_sessions(self) -> list[SessionRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.sessions.c.payload_json).order_by(
                        self.sessions.c.created_at_utc
                    )
                ).all()
        return [SessionRecord.model_validate(json.loads(row.payload_json)) for row in rows]

    def get_session_by_delivery(self, delivery_id: str) -> Optional[SessionRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.sessions.c.payload_json).where(
                        self.sessions.c.delivery_id == delivery_id
                    )
                ).first()
        return SessionRecord.model_validate(json.loads(row.payload_json)) if row else None

    def insert_message(self, record: MessageRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.messages.insert().values(
                        id=record.id,
                        phone=record.phone,
                        client_ref=record.client_ref,
                        payload_json=record.model_dump_json(),
                        created_at_utc=record.created_at_utc,
                    )
                )

    def list_messages(self, limit: Optional[int] = None) -> list[MessageRecord]:
        """Oldest first. Without a limit the whole log is returned."""
        query = select(self.messages.c.payload_json).order_by(
            self.messages.c.created_at_utc, self.messages.c.id
        )
        if limit is not None:
            query = query.limit(max(1, limit))
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [MessageRecord.model_validate(json.loads(row.payload_json)) for row in rows]

    def upsert_charge(self, record: ChargeRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                self._upsert(
                    conn,
                    self.charges,
                    self.charges.c.transaction_id,
                    record.transaction_id,
                    {
                        "status": record.status,
                        "payload_json": record.model_dump_json(),
                        "updated_at_utc": record.updated_at_utc,
                    },
                    {"created_at_utc": record.created_at_utc},
                )

    def list_charges(self) -> list[ChargeRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.charges.c.payload_json)).all()
        return [ChargeRecord.model_validate(json.loads(row.payload_json)) for row in rows]

    def insert_delivery(self, record: DeliveryRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.deliveries.insert().values(
                        id=record.id,
                        kind=record.kind.value,
                        client_ref=record.client_ref,
                        payload_json=record.model_dump_json(),
                        created_at_utc=record.created_at_utc,
                    )
                )

    def list_deliveries(self) -> list[DeliveryRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.deliveries.c.payload_json).order_by(
                        self.deliveries.c.created_at_utc
                    )
                ).all()
        return [DeliveryRecord.model_validate(json.loads(row.payload_json)) for row in rows]

    @staticmethod
    def _session_row(record: SessionRecord) -> dict:
        return {
            "delivery_id": record.delivery_id,
            "client_ref": record.client_ref,
            "session_id": record.session_id,
            "phone": record.contact.phone,
            "payload_json": record.model_dump_json(),
            "created_at_utc": record.created_at_utc,
            "updated_at_utc": record.updated_at_utc,
        }

    @staticmethod
    def _upsert(
        conn: Connection,
        table: Table,
        key_column: Column,
        key: str,
        values: dict,
        insert_only: dict,
    ) -> None:
        existing = conn.execute(select(key_column).where(key_column == key)).first()
        if existing:
            conn.execute(table.update().where(key_column == key).values(**values))
        else:
            conn.execute(table.insert().values({key_column.name: key, **values, **insert_only}))
