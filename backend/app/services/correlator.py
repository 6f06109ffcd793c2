from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TypeVar, Union

from pydantic import BaseModel

from backend.app.models import (
    FLAG_FOR_KIND,
    ChargeVariant,
    Contact,
    EventKind,
    SessionFields,
    SessionRecord,
    utc_now,
)
from backend.app.services.normalize import normalize_phone, phone_variants
from backend.app.services.sequence import (
    GLOBAL_CLIENT_REF_KEY,
    SequenceAllocator,
    client_counter_key,
)
from backend.app.store import InMemoryStore, StoreConflictError, new_id

logger = logging.getLogger("funnel_tracker.correlator")

PartialT = TypeVar("PartialT", SessionRecord, SessionFields)
FieldGroupT = TypeVar("FieldGroupT", bound=BaseModel)


@dataclass(frozen=True)
class IdentityKeys:
    client_ref: Optional[str] = None
    phone: Optional[str] = None
    session_id: Optional[str] = None
    delivery_id: Optional[str] = None


def _is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def fill_missing(target: FieldGroupT, source: FieldGroupT) -> FieldGroupT:
    updates = {
        name: getattr(source, name)
        for name in type(target).model_fields
        if _is_empty(getattr(target, name)) and not _is_empty(getattr(source, name))
    }
    return target.model_copy(update=updates) if updates else target


def overlay(target: FieldGroupT, incoming: FieldGroupT) -> FieldGroupT:
    updates = {
        name: getattr(incoming, name)
        for name in type(incoming).model_fields
        if not _is_empty(getattr(incoming, name))
    }
    return target.model_copy(update=updates) if updates else target


def merge_missing(partial: PartialT, source: Union[SessionRecord, SessionFields]) -> PartialT:
    """Fill every empty contact/attribution field of ``partial`` from ``source``.

    Populated fields on ``partial`` are never touched.
    """
    return partial.model_copy(
        update={
            "contact": fill_missing(partial.contact, source.contact),
            "attribution": fill_missing(partial.attribution, source.attribution),
        }
    )


def merge_fields(existing: SessionRecord, fields: SessionFields) -> SessionRecord:
    """New non-empty values win; empty values never clobber; flags only ever turn on."""
    updates: dict = {
        "contact": overlay(existing.contact, fields.contact),
        "attribution": overlay(existing.attribution, fields.attribution),
        "flags": existing.flags.union(fields.flags),
    }
    if not _is_empty(fields.client_ref):
        updates["client_ref"] = fields.client_ref
    if not _is_empty(fields.session_id):
        updates["session_id"] = fields.session_id
    if not _is_empty(fields.message):
        updates["message"] = fields.message
    if fields.flags.has_pageview and existing.pageview_at_utc is None:
        updates["pageview_at_utc"] = utc_now()
    return existing.model_copy(update=updates)


class IdentityCorrelator:
    def __init__(self, store: InMemoryStore, allocator: SequenceAllocator) -> None:
        self.store = store
        self.allocator = allocator

    def candidates(self, keys: IdentityKeys) -> list[SessionRecord]:
        """Matches of the first key tier that has any, most recently created first."""
        if keys.client_ref:
            matches = self.store.find_sessions(client_ref=keys.client_ref)
            if matches:
                return matches
        variants = phone_variants(keys.phone)
        if variants:
            matches = self.store.find_sessions(phones=variants)
            if matches:
                return matches
        if keys.session_id or keys.delivery_id:
            return self.store.find_sessions(
                session_id=keys.session_id,
                delivery_id=keys.delivery_id,
            )
        return []

    def resolve(self, keys: IdentityKeys) -> Optional[SessionRecord]:
        matches = self.candidates(keys)
        return matches[0] if matches else None

    def enrich(self, partial: PartialT) -> PartialT:
        own_id = getattr(partial, "id", None)
        keys = IdentityKeys(
            client_ref=partial.client_ref,
            phone=partial.contact.phone,
            session_id=partial.session_id,
            delivery_id=getattr(partial, "delivery_id", None),
        )
        for match in self.candidates(keys):
            if match.id != own_id:
                return merge_missing(partial, match)
        return partial

    def upsert_by_delivery(
        self, delivery_id: str, fields: SessionFields
    ) -> tuple[SessionRecord, bool]:
        existing = self.store.get_session_by_delivery(delivery_id)
        if existing:
            merged = self.store.update_session(
                existing.id, lambda current: merge_fields(current, fields)
            )
            return merged, False

        client_ref = fields.client_ref
        try:
            if not _is_empty(client_ref):
                adopted = self.store.claim_unlinked_session(
                    client_ref, delivery_id, lambda current: self._link_click(current, fields)
                )
                if adopted:
                    logger.info(
                        "session_linked delivery_id=%s client_ref=%s session=%s",
                        delivery_id,
                        client_ref,
                        adopted.id,
                    )
                    return adopted, True
            else:
                client_ref = str(self.allocator.allocate_next(GLOBAL_CLIENT_REF_KEY))
            click_number = self.allocator.allocate_next(client_counter_key(client_ref))
            now = utc_now()
            record = SessionRecord(
                id=new_id("sess"),
                client_ref=client_ref,
                delivery_id=delivery_id,
                session_id=fields.session_id,
                contact=fields.contact,
                attribution=fields.attribution,
                flags=fields.flags,
                click_number=click_number,
                message=fields.message,
                pageview_at_utc=now if fields.flags.has_pageview else None,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.store.insert_session(record)
        except StoreConflictError:
            winner = self.store.load_session_by_delivery(delivery_id)
            if winner is None:
                raise
            logger.info(
                "delivery_upsert_race delivery_id=%s winner=%s", delivery_id, winner.id
            )
            merged = self.store.update_session(
                winner.id, lambda current: merge_fields(current, fields)
            )
            return merged, False
        logger.info(
            "session_created delivery_id=%s client_ref=%s click_number=%s",
            delivery_id,
            client_ref,
            click_number,
        )
        return record, True

    def _link_click(self, stub: SessionRecord, fields: SessionFields) -> SessionRecord:
        click_number = stub.click_number or self.allocator.allocate_next(
            client_counter_key(stub.client_ref)
        )
        return merge_fields(stub, fields).model_copy(update={"click_number": click_number})

    def attach_contact_to_client_ref(
        self,
        client_ref: str,
        phone: Optional[str],
        raw_text: Optional[str],
        observed_at: Optional[datetime] = None,
    ) -> list[SessionRecord]:
        observed_at = observed_at or utc_now()
        phone = normalize_phone(phone)
        sessions = self.store.find_sessions(client_ref=client_ref)
        if not sessions:
            now = utc_now()
            stub = SessionRecord(
                id=new_id("sess"),
                client_ref=client_ref,
                contact=Contact(phone=phone),
                chat_received_at_utc=observed_at,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.store.insert_session(stub)
            logger.info("session_stub_created client_ref=%s", client_ref)
            return [stub]

        def apply(current: SessionRecord) -> SessionRecord:
            updates: dict = {"chat_received_at_utc": observed_at}
            if phone:
                updates["contact"] = current.contact.model_copy(update={"phone": phone})
            if raw_text:
                updates["last_message_text"] = raw_text
            return current.model_copy(update=updates)

        return [self.store.update_session(session.id, apply) for session in sessions]

    def record_charge_facts(
        self,
        sessions: list[SessionRecord],
        *,
        variant: ChargeVariant,
        observed_at: datetime,
        status: Optional[str] = None,
        value: Optional[float] = None,
        customer: Optional[Contact] = None,
    ) -> list[SessionRecord]:
        def apply(current: SessionRecord) -> SessionRecord:
            updates: dict = {}
            if customer:
                updates["contact"] = fill_missing(current.contact, customer)
            if variant == ChargeVariant.created:
                updates["last_checkout_at_utc"] = observed_at
            else:
                updates["last_purchase_at_utc"] = observed_at
                updates["last_purchase_status"] = status
                updates["last_purchase_value"] = value
            return current.model_copy(update=updates)

        return [self.store.update_session(session.id, apply) for session in sessions]

    def mark_flag(
        self,
        sessions: list[SessionRecord],
        kind: EventKind,
        observed_at: Optional[datetime] = None,
    ) -> list[SessionRecord]:
        observed_at = observed_at or utc_now()
        flag_name = FLAG_FOR_KIND[kind]

        def apply(current: SessionRecord) -> SessionRecord:
            updates: dict = {"flags": current.flags.model_copy(update={flag_name: True})}
            if kind == EventKind.pageview and current.pageview_at_utc is None:
                updates["pageview_at_utc"] = observed_at
            return current.model_copy(update=updates)

        return [self.store.update_session(session.id, apply) for session in sessions]
