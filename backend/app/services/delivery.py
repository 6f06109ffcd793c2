from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Optional

import httpx

from backend.app.models import (
    CanonicalEvent,
    DeliveryOutcome,
    DeliveryRecord,
    DeliveryStatus,
    EventKind,
    SessionRecord,
    UserData,
    utc_now,
)
from backend.app.observability import OutcomeSink
from backend.app.services.correlator import IdentityCorrelator
from backend.app.services.normalize import minor_to_decimal, name_tokens
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, new_id

logger = logging.getLogger("funnel_tracker.delivery")

MINIMAL_USER_DATA_FIELDS = {"external_id", "ph"}


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_phone(phone: Optional[str]) -> Optional[str]:
    digits = "".join(char for char in (phone or "") if char.isdigit())
    return sha256_hex(digits) if digits else None


def hash_email(email: Optional[str]) -> Optional[str]:
    value = (email or "").strip().lower()
    return sha256_hex(value) if value else None


def hash_token(token: Optional[str]) -> Optional[str]:
    value = (token or "").strip().lower()
    return sha256_hex(value) if value else None


def _listed(value: Optional[str]) -> Optional[list[str]]:
    return [value] if value else None


@dataclass
class BuildOptions:
    value_minor: Optional[int] = None
    currency: Optional[str] = None
    event_time: Optional[int] = None
    event_source_url: Optional[str] = None
    custom_data: dict[str, Any] = field(default_factory=dict)


def build_minimal(event: CanonicalEvent) -> CanonicalEvent:
    """Strip an event down to what the external API needs to accept it."""
    user_data = UserData(
        **event.user_data.model_dump(include=MINIMAL_USER_DATA_FIELDS)
    )
    return CanonicalEvent(
        event_name=event.event_name,
        event_id=event.event_id,
        event_time=event.event_time,
        action_source=event.action_source,
        event_source_url=event.event_source_url,
        user_data=user_data,
    )


class EventDeliveryPipeline:
    def __init__(
        self,
        *,
        settings: Settings,
        store: InMemoryStore,
        correlator: IdentityCorrelator,
        sink: OutcomeSink,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.correlator = correlator
        self.sink = sink
        self.transport = transport

    @property
    def endpoint(self) -> str:
        base = self.settings.meta_api_base_url.rstrip("/")
        return f"{base}/{self.settings.meta_api_version}/{self.settings.meta_pixel_id}/events"

    def resolve_event_id(self, kind: EventKind, session: SessionRecord) -> str:
        previous = self.store.latest_delivery(
            kind=kind,
            client_ref=session.client_ref,
            session_record_id=session.id,
        )
        if previous:
            return previous.event_id
        if session.delivery_id:
            return session.delivery_id
        return f"{kind.value}.{session.id}"

    def build_user_data(self, session: SessionRecord) -> UserData:
        first_name, last_name = name_tokens(session.contact.name)
        attribution = session.attribution
        return UserData(
            client_ip_address=attribution.server_ip,
            client_user_agent=attribution.user_agent,
            fbp=attribution.fbp,
            fbc=attribution.fbc,
            ph=_listed(hash_phone(session.contact.phone)),
            em=_listed(hash_email(session.contact.email)),
            fn=_listed(hash_token(first_name)),
            ln=_listed(hash_token(last_name)),
            external_id=_listed(hash_token(session.client_ref)),
        )

    def build_event(
        self,
        kind: EventKind,
        session: SessionRecord,
        opts: Optional[BuildOptions] = None,
    ) -> CanonicalEvent:
        opts = opts or BuildOptions()
        custom_data: dict[str, Any] = {}
        if opts.value_minor is not None:
            custom_data["value"] = minor_to_decimal(opts.value_minor)
            custom_data["currency"] = opts.currency or self.settings.default_currency
        custom_data.update(opts.custom_data)
        event_time = opts.event_time
        if event_time is None:
            event_time = int(utc_now().replace(tzinfo=timezone.utc).timestamp())
        return CanonicalEvent(
            event_name=kind,
            event_id=self.resolve_event_id(kind, session),
            event_time=event_time,
            event_source_url=opts.event_source_url
            or session.attribution.page_url
            or self.settings.default_event_source_url
            or None,
            user_data=self.build_user_data(session),
            custom_data=custom_data,
        )

    async def deliver(
        self, event: CanonicalEvent, sessions: list[SessionRecord]
    ) -> DeliveryOutcome:
        kind = event.event_name
        if not self.settings.delivery_enabled:
            outcome = DeliveryOutcome(
                kind=kind,
                status=DeliveryStatus.skipped,
                event_id=event.event_id,
                error="delivery credentials not configured",
            )
            self._record_outcome(outcome)
            return outcome

        response: Optional[httpx.Response] = None
        error: Optional[str] = None
        attempts = 0
        minimal_retry = False
        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=self.settings.delivery_timeout_seconds,
        ) as client:
            attempts += 1
            response, error = await self._send(client, event)
            if response is None or response.status_code == 400:
                logger.warning(
                    "delivery_minimal_retry kind=%s event_id=%s reason=%s",
                    kind.value,
                    event.event_id,
                    error or f"http_{response.status_code}",
                )
                attempts += 1
                minimal_retry = True
                response, error = await self._send(client, build_minimal(event))

        if response is None:
            status = DeliveryStatus.network_error
        elif response.is_success:
            status = DeliveryStatus.accepted
        else:
            status = DeliveryStatus.rejected
            error = response.text[:500]
        outcome = DeliveryOutcome(
            kind=kind,
            status=status,
            event_id=event.event_id,
            http_status=response.status_code if response is not None else None,
            attempts=attempts,
            minimal_retry=minimal_retry,
            error=error,
        )
        self._record_outcome(outcome)
        if outcome.reachable and sessions:
            self._record_reachable_send(event, sessions, outcome)
        return outcome

    async def _send(
        self, client: httpx.AsyncClient, event: CanonicalEvent
    ) -> tuple[Optional[httpx.Response], Optional[str]]:
        body: dict[str, Any] = {"data": [event.to_payload()]}
        if self.settings.meta_test_event_code:
            body["test_event_code"] = self.settings.meta_test_event_code
        try:
            response = await client.post(
                self.endpoint,
                params={"access_token": self.settings.meta_access_token},
                json=body,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "delivery_network_error kind=%s event_id=%s error=%s",
                event.event_name.value,
                event.event_id,
                exc,
            )
            return None, f"{type(exc).__name__}: {exc}"
        return response, None

    def _record_outcome(self, outcome: DeliveryOutcome) -> None:
        self.sink.record(outcome)
        logger.info(
            "delivery_outcome kind=%s status=%s http_status=%s attempts=%s minimal_retry=%s",
            outcome.kind.value,
            outcome.status.value,
            outcome.http_status,
            outcome.attempts,
            outcome.minimal_retry,
        )

    def _record_reachable_send(
        self,
        event: CanonicalEvent,
        sessions: list[SessionRecord],
        outcome: DeliveryOutcome,
    ) -> None:
        for session in sessions:
            self.store.record_delivery(
                DeliveryRecord(
                    id=new_id("dlv"),
                    kind=event.event_name,
                    event_id=event.event_id,
                    client_ref=session.client_ref,
                    session_record_id=session.id,
                    http_status=outcome.http_status,
                    created_at_utc=utc_now(),
                )
            )
        self.correlator.mark_flag(sessions, event.event_name)
